from typing import Iterator

import pytest

from pdfchat_api.config import get_settings
from pdfchat_api.errors import ModelUnavailableError
from pdfchat_api.llm import (
    LLMClientError,
    ModelProvider,
    MultiProviderChatGateway,
    ProviderBinding,
    build_chat_gateway,
    parse_fallback_order,
)


class FakeChatClient:
    def __init__(self, answer: str = "", *, error: Exception | None = None, pieces: list[str] | None = None) -> None:
        self.answer = answer
        self.error = error
        self.pieces = pieces or []
        self.prompts: list[str] = []

    def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.answer

    def complete_stream(self, prompt: str) -> Iterator[str]:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        yield from self.pieces


class BrokenMidStreamClient:
    def complete(self, prompt: str) -> str:
        raise AssertionError("not used")

    def complete_stream(self, prompt: str) -> Iterator[str]:
        yield "partial "
        raise LLMClientError("connection reset")


ALL_PROVIDERS = tuple(ModelProvider)


def test_complete_falls_back_to_next_configured_provider() -> None:
    failing = FakeChatClient(error=LLMClientError("rate limited"))
    working = FakeChatClient("answer from claude")
    gateway = MultiProviderChatGateway(
        [
            ProviderBinding(ModelProvider.OPENAI, failing),
            ProviderBinding(ModelProvider.ANTHROPIC, working),
        ],
        fallback_order=ALL_PROVIDERS,
    )

    assert gateway.complete("prompt") == "answer from claude"
    assert failing.prompts == ["prompt"]
    assert working.prompts == ["prompt"]


def test_complete_raises_model_unavailable_without_configured_providers() -> None:
    gateway = MultiProviderChatGateway(
        [ProviderBinding(provider) for provider in ModelProvider],
        fallback_order=ALL_PROVIDERS,
    )

    with pytest.raises(ModelUnavailableError, match="No AI models are available"):
        gateway.complete("prompt")
    assert gateway.active_provider() is None
    assert gateway.available_providers() == []


def test_complete_raises_when_every_provider_fails() -> None:
    gateway = MultiProviderChatGateway(
        [
            ProviderBinding(ModelProvider.OPENAI, FakeChatClient(error=LLMClientError("first"))),
            ProviderBinding(ModelProvider.GEMINI, FakeChatClient(error=LLMClientError("second"))),
        ],
        fallback_order=ALL_PROVIDERS,
    )

    with pytest.raises(ModelUnavailableError, match="Last error: second") as exc_info:
        gateway.complete("prompt")
    assert isinstance(exc_info.value.__cause__, LLMClientError)


def test_primary_provider_is_tried_first() -> None:
    openai = FakeChatClient("from openai")
    ollama = FakeChatClient("from ollama")
    gateway = MultiProviderChatGateway(
        [
            ProviderBinding(ModelProvider.OPENAI, openai),
            ProviderBinding(ModelProvider.OLLAMA, ollama),
        ],
        fallback_order=ALL_PROVIDERS,
        primary=ModelProvider.OLLAMA,
    )

    assert gateway.try_order[0] is ModelProvider.OLLAMA
    assert gateway.active_provider() is ModelProvider.OLLAMA
    assert gateway.complete("prompt") == "from ollama"
    assert openai.prompts == []


def test_parse_fallback_order_drops_unknown_and_appends_missing() -> None:
    order = parse_fallback_order("gemini, bogus ,OPENAI,gemini")

    assert order == (
        ModelProvider.GEMINI,
        ModelProvider.OPENAI,
        ModelProvider.ANTHROPIC,
        ModelProvider.OLLAMA,
    )
    assert parse_fallback_order("") == ALL_PROVIDERS


def test_from_config_key_defaults_blank_to_openai_and_rejects_unknown() -> None:
    assert ModelProvider.from_config_key("  ") is ModelProvider.OPENAI
    assert ModelProvider.from_config_key("Anthropic") is ModelProvider.ANTHROPIC
    with pytest.raises(ValueError, match="Unknown model provider"):
        ModelProvider.from_config_key("mistral")


def test_stream_falls_back_before_first_piece() -> None:
    gateway = MultiProviderChatGateway(
        [
            ProviderBinding(ModelProvider.OPENAI, FakeChatClient(error=LLMClientError("down"))),
            ProviderBinding(ModelProvider.ANTHROPIC, FakeChatClient(pieces=["Hello", " world"])),
        ],
        fallback_order=ALL_PROVIDERS,
    )

    assert list(gateway.complete_stream("prompt")) == ["Hello", " world"]


def test_stream_failure_after_first_piece_is_not_retried() -> None:
    backup = FakeChatClient(pieces=["should not be used"])
    gateway = MultiProviderChatGateway(
        [
            ProviderBinding(ModelProvider.OPENAI, BrokenMidStreamClient()),
            ProviderBinding(ModelProvider.ANTHROPIC, backup),
        ],
        fallback_order=ALL_PROVIDERS,
    )

    stream = gateway.complete_stream("prompt")
    assert next(stream) == "partial "
    with pytest.raises(ModelUnavailableError, match="mid-response"):
        next(stream)
    assert backup.prompts == []


def test_stream_without_providers_raises_eagerly() -> None:
    gateway = MultiProviderChatGateway([], fallback_order=ALL_PROVIDERS)

    with pytest.raises(ModelUnavailableError):
        gateway.complete_stream("prompt")


def test_build_chat_gateway_binds_only_providers_with_credentials(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    for key in ("OPENAI_API_KEY", "GEMINI_API_KEY", "OLLAMA_MODEL"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
    monkeypatch.setenv("LLM_PRIMARY_PROVIDER", "openai")
    monkeypatch.setenv("LLM_FALLBACK_ORDER", "openai,anthropic,gemini,ollama")

    gateway = build_chat_gateway(get_settings())

    assert gateway.available_providers() == [ModelProvider.ANTHROPIC]
    assert gateway.active_provider() is ModelProvider.ANTHROPIC
    assert gateway.is_provider_available(ModelProvider.OPENAI) is False
