from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import json
import logging
from typing import Iterator, Protocol, Sequence

import httpx

from pdfchat_api.config import Settings
from pdfchat_api.errors import ModelUnavailableError

logger = logging.getLogger(__name__)


class LLMClientError(RuntimeError):
    pass


class ModelProvider(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    OLLAMA = "ollama"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @classmethod
    def from_config_key(cls, value: str | None) -> ModelProvider:
        if value is None or not value.strip():
            return cls.OPENAI
        normalized = value.strip().lower()
        for provider in cls:
            if provider.value == normalized:
                return provider
        supported = ", ".join(provider.value for provider in cls)
        raise ValueError(f"Unknown model provider: {value}. Supported providers: {supported}")


_DISPLAY_NAMES = {
    ModelProvider.OPENAI: "OpenAI GPT",
    ModelProvider.ANTHROPIC: "Anthropic Claude",
    ModelProvider.GEMINI: "Google Gemini",
    ModelProvider.OLLAMA: "Ollama",
}


class LLMClient(Protocol):
    def complete(self, prompt: str) -> str: ...

    def complete_stream(self, prompt: str) -> Iterator[str]: ...


def _iter_sse_data(lines: Iterator[str]) -> Iterator[str]:
    for line in lines:
        if not line.startswith("data:"):
            continue
        data = line[len("data:") :].strip()
        if data:
            yield data


class OpenAICompatibleChatClient:
    """Client for any `/chat/completions` endpoint (OpenAI, Gemini, Ollama)."""

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        api_key: str | None = None,
        max_tokens: int = 5000,
        temperature: float = 0.3,
        timeout_seconds: float = 60.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._api_key = api_key
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._timeout_seconds = timeout_seconds

    def _headers(self) -> dict[str, str]:
        if not self._api_key:
            return {}
        return {"Authorization": f"Bearer {self._api_key}"}

    def _body(self, prompt: str, *, stream: bool) -> dict[str, object]:
        body: dict[str, object] = {
            "model": self._model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": self._max_tokens,
            "temperature": self._temperature,
        }
        if stream:
            body["stream"] = True
        return body

    def complete(self, prompt: str) -> str:
        try:
            response = httpx.post(
                f"{self._base_url}/chat/completions",
                json=self._body(prompt, stream=False),
                headers=self._headers(),
                timeout=self._timeout_seconds,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise LLMClientError(str(exc)) from exc

        payload = response.json()
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            raise LLMClientError("Invalid chat completion payload: missing choices")

        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if content is not None and not isinstance(content, str):
            raise LLMClientError("Invalid chat completion payload: non-text assistant content")
        return content or ""

    def complete_stream(self, prompt: str) -> Iterator[str]:
        try:
            with httpx.stream(
                "POST",
                f"{self._base_url}/chat/completions",
                json=self._body(prompt, stream=True),
                headers=self._headers(),
                timeout=self._timeout_seconds,
            ) as response:
                response.raise_for_status()
                for data in _iter_sse_data(response.iter_lines()):
                    if data == "[DONE]":
                        return
                    event = json.loads(data)
                    choices = event.get("choices") or []
                    delta = choices[0].get("delta") if choices else None
                    content = delta.get("content") if isinstance(delta, dict) else None
                    if content:
                        yield content
        except (httpx.HTTPError, json.JSONDecodeError) as exc:
            raise LLMClientError(str(exc)) from exc


class AnthropicChatClient:
    api_version = "2023-06-01"

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        api_key: str,
        max_tokens: int = 5000,
        temperature: float = 0.3,
        timeout_seconds: float = 60.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._api_key = api_key
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._timeout_seconds = timeout_seconds

    def _headers(self) -> dict[str, str]:
        return {"x-api-key": self._api_key, "anthropic-version": self.api_version}

    def _body(self, prompt: str, *, stream: bool) -> dict[str, object]:
        body: dict[str, object] = {
            "model": self._model,
            "max_tokens": self._max_tokens,
            "temperature": self._temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if stream:
            body["stream"] = True
        return body

    def complete(self, prompt: str) -> str:
        try:
            response = httpx.post(
                f"{self._base_url}/v1/messages",
                json=self._body(prompt, stream=False),
                headers=self._headers(),
                timeout=self._timeout_seconds,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise LLMClientError(str(exc)) from exc

        payload = response.json()
        blocks = payload.get("content")
        if not isinstance(blocks, list):
            raise LLMClientError("Invalid messages payload: missing content")

        return "".join(
            block.get("text", "")
            for block in blocks
            if isinstance(block, dict) and block.get("type") == "text"
        )

    def complete_stream(self, prompt: str) -> Iterator[str]:
        try:
            with httpx.stream(
                "POST",
                f"{self._base_url}/v1/messages",
                json=self._body(prompt, stream=True),
                headers=self._headers(),
                timeout=self._timeout_seconds,
            ) as response:
                response.raise_for_status()
                for data in _iter_sse_data(response.iter_lines()):
                    event = json.loads(data)
                    event_type = event.get("type")
                    if event_type == "message_stop":
                        return
                    if event_type == "error":
                        raise LLMClientError(str(event.get("error")))
                    if event_type != "content_block_delta":
                        continue
                    delta = event.get("delta") or {}
                    text = delta.get("text")
                    if text:
                        yield text
        except (httpx.HTTPError, json.JSONDecodeError) as exc:
            raise LLMClientError(str(exc)) from exc


@dataclass(frozen=True)
class ProviderBinding:
    provider: ModelProvider
    client: LLMClient | None = None

    @property
    def configured(self) -> bool:
        return self.client is not None


def parse_fallback_order(config: str | None) -> tuple[ModelProvider, ...]:
    if config is None or not config.strip():
        return tuple(ModelProvider)

    order: list[ModelProvider] = []
    for part in config.split(","):
        if not part.strip():
            continue
        try:
            provider = ModelProvider.from_config_key(part)
        except ValueError:
            logger.warning("Invalid provider in fallback order: %s", part.strip())
            continue
        if provider not in order:
            order.append(provider)

    for provider in ModelProvider:
        if provider not in order:
            order.append(provider)
    return tuple(order)


class MultiProviderChatGateway:
    """Tries configured providers in priority order until one answers."""

    def __init__(
        self,
        bindings: Sequence[ProviderBinding],
        *,
        fallback_order: Sequence[ModelProvider] = tuple(ModelProvider),
        primary: ModelProvider = ModelProvider.OPENAI,
    ) -> None:
        self._clients: dict[ModelProvider, LLMClient] = {
            binding.provider: binding.client
            for binding in bindings
            if binding.client is not None
        }

        ordered: list[ModelProvider] = []
        if primary in fallback_order:
            ordered.append(primary)
        for provider in fallback_order:
            if provider not in ordered:
                ordered.append(provider)
        self._try_order = tuple(ordered)

        logger.info(
            "Multi-provider chat gateway initialized. Primary: %s, order: %s, configured: %s",
            primary.display_name,
            [provider.display_name for provider in self._try_order],
            [provider.display_name for provider in self.available_providers()],
        )
        if not self._clients:
            logger.warning("No chat providers are configured; answers will be unavailable")

    @property
    def try_order(self) -> tuple[ModelProvider, ...]:
        return self._try_order

    def available_providers(self) -> list[ModelProvider]:
        return [provider for provider in self._try_order if provider in self._clients]

    def active_provider(self) -> ModelProvider | None:
        available = self.available_providers()
        return available[0] if available else None

    def is_provider_available(self, provider: ModelProvider) -> bool:
        return provider in self._clients

    def _candidates(self) -> list[tuple[ModelProvider, LLMClient]]:
        candidates: list[tuple[ModelProvider, LLMClient]] = []
        for provider in self._try_order:
            client = self._clients.get(provider)
            if client is None:
                logger.debug("Skipping %s - not configured", provider.display_name)
                continue
            candidates.append((provider, client))
        if not candidates:
            raise ModelUnavailableError(
                "No AI models are available. Please configure at least one API key."
            )
        return candidates

    def complete(self, prompt: str) -> str:
        last_error: Exception | None = None

        for provider, client in self._candidates():
            try:
                response = client.complete(prompt)
            except Exception as exc:
                logger.warning("Failed to get response from %s: %s", provider.display_name, exc)
                last_error = exc
                continue

            logger.info("Generated response using %s", provider.display_name)
            return response

        raise ModelUnavailableError(
            f"All AI providers failed. Last error: {last_error}"
        ) from last_error

    def complete_stream(self, prompt: str) -> Iterator[str]:
        candidates = self._candidates()
        return self._stream_with_fallback(candidates, prompt)

    def _stream_with_fallback(
        self,
        candidates: list[tuple[ModelProvider, LLMClient]],
        prompt: str,
    ) -> Iterator[str]:
        last_error: Exception | None = None

        for provider, client in candidates:
            try:
                stream = iter(client.complete_stream(prompt))
                first = next(stream)
            except StopIteration:
                logger.info("Stream from %s finished without content", provider.display_name)
                return
            except Exception as exc:
                logger.warning(
                    "Failed to start stream from %s: %s", provider.display_name, exc
                )
                last_error = exc
                continue

            logger.info("Streaming response using %s", provider.display_name)
            yield first
            try:
                yield from stream
            except Exception as exc:
                raise ModelUnavailableError(
                    f"{provider.display_name} stream failed mid-response: {exc}"
                ) from exc
            return

        raise ModelUnavailableError(
            f"All AI providers failed. Last error: {last_error}"
        ) from last_error


def build_chat_gateway(settings: Settings) -> MultiProviderChatGateway:
    common = {
        "max_tokens": settings.llm_max_output_tokens,
        "temperature": settings.llm_temperature,
        "timeout_seconds": settings.llm_timeout_seconds,
    }

    bindings = [
        ProviderBinding(
            ModelProvider.OPENAI,
            OpenAICompatibleChatClient(
                base_url=settings.openai_base_url,
                model=settings.openai_model,
                api_key=settings.openai_api_key,
                **common,
            )
            if settings.openai_api_key
            else None,
        ),
        ProviderBinding(
            ModelProvider.ANTHROPIC,
            AnthropicChatClient(
                base_url=settings.anthropic_base_url,
                model=settings.anthropic_model,
                api_key=settings.anthropic_api_key,
                **common,
            )
            if settings.anthropic_api_key
            else None,
        ),
        ProviderBinding(
            ModelProvider.GEMINI,
            OpenAICompatibleChatClient(
                base_url=settings.gemini_base_url,
                model=settings.gemini_model,
                api_key=settings.gemini_api_key,
                **common,
            )
            if settings.gemini_api_key
            else None,
        ),
        ProviderBinding(
            ModelProvider.OLLAMA,
            OpenAICompatibleChatClient(
                base_url=settings.ollama_base_url,
                model=settings.ollama_model,
                **common,
            )
            if settings.ollama_model
            else None,
        ),
    ]

    return MultiProviderChatGateway(
        bindings,
        fallback_order=parse_fallback_order(settings.llm_fallback_order),
        primary=ModelProvider.from_config_key(settings.llm_primary_provider),
    )
