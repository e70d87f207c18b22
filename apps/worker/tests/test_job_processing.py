import json
import subprocess

import pytest
from sqlalchemy import create_engine, text

from pdfchat_worker import main as worker_main
from pdfchat_worker.main import _claim_next_job, _process_claimed_job, _run_process_subprocess


def _create_schema(engine) -> None:
    with engine.begin() as connection:
        connection.execute(
            text(
                """
                CREATE TABLE jobs (
                    id VARCHAR(64) PRIMARY KEY,
                    type VARCHAR(32) NOT NULL,
                    status VARCHAR(32) NOT NULL,
                    payload_json TEXT,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL DEFAULT 1,
                    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    started_at TIMESTAMP,
                    finished_at TIMESTAMP,
                    error TEXT,
                    result_json TEXT
                )
                """
            )
        )
        connection.execute(
            text(
                """
                CREATE TABLE documents (
                    id VARCHAR(36) PRIMARY KEY,
                    status VARCHAR(32) NOT NULL,
                    error_message TEXT,
                    updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
        )


def test_claim_only_picks_queued_document_process_jobs(tmp_path) -> None:
    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'worker-claim.db'}")
    _create_schema(engine)

    with engine.begin() as connection:
        connection.execute(
            text(
                """
                INSERT INTO jobs (id, type, status, payload_json)
                VALUES
                    ('a', 'generic', 'queued', NULL),
                    ('b', 'document_process', 'running', '{"document_id": "doc-b"}'),
                    ('c', 'document_process', 'queued', '{"document_id": "doc-c"}')
                """
            )
        )

    job = _claim_next_job(engine)
    assert job == {
        "id": "c",
        "payload_json": {"document_id": "doc-c"},
        "attempts": 0,
        "max_attempts": 1,
    }
    assert _claim_next_job(engine) is None

    with engine.connect() as connection:
        status = connection.execute(text("SELECT status FROM jobs WHERE id = 'c'")).scalar_one()
    assert status == "running"


def test_worker_claim_and_execute_success(tmp_path) -> None:
    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'worker-success.db'}")
    _create_schema(engine)

    with engine.begin() as connection:
        connection.execute(
            text(
                """
                INSERT INTO jobs (id, type, status, payload_json)
                VALUES ('job-1', 'document_process', 'queued', '{"document_id": "doc-1"}')
                """
            )
        )

    job = _claim_next_job(engine)
    assert job is not None

    seen: list[object] = []

    def runner(payload):
        seen.append(payload)
        return {"document_id": "doc-1", "status": "READY", "chunk_count": 4}

    _process_claimed_job(engine, job, runner=runner)

    with engine.connect() as connection:
        row = connection.execute(
            text("SELECT status, attempts, result_json, error FROM jobs WHERE id = 'job-1'")
        ).fetchone()

    assert seen == [{"document_id": "doc-1"}]
    assert row is not None
    assert row[0] == "succeeded"
    assert row[1] == 0
    assert json.loads(row[2])["chunk_count"] == 4
    assert row[3] is None


def test_worker_does_not_requeue_single_attempt_job(tmp_path) -> None:
    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'worker-fail.db'}")
    _create_schema(engine)

    with engine.begin() as connection:
        connection.execute(
            text(
                """
                INSERT INTO jobs (id, type, status, payload_json, attempts, max_attempts)
                VALUES ('job-2', 'document_process', 'queued', '{"document_id": "doc-2"}', 0, 1)
                """
            )
        )
        connection.execute(text("INSERT INTO documents (id, status) VALUES ('doc-2', 'PROCESSING')"))

    job = _claim_next_job(engine)
    assert job is not None
    _process_claimed_job(engine, job, runner=lambda _: (_ for _ in ()).throw(RuntimeError("boom")))

    with engine.connect() as connection:
        row = connection.execute(
            text("SELECT status, attempts, error, finished_at FROM jobs WHERE id = 'job-2'")
        ).fetchone()

    assert row is not None
    assert row[0] == "failed"
    assert row[1] == 1
    assert "boom" in str(row[2])
    assert row[3] is not None
    assert _claim_next_job(engine) is None

    with engine.connect() as connection:
        document = connection.execute(
            text("SELECT status, error_message FROM documents WHERE id = 'doc-2'")
        ).fetchone()
    assert document == ("FAILED", "Processing failed: boom")


def test_worker_requeues_while_attempts_remain(tmp_path) -> None:
    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'worker-retry.db'}")
    _create_schema(engine)

    with engine.begin() as connection:
        connection.execute(
            text(
                """
                INSERT INTO jobs (id, type, status, payload_json, attempts, max_attempts)
                VALUES ('job-3', 'document_process', 'queued', '{"document_id": "doc-3"}', 0, 2)
                """
            )
        )
        connection.execute(text("INSERT INTO documents (id, status) VALUES ('doc-3', 'PROCESSING')"))

    job = _claim_next_job(engine)
    assert job is not None
    _process_claimed_job(engine, job, runner=lambda _: (_ for _ in ()).throw(RuntimeError("boom-1")))

    retried = _claim_next_job(engine)
    assert retried is not None
    assert retried["attempts"] == 1

    with engine.connect() as connection:
        status = connection.execute(text("SELECT status FROM documents WHERE id = 'doc-3'")).scalar_one()
    assert status == "PROCESSING"


def test_run_process_subprocess_invokes_runner_module(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}

    def fake_run(command, **kwargs):
        captured["command"] = command
        return subprocess.CompletedProcess(
            command,
            0,
            stdout='starting\n{"document_id": "doc-1", "status": "READY"}\n',
            stderr="",
        )

    monkeypatch.setenv("WORKER_RUNNER_PYTHON", "/opt/venv/bin/python")
    monkeypatch.setattr(worker_main.subprocess, "run", fake_run)

    result = _run_process_subprocess({"document_id": "doc-1"})

    assert result == {"document_id": "doc-1", "status": "READY"}
    assert captured["command"] == [
        "/opt/venv/bin/python",
        "-m",
        "pdfchat_api.services.documents.process_job_runner",
        "--payload-json",
        '{"document_id": "doc-1"}',
    ]


def test_run_process_subprocess_raises_on_non_zero_exit(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(command, **kwargs):
        return subprocess.CompletedProcess(
            command,
            1,
            stdout="",
            stderr="Traceback...\n[process-job-runner] failed: Document not found: doc-9\n",
        )

    monkeypatch.setattr(worker_main.subprocess, "run", fake_run)

    with pytest.raises(RuntimeError, match="Document not found: doc-9"):
        _run_process_subprocess({"document_id": "doc-9"})


def test_run_process_subprocess_requires_document_id() -> None:
    with pytest.raises(RuntimeError, match="missing payload_json.document_id"):
        _run_process_subprocess(None)
