from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any

import httpx

from replicate_proxy.gateway import audit
from replicate_proxy.gateway.audit import JsonlAuditLogger
from tests.client_test_utils import (
    TEST_TOKEN,
    RecordingUpstream,
    build_test_client,
    install_upstream,
)


def _read_records(path: Path) -> list[dict[str, Any]]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_audit_logger_writes_records(tmp_path: Path) -> None:
    log_path = tmp_path / "audit" / "predictions.jsonl"
    logger = JsonlAuditLogger(path=str(log_path), enabled=True)
    logger.log({"event": "prediction_created", "prediction_id": "p1"})
    logger.close()

    records = _read_records(log_path)
    assert records[0]["event"] == "prediction_created"
    assert records[0]["prediction_id"] == "p1"
    assert isinstance(records[0]["ts"], int)


def test_audit_logger_redacts_secrets(tmp_path: Path) -> None:
    log_path = tmp_path / "predictions.jsonl"
    logger = JsonlAuditLogger(path=str(log_path), enabled=True, secrets=["r8_abc", None])
    logger.log({"event": "prediction_rejected", "error": "token r8_abc rejected"})
    logger.close()

    assert "r8_abc" not in log_path.read_text(encoding="utf-8")
    assert _read_records(log_path)[0]["error"] == "token [redacted] rejected"


def test_disabled_audit_logger_writes_nothing(tmp_path: Path) -> None:
    log_path = tmp_path / "nested" / "predictions.jsonl"
    logger = JsonlAuditLogger(path=str(log_path), enabled=False)
    logger.log({"event": "prediction_created"})
    assert not log_path.exists()
    assert not log_path.parent.exists()


def test_app_records_dispatch_outcomes(monkeypatch: Any, tmp_path: Path) -> None:
    log_path = tmp_path / "predictions.jsonl"
    upstream = RecordingUpstream(
        lambda _request: httpx.Response(201, json={"id": "p7", "status": "starting"})
    )
    with build_test_client(
        monkeypatch,
        REPLICATE_TOKEN=TEST_TOKEN,
        AUDIT_LOG_ENABLED="true",
        AUDIT_LOG_PATH=str(log_path),
    ) as client:
        install_upstream(client, upstream)
        client.post("/api/replicate", json={"model": "owner/model", "input": {"a": 1}})
        client.post("/api/replicate", json={})

    records = _read_records(log_path)
    assert [record["event"] for record in records] == [
        "prediction_created",
        "prediction_rejected",
    ]
    assert records[0]["model"] == "owner/model"
    assert TEST_TOKEN not in log_path.read_text(encoding="utf-8")


def test_close_joins_writer_and_ignores_later_records(tmp_path: Path) -> None:
    log_path = tmp_path / "predictions.jsonl"
    logger = JsonlAuditLogger(path=str(log_path), enabled=True)
    worker = logger._worker
    assert worker is not None and worker.daemon

    logger.log({"event": "prediction_poll"})
    logger.close()
    logger.log({"event": "prediction_created"})
    logger.close()

    assert not worker.is_alive()
    assert [record["event"] for record in _read_records(log_path)] == ["prediction_poll"]


def test_full_queue_counts_dropped_records(monkeypatch: Any, tmp_path: Path) -> None:
    pending: list[threading.Thread] = []

    class DeferredThread(threading.Thread):
        def start(self) -> None:
            pending.append(self)

    monkeypatch.setattr(audit, "Thread", DeferredThread)
    log_path = tmp_path / "predictions.jsonl"
    logger = JsonlAuditLogger(path=str(log_path), enabled=True, max_queue_size=2)
    for index in range(5):
        logger.log({"event": "prediction_poll", "index": index})
    assert logger.dropped_records == 3

    threading.Thread.start(pending[0])
    logger.close()

    records = _read_records(log_path)
    assert [record.get("index") for record in records[:2]] == [0, 1]
    assert records[2]["event"] == "audit_logger_dropped_records"
    assert records[2]["dropped_count"] == 3
