from __future__ import annotations

import json
import time
from pathlib import Path
from queue import Full, Queue
from threading import Lock, Thread
from typing import Any, Iterable

from replicate_proxy.errors import redact_secret


def _dumps(record: Any) -> str:
    return json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str)


class JsonlAuditLogger:
    """Appends one JSON line per dispatch outcome from a background writer.

    ``log`` only serializes and enqueues, so request handlers never touch the
    disk. Values equal to any of the configured secrets are replaced before
    the record is queued. Records that do not fit in the queue are counted and
    reported as a single ``audit_logger_dropped_records`` line on close.
    """

    def __init__(
        self,
        path: str,
        enabled: bool = True,
        secrets: Iterable[str | None] = (),
        max_queue_size: int = 8192,
    ) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self._secrets = [secret for secret in secrets if secret]
        self._lock = Lock()
        self._queue: Queue[str | None] | None = None
        self._worker: Thread | None = None
        self._dropped_records = 0
        if self.enabled:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._queue = Queue(maxsize=max_queue_size)
            self._worker = Thread(
                target=self._drain_queue, name="prediction-audit-writer", daemon=True
            )
            self._worker.start()

    @property
    def dropped_records(self) -> int:
        with self._lock:
            return self._dropped_records

    def log(self, event: dict[str, Any]) -> None:
        queue = self._queue
        if not self.enabled or queue is None:
            return

        record: Any = {"ts": int(time.time()), **event}
        for secret in self._secrets:
            record = redact_secret(record, secret)
        try:
            queue.put_nowait(_dumps(record))
        except Full:
            with self._lock:
                self._dropped_records += 1

    def close(self) -> None:
        queue = self._queue
        worker = self._worker
        if queue is None or worker is None:
            return None
        self._queue = None
        self._worker = None
        queue.put(None)
        worker.join(timeout=2.0)
        return None

    def _drain_queue(self) -> None:
        queue = self._queue
        if queue is None:
            return
        with self.path.open("a", encoding="utf-8") as handle:
            while True:
                item = queue.get()
                if item is None:
                    queue.task_done()
                    break
                handle.write(item + "\n")
                handle.flush()
                queue.task_done()
            with self._lock:
                dropped = self._dropped_records
                self._dropped_records = 0
            if dropped > 0:
                handle.write(
                    _dumps(
                        {
                            "ts": int(time.time()),
                            "event": "audit_logger_dropped_records",
                            "dropped_count": dropped,
                        }
                    )
                    + "\n"
                )
                handle.flush()
