from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait
from contextlib import closing
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol

from dossier.core.errors import AuditWriteError
from dossier.core.redaction import redact_id

log = logging.getLogger("dossier.audit")


class AuditActions:
    EVIDENCE_GENERATE = "evidence.generate"


class AuditSink(Protocol):
    """Write-only destination for audit records."""

    def record(
        self,
        actor_type: str,
        actor_id: str,
        action: str,
        entity: str,
        entity_id: str,
        payload: Dict[str, Any],
    ) -> None:
        ...


@dataclass(slots=True)
class SQLiteAuditSink:
    """
    Append-only SQLite sink writing into audit_log.

    Security notes:
    - INSERT only; rows are never updated or deleted.
    - Parameterized statements.
    - Any sqlite3 or encoding failure surfaces as AuditWriteError.
    """

    db_path: Path
    timeout_sec: float = 5.0
    clock: Callable[[], datetime] = lambda: datetime.now(UTC)

    def __post_init__(self) -> None:
        self.db_path = Path(self.db_path)

    def record(
        self,
        actor_type: str,
        actor_id: str,
        action: str,
        entity: str,
        entity_id: str,
        payload: Dict[str, Any],
    ) -> None:
        created_at = self.clock().astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")
        try:
            body = json.dumps(payload, sort_keys=True, ensure_ascii=False)
            with closing(sqlite3.connect(str(self.db_path), timeout=self.timeout_sec)) as con:
                con.execute(
                    """
                    INSERT INTO audit_log(id, actor_type, actor_id, action, entity, entity_id, payload, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (str(uuid.uuid4()), actor_type, actor_id, action, entity, entity_id, body, created_at),
                )
                con.commit()
        except (sqlite3.Error, TypeError, ValueError) as e:
            raise AuditWriteError(f"audit write failed: {e.__class__.__name__}: {e}") from e


class AuditDispatcher:
    """
    Fire-and-forget front for an AuditSink.

    submit() returns immediately; the write runs on a single background
    worker. Failures are logged, never raised to the submitter. Writes that
    take longer than timeout_sec are logged as slow.
    """

    def __init__(self, sink: AuditSink, *, timeout_sec: float = 5.0) -> None:
        self._sink = sink
        self._timeout_sec = float(timeout_sec)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="dossier-audit")
        self._pending: List[Future] = []
        self._lock = threading.Lock()

    @property
    def sink(self) -> AuditSink:
        return self._sink

    @staticmethod
    def _log_failure(record: Dict[str, Any], e: BaseException) -> None:
        log.error(
            "audit_write_failed",
            extra={
                "action": record["action"],
                "entity_id": record["entity_id"],
                "actor_id": redact_id(record["actor_id"]),
                "error": f"{e.__class__.__name__}: {e}",
            },
        )

    def _write(self, record: Dict[str, Any]) -> bool:
        start = time.monotonic()
        try:
            self._sink.record(**record)
        except Exception as e:
            # Any sink failure: the pack is already built and returned.
            self._log_failure(record, e)
            return False
        dur_ms = int((time.monotonic() - start) * 1000)
        if dur_ms > self._timeout_sec * 1000:
            log.warning(
                "audit_write_slow",
                extra={"action": record["action"], "entity_id": record["entity_id"], "duration_ms": dur_ms},
            )
        return True

    def submit(
        self,
        *,
        actor_type: str,
        actor_id: str,
        action: str,
        entity: str,
        entity_id: str,
        payload: Dict[str, Any],
    ) -> Future:
        record = {
            "actor_type": actor_type,
            "actor_id": actor_id,
            "action": action,
            "entity": entity,
            "entity_id": entity_id,
            "payload": payload,
        }
        try:
            fut = self._executor.submit(self._write, record)
        except RuntimeError as e:
            # Executor already shut down (dispatcher closed); the caller's pack stands.
            self._log_failure(record, e)
            fut = Future()
            fut.set_result(False)
            return fut
        with self._lock:
            self._pending = [f for f in self._pending if not f.done()]
            self._pending.append(fut)
        return fut

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for every submitted write. Returns False if the timeout hit first."""

        with self._lock:
            pending = list(self._pending)
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def close(self, timeout: Optional[float] = None) -> None:
        self.flush(timeout)
        self._executor.shutdown(wait=False)
