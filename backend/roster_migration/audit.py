"""
Append-only audit trail for migration runs.

Intent:
    Record one structured entry per phase transition plus a final summary.
    The audit trail observes the executor; it never changes its outcome.

Behavior:
    - Entries are kept in memory (`records`) for tests and reports, forwarded
      to the `classboard.migration.audit` logger and, when configured, to a
      sink such as `JsonlAuditSink`.
    - A failing sink is counted (`failures`) and reported as a warning; the
      exception never reaches the caller.
"""
from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Mapping, Optional

from .ports import AuditSink

logger = logging.getLogger("classboard.migration.audit")


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _jsonable(value: Any) -> Any:
    if hasattr(value, "value") and isinstance(getattr(value, "value"), str):
        return value.value
    if isinstance(value, Mapping):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


class JsonlAuditSink:
    """Append audit records as JSON lines to a file (e.g. `logs/migration.log`)."""

    def __init__(self, path: str | os.PathLike) -> None:
        self.path = Path(path)
        self._lock = Lock()

    def write(self, record: Mapping[str, Any]) -> None:
        line = json.dumps(record, sort_keys=True, ensure_ascii=False)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")


class AuditLogger:
    """Structured, timestamped, append-only audit log.

    Parameters:
        sink: Optional external collaborator receiving each record.
        level: Log level used when forwarding to the standard logger.
    """

    def __init__(self, sink: Optional[AuditSink] = None, *, level: int = logging.INFO) -> None:
        self.sink = sink
        self.level = level
        self._lock = Lock()
        self._records: List[Dict[str, Any]] = []
        self.failures = 0

    @property
    def records(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._records)

    def log(self, message: str, **fields: Any) -> Dict[str, Any]:
        record: Dict[str, Any] = {"timestamp": _timestamp(), "message": message}
        record.update({k: _jsonable(v) for k, v in fields.items()})
        with self._lock:
            self._records.append(record)
        try:
            logger.log(self.level, "%s %s", message, json.dumps(record, sort_keys=True, default=str))
        except Exception:  # pragma: no cover - logging handlers are external
            self._count_failure("logger")
        if self.sink is not None:
            try:
                self.sink.write(record)
            except Exception as exc:
                self._count_failure(type(exc).__name__)
        return record

    def _count_failure(self, reason: str) -> None:
        with self._lock:
            self.failures += 1
        logger.warning("audit sink write failed reason=%s", reason)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
            self.failures = 0


__all__ = ["AuditLogger", "JsonlAuditSink"]
