"""
statedocs Audit Logging — JSONL audit trail for document, lock and security events.

Entries are routed by (object_type, category) to daily files:

    <log_dir>/<object_type>/<category>/<YYYY-MM-DD>.jsonl

Writers never touch the disk directly: log() hands the entry to a bounded
in-memory queue that a background thread drains in batches. When
init_logging() has not been called, log() returns False and the document
core keeps working without an audit trail.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from queue import Empty, Full, Queue
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger("statedocs.engine.logging")

OBJECT_TYPE_CATEGORIES = {
    "documents": ["execution", "security"],
    "locks": ["execution", "security"],
    "users": ["execution", "security"],
    "system": ["execution", "security"],
}
FALLBACK_OBJECT_TYPE = "system"


@dataclass(frozen=True)
class LogEntry:
    """One audit record and the file family it belongs to."""

    object_type: str
    category: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(self.data, default=str, separators=(",", ":"))


class FileLogger:
    """Appends LogEntry batches to the daily JSONL file of each entry."""

    def __init__(self, log_dir: str = "logs"):
        self._root = Path(log_dir)
        self._write_lock = threading.Lock()
        for object_type, categories in OBJECT_TYPE_CATEGORIES.items():
            for category in categories:
                (self._root / object_type / category).mkdir(parents=True, exist_ok=True)

    @property
    def log_dir(self) -> Path:
        return self._root

    def path_for(self, object_type: str, category: str, day: Optional[date] = None) -> Path:
        if object_type not in OBJECT_TYPE_CATEGORIES:
            object_type = FALLBACK_OBJECT_TYPE
        folder = self._root / object_type / category
        folder.mkdir(parents=True, exist_ok=True)
        return folder / f"{(day or date.today()).isoformat()}.jsonl"

    def write(self, entry: LogEntry) -> None:
        self.write_batch([entry])

    def write_batch(self, entries: Iterable[LogEntry]) -> None:
        lines_by_file: Dict[Path, List[str]] = {}
        for entry in entries:
            lines_by_file.setdefault(self.path_for(entry.object_type, entry.category), []).append(entry.to_json())

        with self._write_lock:
            for path, lines in lines_by_file.items():
                with path.open("a", encoding="utf-8") as fh:
                    fh.write("\n".join(lines) + "\n")

    def read_today(self, object_type: str, category: str) -> List[Dict[str, Any]]:
        """Today's entries for one file family, oldest first. Corrupt lines are skipped."""
        path = self.path_for(object_type, category)
        if not path.exists():
            return []
        records: List[Dict[str, Any]] = []
        for raw in path.read_text(encoding="utf-8").splitlines():
            if not raw.strip():
                continue
            try:
                records.append(json.loads(raw))
            except json.JSONDecodeError:
                logger.debug(f"Skipping unreadable audit line in {path}")
        return records


class AsyncLogQueue:
    """
    Bounded queue drained by a daemon thread.

    The thread writes a batch as soon as flush_batch_size entries are waiting,
    or after flush_interval_ms with whatever has arrived. A full queue drops
    the new entry and counts it.
    """

    def __init__(
        self,
        file_logger: FileLogger,
        flush_interval_ms: int = 100,
        flush_batch_size: int = 50,
        max_queue_size: int = 10000,
    ):
        self._sink = file_logger
        self._interval = max(flush_interval_ms, 1) / 1000.0
        self._batch_size = max(flush_batch_size, 1)
        self._pending: Queue[LogEntry] = Queue(maxsize=max_queue_size)
        self._stopping = threading.Event()
        self._worker: Optional[threading.Thread] = None
        self._dropped = 0

    @property
    def running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    @property
    def pending_count(self) -> int:
        return self._pending.qsize()

    @property
    def dropped_count(self) -> int:
        return self._dropped

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._worker = threading.Thread(target=self._run, name="statedocs-audit-flush", daemon=True)
        self._worker.start()
        logger.debug("Audit log queue started")

    def stop(self, timeout: float = 5.0) -> None:
        """Signal the worker, wait for it, then write whatever is still queued."""
        self._stopping.set()
        if self._worker is not None:
            self._worker.join(timeout=timeout)
            self._worker = None
        self._flush(self._take(limit=None))
        if self._dropped:
            logger.warning(f"Audit log queue stopped after dropping {self._dropped} entries")

    def push(self, entry: LogEntry) -> bool:
        """Queue entry without blocking; False when it was dropped."""
        try:
            self._pending.put_nowait(entry)
        except Full:
            self._dropped += 1
            return False
        return True

    def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                first = self._pending.get(timeout=self._interval)
            except Empty:
                continue
            self._flush([first] + self._take(limit=self._batch_size - 1))

    def _take(self, limit: Optional[int]) -> List[LogEntry]:
        taken: List[LogEntry] = []
        while limit is None or len(taken) < limit:
            try:
                taken.append(self._pending.get_nowait())
            except Empty:
                break
        return taken

    def _flush(self, batch: List[LogEntry]) -> None:
        if not batch:
            return
        try:
            self._sink.write_batch(batch)
        except OSError as e:
            logger.error(f"Could not write {len(batch)} audit entries: {e}")


# ---------------------------------------------------------------------------
# Entry builders
# ---------------------------------------------------------------------------

def _as_text(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _record(event: str, level: str, **fields: Any) -> Dict[str, Any]:
    """Timestamped record; fields that are None are left out."""
    record: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "level": level,
        "event": event,
    }
    record.update((k, v) for k, v in fields.items() if v is not None)
    return record


def log_document_operation(
    operation: str,
    resource: str,
    document_id: Optional[Any] = None,
    user_id: Optional[Any] = None,
    state: Optional[str] = None,
    fields_changed: Optional[List[str]] = None,
    **extra: Any,
) -> LogEntry:
    """create / update / patch / transition / delete / ACL change on a document."""
    record = _record(
        f"document_{operation}",
        "INFO",
        operation=operation,
        resource=resource,
        document_id=_as_text(document_id),
        user_id=_as_text(user_id),
        state=state,
        fields_changed=sorted(fields_changed) if fields_changed else None,
        **extra,
    )
    return LogEntry("documents", "execution", record)


def log_lock_event(
    event: str,
    document_id: Any,
    user_id: Optional[Any],
    state: Optional[str] = None,
    lock_id: Optional[Any] = None,
    timeout: Optional[datetime] = None,
) -> LogEntry:
    """lock_acquired / lock_conflict / lock_released."""
    record = _record(
        event,
        "WARNING" if event == "lock_conflict" else "INFO",
        document_id=_as_text(document_id),
        user_id=_as_text(user_id),
        state=state,
        lock_id=_as_text(lock_id),
        timeout=timeout.isoformat() if timeout is not None else None,
    )
    return LogEntry("locks", "execution", record)


def log_security_event(
    event: str,
    object_type: str,
    user_id: Optional[Any],
    resource: Optional[str] = None,
    document_id: Optional[Any] = None,
    required_permission: Optional[str] = None,
    user_roles: Optional[List[str]] = None,
    level: str = "WARNING",
) -> LogEntry:
    """Refused access: transition, scoped write, admin-only call."""
    record = _record(
        event,
        level,
        resource=resource,
        document_id=_as_text(document_id),
        user_id=_as_text(user_id),
        required_permission=required_permission,
        user_roles=sorted(user_roles) if user_roles else None,
    )
    target = object_type if object_type in OBJECT_TYPE_CATEGORIES else FALLBACK_OBJECT_TYPE
    return LogEntry(target, "security", record)


# ---------------------------------------------------------------------------
# Process-wide queue
# ---------------------------------------------------------------------------

_queue: Optional[AsyncLogQueue] = None


def init_logging(
    log_dir: str = "logs",
    flush_interval_ms: int = 100,
    flush_batch_size: int = 50,
    max_queue_size: int = 10000,
) -> AsyncLogQueue:
    """Start (or restart) the process-wide audit queue writing under log_dir."""
    global _queue
    if _queue is not None:
        _queue.stop()
    _queue = AsyncLogQueue(
        FileLogger(log_dir=log_dir),
        flush_interval_ms=flush_interval_ms,
        flush_batch_size=flush_batch_size,
        max_queue_size=max_queue_size,
    )
    _queue.start()
    logger.info(f"Audit trail writing to {log_dir}")
    return _queue


def init_logging_from_config(config: Any) -> Optional[AsyncLogQueue]:
    """Apply config.logging: set the package log level, start the queue if enabled."""
    settings = config.logging
    logging.getLogger("statedocs").setLevel(settings.level)
    if not settings.enabled:
        return None
    return init_logging(
        log_dir=settings.directory,
        flush_interval_ms=settings.async_queue.flush_interval_ms,
        flush_batch_size=settings.async_queue.flush_batch_size,
        max_queue_size=settings.async_queue.max_queue_size,
    )


def get_log_queue() -> Optional[AsyncLogQueue]:
    return _queue


def log(entry: LogEntry) -> bool:
    """Queue entry on the process-wide queue; False when there is none or it is full."""
    return _queue.push(entry) if _queue is not None else False


def shutdown_logging() -> None:
    global _queue
    if _queue is not None:
        _queue.stop()
        _queue = None
