"""Batched persistence of collected application logs.

Client and server log lines are buffered in memory and written to the
database in bulk, either when the buffer reaches ``batch_size`` or every
``flush_interval`` seconds. The batcher is an explicit object owned by the
application lifespan: it is started on startup and shut down (with a final
flush) on shutdown.
"""

import asyncio
import json
import logging
import traceback
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from filehub.app.core.config import settings
from filehub.app.core.logging import get_logger
from filehub.app.db.async_session import get_async_session
from filehub.app.db.crud import save_logs_bulk

logger = get_logger(__name__)

LOG_LEVELS = ("trace", "debug", "info", "warn", "error", "fatal")
LOG_SOURCES = ("client", "server", "api", "worker")
CRITICAL_LEVELS = frozenset(("error", "fatal"))

# Keys of a log payload that map straight onto columns
_LIFTED_FIELDS = (
    "user_id",
    "session_id",
    "ip_address",
    "user_agent",
    "request_id",
    "method",
    "path",
    "status_code",
    "event",
    "duration",
)


def new_log_id() -> str:
    return f"log_{uuid.uuid4().hex}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class LogEntry:
    """One log line ready to be written to the logs table."""
    level: str
    message: str
    source: str = "server"
    id: str = field(default_factory=new_log_id)
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    request_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    method: Optional[str] = None
    path: Optional[str] = None
    status_code: Optional[int] = None
    event: Optional[str] = None
    duration: Optional[int] = None
    error_message: Optional[str] = None
    error_stack: Optional[str] = None
    error_code: Optional[str] = None
    context: Optional[dict[str, Any]] = None
    metadata: Optional[dict[str, Any]] = None
    client_timestamp: Optional[datetime] = None
    server_timestamp: datetime = field(default_factory=_utcnow)
    created_at: datetime = field(default_factory=_utcnow)

    def to_row(self) -> dict[str, Any]:
        """Column mapping for the Log model."""
        row = asdict(self)
        row["metadata_"] = row.pop("metadata")
        return row


def _json_safe(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value, default=str))


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def _apply_error(entry: LogEntry, error: Any) -> None:
    if isinstance(error, BaseException):
        entry.error_message = str(error) or type(error).__name__
        if error.__traceback__ is not None:
            entry.error_stack = "".join(traceback.format_exception(error))
        code = getattr(error, "code", None)
        entry.error_code = str(code) if code is not None else None
    elif isinstance(error, dict):
        entry.error_message = str(error.get("message") or error.get("name") or error)
        entry.error_stack = error.get("stack")
        code = error.get("code")
        entry.error_code = str(code) if code is not None else None
    else:
        entry.error_message = str(error)


def format_log_entry(
    level: str,
    message: Any,
    data: Any = None,
    source: str = "server",
) -> LogEntry:
    """Build a LogEntry from a message and an arbitrary payload.

    Well-known keys of ``data`` become columns, ``error`` (an exception or a
    ``{"message", "stack", "code"}`` dict) fills the error columns, and
    everything else is kept as JSON context.
    """
    entry = LogEntry(
        level=level,
        message=message if isinstance(message, str) else json.dumps(message, default=str),
        source=source,
    )

    if data is None:
        return entry
    if isinstance(data, BaseException):
        data = {"error": data}
    if not isinstance(data, dict):
        entry.context = _json_safe({"value": data})
        return entry

    if data.get("error") is not None:
        _apply_error(entry, data["error"])

    for name in _LIFTED_FIELDS:
        value = data.get(name)
        if value is not None:
            setattr(entry, name, value)

    entry.client_timestamp = _parse_timestamp(data.get("client_timestamp"))

    if data.get("metadata"):
        entry.metadata = _json_safe(data["metadata"])

    rest = {
        k: v for k, v in data.items()
        if k not in _LIFTED_FIELDS and k not in ("error", "metadata", "client_timestamp")
    }
    if rest:
        entry.context = _json_safe(rest)

    return entry


LogWriter = Callable[[list[LogEntry]], Awaitable[None]]


async def database_log_writer(entries: list[LogEntry]) -> None:
    """Write a batch of entries to the logs table in one insert."""
    async with get_async_session() as session:
        await save_logs_bulk(session, [entry.to_row() for entry in entries])


_STDLIB_LEVELS = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
}

collected_logger = get_logger("filehub.collected")


async def console_log_writer(entries: list[LogEntry]) -> None:
    """Re-emit collected entries through standard logging (no database)."""
    for entry in entries:
        collected_logger.log(
            _STDLIB_LEVELS.get(entry.level, logging.INFO),
            entry.message,
            extra={
                "request_id": entry.request_id,
                "user_id": entry.user_id,
                "session_id": entry.session_id,
                "path": entry.path,
                "log_source": entry.source,
            },
        )


class LogBatcher:
    """Buffers log entries and writes them in batches.

    Features:
    - Size-triggered flush once ``batch_size`` entries are buffered
    - Timer-based flush every ``flush_interval`` seconds
    - Graceful shutdown: cancels the timer and flushes what is left
    - On a failed batch write, error and fatal entries are retried one by one

    Example:
        batcher = LogBatcher(database_log_writer)
        batcher.start()
        batcher.log("info", "File uploaded", {"user_id": "42"})
        await batcher.shutdown()
    """

    def __init__(
        self,
        writer: LogWriter = database_log_writer,
        batch_size: Optional[int] = None,
        flush_interval: Optional[float] = None,
    ):
        self._writer = writer
        self.batch_size = batch_size or settings.log_batch_size
        self.flush_interval = flush_interval or settings.log_flush_interval

        self._buffer: list[LogEntry] = []
        self._write_lock = asyncio.Lock()
        self._flush_task: Optional[asyncio.Task] = None
        self._pending: set[asyncio.Task] = set()
        self._shutdown_event = asyncio.Event()
        self._started = False

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def start(self) -> None:
        """Start the periodic flush task. Call from a running event loop."""
        if not self._started:
            self._shutdown_event.clear()
            self._flush_task = asyncio.create_task(self._flush_loop())
            self._started = True
            logger.debug("LogBatcher started")

    async def shutdown(self) -> None:
        """Stop the timer, wait for in-flight flushes and flush the rest."""
        logger.debug("LogBatcher shutting down...")
        self._shutdown_event.set()

        if self._flush_task is not None:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None

        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

        await self.flush()
        self._started = False
        logger.debug("LogBatcher shutdown complete")

    def submit(self, entry: LogEntry) -> None:
        """Queue an entry. Never blocks and never raises on write problems."""
        self._buffer.append(entry)
        if len(self._buffer) >= self.batch_size:
            task = asyncio.create_task(self.flush())
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    def log(self, level: str, message: Any, data: Any = None, source: str = "server") -> None:
        self.submit(format_log_entry(level, message, data, source))

    async def flush(self) -> int:
        """Write everything buffered so far. Returns the batch size taken."""
        async with self._write_lock:
            if not self._buffer:
                return 0
            entries, self._buffer = self._buffer, []
            await self._write(entries)
            return len(entries)

    async def _write(self, entries: list[LogEntry]) -> None:
        try:
            await self._writer(entries)
            logger.debug(f"Flushed {len(entries)} logs to database")
            return
        except Exception as e:
            logger.error(f"Failed to write {len(entries)} logs to database: {e}")

        critical = [entry for entry in entries if entry.level in CRITICAL_LEVELS]
        for entry in critical:
            try:
                await self._writer([entry])
            except Exception as e:
                logger.error(f"Failed to write critical log {entry.id}: {e}")

        dropped = len(entries) - len(critical)
        if dropped:
            logger.warning(f"Dropped {dropped} non-critical logs after batch write failure")

    async def _flush_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self.flush_interval
                )
            except asyncio.TimeoutError:
                pass

            # shutdown() does its own final flush
            if not self._shutdown_event.is_set():
                await self.flush()
