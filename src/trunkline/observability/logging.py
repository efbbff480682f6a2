"""
trunkline — structured logging

File: src/trunkline/observability/logging.py
Last updated: 2026-10-19

Purpose
- Give every component one structlog front end whose records land in a single queue-backed sink:
  JSON lines by default, or ``key=value`` text for humans tailing the daemon log.

Functional requirements
- structlog keyword arguments and stdlib ``extra`` fields are both emitted under ``fields``.
- Correlation values bound with ``correlation_scope`` (cycle id, CLI command) are captured on the
  calling thread and written as top-level keys.
- Credential-like keys, ``key=value`` assignments and URL userinfo are masked before any write.
- Logging never blocks the daemon loop: a full queue drops the record and counts it.

Non-functional requirements
- One active setup per process; a new setup shuts the previous one down first.
"""

from __future__ import annotations

import atexit
import contextvars
import copy
import json
import logging
import logging.handlers
import math
import queue
import re
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from types import MappingProxyType
from typing import Final

import structlog

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
LogRedactor = Callable[[JSONValue], JSONValue]

LOG_FORMATS: Final[tuple[str, ...]] = ("json", "text")

_REDACTED: Final[str] = "***REDACTED***"
_SENSITIVE_KEY_TERMS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "passphrase",
    "api_key",
    "authorization",
    "credential",
)
_ASSIGNMENT_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|authorization)\b(\s*[:=]\s*)[^\s,;]+"
)
_URL_USERINFO_PATTERN: Final[re.Pattern[str]] = re.compile(r"(?i)\b(https?://)[^/\s@]+@")

# Attributes every LogRecord carries; anything else on a record came in as a field.
_RECORD_ATTRIBUTES: Final[frozenset[str]] = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__
) | {"message", "asctime", "correlation"}

_CORRELATION: contextvars.ContextVar[Mapping[str, str]] = contextvars.ContextVar(
    "trunkline_log_correlation", default=MappingProxyType({})
)

_active_lock = threading.Lock()
_active: StructuredLoggingHandle | None = None
_atexit_registered = False


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Where and how one process writes its log."""

    log_dir: Path | str | None = None
    logger_name: str = "trunkline"
    level: int | str = "INFO"
    log_format: str = "json"
    queue_size: int = 4096
    log_filename: str = "trunkline.jsonl"
    log_to_console: bool = False
    max_bytes: int = 10_000_000
    backup_count: int = 5
    redactor: LogRedactor | None = None

    def checked(self) -> tuple[str, str, int]:
        """Return ``(logger_name, log_filename, level)`` or raise ``ValueError``."""

        if not isinstance(self.queue_size, int) or self.queue_size <= 0:
            raise ValueError("queue_size must be a positive integer")
        if self.log_format not in LOG_FORMATS:
            raise ValueError(f"log_format must be one of {LOG_FORMATS}, got {self.log_format!r}")
        name = self.logger_name.strip()
        if not name:
            raise ValueError("logger_name must not be empty")
        filename = self.log_filename.strip()
        if not filename or Path(filename).name != filename:
            raise ValueError(f"log_filename must be a bare file name, got {self.log_filename!r}")
        return name, filename, _parse_level(self.level)


# ---------------------------------------------------------------------------
# Correlation
# ---------------------------------------------------------------------------


def get_correlation_context() -> dict[str, str]:
    return dict(_CORRELATION.get())


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind correlation values for records logged inside the block; ``None`` unbinds a key."""

    merged = get_correlation_context()
    for key, value in fields.items():
        if value is None or not value.strip():
            merged.pop(key, None)
        else:
            merged[key] = value.strip()
    token = _CORRELATION.set(MappingProxyType(merged))
    try:
        yield
    finally:
        _CORRELATION.reset(token)


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------


def default_log_redactor(value: JSONValue) -> JSONValue:
    """Mask credential-like keys, ``key=value`` assignments and URL userinfo, recursively."""

    if isinstance(value, str):
        masked = _ASSIGNMENT_PATTERN.sub(lambda m: f"{m.group(1)}{m.group(2)}{_REDACTED}", value)
        return _URL_USERINFO_PATTERN.sub(lambda m: f"{m.group(1)}{_REDACTED}@", masked)
    if isinstance(value, list):
        return [default_log_redactor(item) for item in value]
    if isinstance(value, dict):
        return {
            key: _REDACTED if _is_sensitive_key(key) else default_log_redactor(item)
            for key, item in value.items()
        }
    return value


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(term in lowered for term in _SENSITIVE_KEY_TERMS)


def _chain_redactor(custom: LogRedactor | None) -> LogRedactor:
    if custom is None:
        return default_log_redactor
    return lambda value: default_log_redactor(_to_json(custom(value)))


# ---------------------------------------------------------------------------
# Record rendering
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class _LogLine:
    timestamp: str
    level: str
    logger: str
    event: str
    context: dict[str, str]
    fields: dict[str, JSONValue]
    exception: str | None

    @classmethod
    def from_record(cls, record: logging.LogRecord, redactor: LogRedactor) -> _LogLine:
        context = getattr(record, "correlation", None)
        extras = {
            key: _to_json(value)
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRIBUTES and not key.startswith("_")
        }
        scrubbed = redactor(extras)
        return cls(
            timestamp=_iso_timestamp(record.created),
            level=record.levelname,
            logger=record.name,
            event=_as_text(redactor(record.getMessage())),
            context=dict(context) if isinstance(context, Mapping) else {},
            fields=scrubbed if isinstance(scrubbed, dict) else {},
            exception=_as_text(redactor(record.exc_text)) if record.exc_text else None,
        )

    def as_json(self) -> str:
        payload: dict[str, JSONValue] = {
            "timestamp": self.timestamp,
            "level": self.level,
            "logger": self.logger,
            "event": self.event,
        }
        payload.update(self.context)
        if self.fields:
            payload["fields"] = self.fields
        if self.exception is not None:
            payload["exception"] = self.exception
        return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    def as_text(self) -> str:
        pairs: dict[str, JSONValue] = {**self.context, **self.fields}
        line = " ".join(
            [
                self.timestamp,
                self.level.ljust(7),
                self.logger,
                self.event,
                *(f"{key}={_as_text(pairs[key])}" for key in sorted(pairs)),
            ]
        )
        return line if self.exception is None else f"{line}\n{self.exception}"


class _LineFormatter(logging.Formatter):
    def __init__(self, log_format: str, redactor: LogRedactor) -> None:
        super().__init__()
        self._json = log_format == "json"
        self._redactor = redactor

    def format(self, record: logging.LogRecord) -> str:
        line = _LogLine.from_record(record, self._redactor)
        return line.as_json() if self._json else line.as_text()


class _DroppingQueueHandler(logging.handlers.QueueHandler):
    """Hands records to the listener thread; drops (and counts) them when the queue is full."""

    def __init__(self, log_queue: queue.Queue[logging.LogRecord]) -> None:
        super().__init__(log_queue)
        self._dropped = 0
        self._dropped_lock = threading.Lock()
        self._exc_formatter = logging.Formatter()

    @property
    def dropped(self) -> int:
        with self._dropped_lock:
            return self._dropped

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        prepared = copy.copy(record)
        prepared.msg = record.getMessage()
        prepared.args = None
        if record.exc_info:
            prepared.exc_text = self._exc_formatter.formatException(record.exc_info)
        prepared.exc_info = None
        prepared.correlation = get_correlation_context()
        return prepared

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._dropped_lock:
                self._dropped += 1


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


@dataclass(eq=False)
class StructuredLoggingHandle:
    """An installed logging setup; ``shutdown`` drains the queue and closes every sink."""

    logger: logging.Logger
    log_path: Path | None
    queue_size: int
    _queue: queue.Queue[logging.LogRecord] = field(repr=False)
    _queue_handler: _DroppingQueueHandler = field(repr=False)
    _sinks: tuple[logging.Handler, ...] = field(repr=False)
    _listener: logging.handlers.QueueListener = field(repr=False)
    _closed: bool = field(default=False, repr=False)
    _close_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    @property
    def is_shutdown(self) -> bool:
        return self._closed

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        deadline = time.monotonic() + max(timeout_seconds, 0.0)
        while self._queue.unfinished_tasks and time.monotonic() < deadline:
            time.sleep(0.01)
        for sink in self._sinks:
            sink.flush()

    def shutdown(self, *, timeout_seconds: float = 2.0) -> None:
        with self._close_lock:
            if self._closed:
                return
            self.flush(timeout_seconds=timeout_seconds)
            self._listener.stop()
            self.logger.removeHandler(self._queue_handler)
            self._queue_handler.close()
            for sink in self._sinks:
                sink.close()
            self._closed = True


def configure_structlog() -> None:
    """Route structlog through stdlib logging so its key/value pairs become record fields."""

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.format_exc_info,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Install queue-backed logging for this process, replacing any earlier setup."""

    logger_name, log_filename, level = config.checked()
    shutdown_logging()

    formatter = _LineFormatter(config.log_format, _chain_redactor(config.redactor))
    sinks: list[logging.Handler] = []
    log_path: Path | None = None
    if config.log_dir is not None:
        log_path = Path(config.log_dir) / log_filename
        log_path.parent.mkdir(parents=True, exist_ok=True)
        sinks.append(
            logging.handlers.RotatingFileHandler(
                log_path,
                maxBytes=max(1, config.max_bytes),
                backupCount=max(1, config.backup_count),
                encoding="utf-8",
            )
        )
    if config.log_to_console or not sinks:
        console = logging.StreamHandler()
        console.setLevel(level if config.log_to_console else logging.WARNING)
        sinks.append(console)
    for sink in sinks:
        sink.setFormatter(formatter)

    logger = logging.getLogger(logger_name)
    logger.setLevel(level)
    logger.propagate = False
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()

    log_queue: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=config.queue_size)
    queue_handler = _DroppingQueueHandler(log_queue)
    listener = logging.handlers.QueueListener(log_queue, *sinks, respect_handler_level=True)
    listener.start()
    logger.addHandler(queue_handler)
    configure_structlog()

    handle = StructuredLoggingHandle(
        logger=logger,
        log_path=log_path,
        queue_size=config.queue_size,
        _queue=log_queue,
        _queue_handler=queue_handler,
        _sinks=tuple(sinks),
        _listener=listener,
    )
    _install(handle)
    return handle


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    log_dir: Path | str | None = None,
    log_filename: str = "trunkline.jsonl",
    logger_name: str = "trunkline",
) -> logging.Logger:
    """Configure logging from an ``[observability]`` config section and return the logger."""

    section = dict(observability_config or {})
    level = section.get("log_level", "INFO")
    log_format = section.get("log_format", "json")
    handle = setup_structured_logging(
        LoggingConfig(
            log_dir=log_dir,
            logger_name=logger_name,
            level=level if isinstance(level, (int, str)) else "INFO",
            log_format=log_format if isinstance(log_format, str) else "json",
            log_filename=log_filename,
            log_to_console=bool(section.get("log_to_console", False)),
        )
    )
    return handle.logger


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    with _active_lock:
        return _active


def flush_logging(handle: StructuredLoggingHandle | None = None) -> None:
    target = handle if handle is not None else get_active_logging_handle()
    if target is not None:
        target.flush()


def shutdown_logging(handle: StructuredLoggingHandle | None = None) -> None:
    """Shut down ``handle`` (default: the active one) and forget it if it was active."""

    global _active
    target = handle if handle is not None else get_active_logging_handle()
    if target is None:
        return
    target.shutdown()
    with _active_lock:
        if _active is target:
            _active = None


def _install(handle: StructuredLoggingHandle) -> None:
    global _active, _atexit_registered
    with _active_lock:
        _active = handle
        if not _atexit_registered:
            atexit.register(shutdown_logging)
            _atexit_registered = True


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------


def _parse_level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    parsed = logging.getLevelName(str(value).strip().upper())
    if not isinstance(parsed, int):
        raise ValueError(f"unsupported logging level {value!r}")
    return parsed


def _iso_timestamp(epoch_seconds: float) -> str:
    moment = datetime.fromtimestamp(epoch_seconds, tz=UTC)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _as_text(value: JSONValue) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _to_json(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else str(value)
    if isinstance(value, datetime):
        aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return aware.astimezone(UTC).isoformat().replace("+00:00", "Z")
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, Mapping):
        return {str(key): _to_json(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_to_json(item) for item in value), key=_as_text)
    return repr(value)


__all__ = [
    "JSONScalar",
    "JSONValue",
    "LOG_FORMATS",
    "LogRedactor",
    "LoggingConfig",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "flush_logging",
    "get_active_logging_handle",
    "get_correlation_context",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
