"""
JSON-lines logging for orchestrator sessions.

Both ``structlog`` loggers and plain ``logging`` loggers end up in the same
pipeline: a non-blocking ``QueueHandler`` whose formatter is a
``structlog.stdlib.ProcessorFormatter``. Formatting happens in the queue handler,
on the thread that logged, so correlation fields bound with ``correlation_scope``
(a contextvar) are read where they are set. A ``QueueListener`` thread then only
writes finished lines to ``<log_dir>/<session_id>/build_orchestrator.jsonl``.

Each line carries ``timestamp``, ``level``, ``logger`` and ``message``, every bound
correlation key at the top level, any other key/value pairs under ``fields``, and
``exception`` when a traceback was attached. Secret-looking keys and inline
credentials are masked before the line is rendered.
"""

from __future__ import annotations

import atexit
import contextvars
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
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Final

import structlog

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
LogRedactor = Callable[[JSONValue], JSONValue]

REDACTED: Final[str] = "***REDACTED***"
DEFAULT_LOG_FILENAME: Final[str] = "build_orchestrator.jsonl"
DEFAULT_LOGGER_NAME: Final[str] = "build_orchestrator"
DEFAULT_QUEUE_SIZE: Final[int] = 4096

CORRELATION_KEYS: Final[tuple[str, ...]] = (
    "session_id",
    "build_id",
    "phase_id",
    "task_id",
    "checkpoint_id",
    "escalation_id",
)

_SECRET_KEY_PARTS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "cookie",
    "private_key",
)
_INLINE_SECRET: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|client_secret|authorization)\b"
    r"\s*([:=])\s*([^\s,;]+)"
)
_BEARER: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")

# Keys the structlog chain adds that the envelope already covers.
_ENVELOPE_KEYS: Final[frozenset[str]] = frozenset(
    {"event", "level", "logger", "message", "timestamp", "exception"}
)

_correlation: contextvars.ContextVar[tuple[tuple[str, str], ...]] = contextvars.ContextVar(
    "build_orchestrator_correlation", default=()
)

_active_lock = threading.Lock()
_active: StructuredLoggingHandle | None = None
_atexit_hooked = False


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    session_id: str
    base_log_dir: Path | str = Path("logs")
    logger_name: str = DEFAULT_LOGGER_NAME
    level: int | str = "INFO"
    queue_size: int = DEFAULT_QUEUE_SIZE
    log_filename: str = DEFAULT_LOG_FILENAME
    log_to_stdout: bool = False
    redactor: LogRedactor | None = None


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    session_id: str,
    log_dir: Path | str | None = None,
    logger_name: str = DEFAULT_LOGGER_NAME,
) -> StructuredLoggingHandle:
    """Start session logging from the ``[observability]`` config section.

    ``log_dir`` is normally ``paths.log_dir``. Also points structlog at the new
    pipeline, so ``structlog.get_logger(__name__)`` calls anywhere in the package
    land in the session file.
    """
    section = dict(observability_config or {})
    level = section.get("log_level", "INFO")
    handle = setup_structured_logging(
        LoggingConfig(
            session_id=session_id,
            base_log_dir=log_dir if log_dir is not None else "logs",
            logger_name=logger_name,
            level=level if isinstance(level, (int, str)) else "INFO",
            log_to_stdout=bool(section.get("log_to_stdout", False)),
            redactor=None if section.get("redact_secrets", True) else _keep,
        )
    )
    configure_structlog()
    return handle


def configure_structlog() -> None:
    """Hand structlog event dicts to stdlib logging for ``ProcessorFormatter`` to render."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


class _JsonLineEnvelope:
    """ProcessorFormatter step that reshapes an event dict into the JSON-line layout."""

    def __init__(self, session_id: str, redactor: LogRedactor) -> None:
        self._session_id = session_id
        self._redactor = redactor

    def __call__(self, logger: Any, method_name: str, event_dict: Any) -> dict[str, Any]:
        record = event_dict.get("_record")
        line: dict[str, Any] = {
            "timestamp": _epoch_to_iso(record.created if record else time.time()),
            "level": record.levelname if record else method_name.upper(),
            "logger": record.name if record else str(logger),
            "message": _as_text(self._redactor(_jsonable(event_dict.get("event", "")))),
            "session_id": self._session_id,
        }
        line.update(get_correlation_context())

        fields: dict[str, JSONValue] = {}
        for key, value in event_dict.items():
            if key.startswith("_") or key in _ENVELOPE_KEYS:
                continue
            if key in CORRELATION_KEYS:
                if isinstance(value, str) and value.strip():
                    line[key] = value.strip()
                continue
            fields[key] = _jsonable(value)
        if fields:
            line["fields"] = self._redactor(fields)

        exception = event_dict.get("exception")
        if exception:
            line["exception"] = _as_text(self._redactor(str(exception)))
        return line


class _DroppingQueueHandler(logging.handlers.QueueHandler):
    """Formats on the caller's thread and never blocks it; overflow is counted, not queued."""

    def __init__(self, log_queue: queue.Queue[Any]) -> None:
        super().__init__(log_queue)
        self._dropped = 0
        self._dropped_lock = threading.Lock()

    @property
    def dropped(self) -> int:
        with self._dropped_lock:
            return self._dropped

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._dropped_lock:
                self._dropped += 1


class StructuredLoggingHandle:
    """The running pipeline for one session; ``shutdown`` drains it and closes the file."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        session_id: str,
        log_path: Path,
        queue_handler: _DroppingQueueHandler,
        listener: logging.handlers.QueueListener,
        sinks: tuple[logging.Handler, ...],
    ) -> None:
        self.logger = logger
        self.session_id = session_id
        self.log_path = log_path
        self._queue_handler = queue_handler
        self._listener = listener
        self._sinks = sinks
        self._lock = threading.Lock()
        self._closed = False

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    @property
    def is_shutdown(self) -> bool:
        return self._closed

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        pending = self._listener.queue
        deadline = time.monotonic() + max(timeout_seconds, 0.0)
        while getattr(pending, "unfinished_tasks", 0) and time.monotonic() < deadline:
            time.sleep(0.01)
        for sink in self._sinks:
            sink.flush()

    def shutdown(self, *, timeout_seconds: float = 2.0) -> None:
        with self._lock:
            if self._closed:
                return
            self.flush(timeout_seconds=timeout_seconds)
            # stop() enqueues a sentinel and joins, so everything queued is written.
            self._listener.stop()
            self.logger.removeHandler(self._queue_handler)
            self._queue_handler.close()
            for sink in self._sinks:
                sink.close()
            self._closed = True


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Replace any active session pipeline with one built from ``config``."""
    shutdown_logging()

    session_id = _non_blank(config.session_id, "session_id")
    logger_name = _non_blank(config.logger_name, "logger_name")
    filename = _non_blank(config.log_filename, "log_filename")
    if Path(filename).name != filename:
        raise ValueError("log_filename must not include path separators")
    if config.queue_size <= 0:
        raise ValueError("queue_size must be > 0")
    level = _level(config.level)

    session_dir = Path(config.base_log_dir) / session_id
    session_dir.mkdir(parents=True, exist_ok=True)
    log_path = session_dir / filename

    sinks: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if config.log_to_stdout:
        sinks.append(logging.StreamHandler())
    for sink in sinks:
        sink.setLevel(level)

    queue_handler = _DroppingQueueHandler(queue.Queue(maxsize=config.queue_size))
    queue_handler.setLevel(level)
    queue_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=[structlog.stdlib.ExtraAdder()],
            processors=[
                structlog.processors.format_exc_info,
                _JsonLineEnvelope(session_id, config.redactor or default_log_redactor),
                structlog.processors.JSONRenderer(
                    sort_keys=True, separators=(",", ":"), ensure_ascii=False
                ),
            ],
        )
    )

    logger = logging.getLogger(logger_name)
    logger.setLevel(level)
    logger.propagate = False
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()

    listener = logging.handlers.QueueListener(
        queue_handler.queue, *sinks, respect_handler_level=True
    )
    listener.start()
    logger.addHandler(queue_handler)

    handle = StructuredLoggingHandle(
        logger=logger,
        session_id=session_id,
        log_path=log_path,
        queue_handler=queue_handler,
        listener=listener,
        sinks=tuple(sinks),
    )
    global _active, _atexit_hooked
    with _active_lock:
        _active = handle
        if not _atexit_hooked:
            atexit.register(shutdown_logging)
            _atexit_hooked = True
    return handle


def shutdown_logging(
    handle: StructuredLoggingHandle | None = None,
    *,
    timeout_seconds: float = 2.0,
) -> None:
    """Drain and close ``handle``, or the active session when none is given."""
    global _active
    target = handle if handle is not None else get_active_logging_handle()
    if target is None:
        return
    target.shutdown(timeout_seconds=timeout_seconds)
    with _active_lock:
        if _active is target:
            _active = None


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    with _active_lock:
        return _active


def get_correlation_context() -> dict[str, str]:
    return dict(_correlation.get())


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind correlation fields for every record logged inside the block.

    Scopes nest; passing ``None`` for a key unbinds it until the block exits.
    """
    bound = get_correlation_context()
    for key, value in fields.items():
        name = _non_blank(key, "correlation key")
        if value is None:
            bound.pop(name, None)
        else:
            bound[name] = _non_blank(value, "correlation value")
    token = _correlation.set(tuple(bound.items()))
    try:
        yield
    finally:
        _correlation.reset(token)


def default_log_redactor(value: JSONValue) -> JSONValue:
    """Mask values under secret-looking keys, ``key=value`` credentials and bearer tokens."""
    return _redact(value, under_key=None)


def _redact(value: JSONValue, *, under_key: str | None) -> JSONValue:
    if under_key is not None and any(part in under_key.lower() for part in _SECRET_KEY_PARTS):
        return REDACTED
    if isinstance(value, str):
        masked = _INLINE_SECRET.sub(lambda m: f"{m.group(1)}{m.group(2)}{REDACTED}", value)
        return _BEARER.sub(f"Bearer {REDACTED}", masked)
    if isinstance(value, list):
        return [_redact(item, under_key=None) for item in value]
    if isinstance(value, dict):
        return {key: _redact(item, under_key=key) for key, item in value.items()}
    return value


def _keep(value: JSONValue) -> JSONValue:
    return value


def _jsonable(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else REDACTED
    if isinstance(value, datetime):
        aware = value if value.utcoffset() is not None else value.replace(tzinfo=UTC)
        return aware.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, (set, frozenset)):
        items = [_jsonable(item) for item in value]
        return sorted(items, key=lambda item: json.dumps(item, sort_keys=True))
    return repr(value)


def _as_text(value: JSONValue) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _epoch_to_iso(epoch_seconds: float) -> str:
    moment = datetime.fromtimestamp(epoch_seconds, tz=UTC)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _non_blank(value: object, label: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{label} must be a string, got {type(value).__name__}")
    text = value.strip()
    if not text:
        raise ValueError(f"{label} must not be empty")
    return text


def _level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        resolved = logging.getLevelName(value.strip().upper())
        if isinstance(resolved, int):
            return resolved
    raise ValueError(f"unsupported logging level {value!r}")


__all__ = [
    "CORRELATION_KEYS",
    "JSONValue",
    "LogRedactor",
    "LoggingConfig",
    "REDACTED",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "get_active_logging_handle",
    "get_correlation_context",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
