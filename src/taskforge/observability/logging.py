"""
JSON-lines run logs.

Records from the ``taskforge`` logger tree (structlog events included, see
``configure_structlog``) go through a queue to a file sink at
``<logs>/<run_id>/taskforge.jsonl``. Each line carries the correlation fields
bound with ``correlation_scope`` and a redacted ``fields`` object.
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
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

import structlog

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

REDACTED: Final[str] = "***REDACTED***"
LOG_FILENAME: Final[str] = "taskforge.jsonl"

_CORRELATION_KEYS: Final[tuple[str, ...]] = ("run_id", "task_id", "iteration")
_SENSITIVE_KEY_TERMS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "cookie",
)
# Usage counters are numbers, not credentials.
_USAGE_KEYS: Final[frozenset[str]] = frozenset({"tokens", "estimated_tokens", "used_tokens"})

_INLINE_SECRET_RE: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|authorization)\b\s*([:=])\s*([^\s,;]+)"
)
_BEARER_RE: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")
_PROVIDER_KEY_RE: Final[re.Pattern[str]] = re.compile(r"\bsk-(?:ant-)?[A-Za-z0-9_-]{12,}\b")

# Attributes every LogRecord has; anything else on a record is an extra field.
_RECORD_ATTRIBUTES: Final[frozenset[str]] = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "correlation"}

_CORRELATION: contextvars.ContextVar[tuple[tuple[str, str], ...]] = contextvars.ContextVar(
    "taskforge_correlation", default=()
)

_ACTIVE_LOCK = threading.Lock()
_ACTIVE: StructuredLoggingHandle | None = None
_ATEXIT_REGISTERED = False


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    base_log_dir: Path | str
    run_id: str | None = None
    logger_name: str = "taskforge"
    level: int | str = "INFO"
    log_filename: str = LOG_FILENAME


class _CorrelatingQueueHandler(logging.handlers.QueueHandler):
    """Snapshot the caller's correlation context before the record changes threads."""

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        context = get_correlation_context()
        if context:
            record.correlation = context
        prepared: logging.LogRecord = super().prepare(record)
        return prepared


class _JsonLineFormatter(logging.Formatter):
    def __init__(self, run_id: str | None) -> None:
        super().__init__()
        self._run_id = run_id

    def format(self, record: logging.LogRecord) -> str:
        event: dict[str, JSONValue] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": _redact_string(record.getMessage()),
        }
        event.update(sorted(self._correlation(record).items()))

        extras = {
            key: _to_json(value)
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRIBUTES
            and key not in _CORRELATION_KEYS
            and not key.startswith("_")
        }
        if extras:
            event["fields"] = default_log_redactor(extras)
        if record.exc_info is not None:
            event["exception"] = _redact_string(self.formatException(record.exc_info))
        return json.dumps(event, sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    def _correlation(self, record: logging.LogRecord) -> dict[str, str]:
        merged = {"run_id": self._run_id} if self._run_id else {}
        bound = getattr(record, "correlation", None)
        if isinstance(bound, Mapping):
            merged.update({str(key): str(value) for key, value in bound.items()})
        # Explicit keyword fields (structlog ``task_id=...``) win over the bound scope.
        for key in _CORRELATION_KEYS:
            value = getattr(record, key, None)
            if isinstance(value, (str, int)) and not isinstance(value, bool) and str(value).strip():
                merged[key] = str(value).strip()
        return merged


class StructuredLoggingHandle:
    """One active JSON-lines sink; ``shutdown`` drains the queue and closes the file."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        log_path: Path,
        queue_handler: logging.Handler,
        file_handler: logging.Handler,
        listener: logging.handlers.QueueListener,
    ) -> None:
        self.logger = logger
        self.log_path = log_path
        self._queue_handler = queue_handler
        self._file_handler = file_handler
        self._listener = listener
        self._lock = threading.Lock()
        self._is_shutdown = False

    @property
    def is_shutdown(self) -> bool:
        return self._is_shutdown

    def shutdown(self) -> None:
        with self._lock:
            if self._is_shutdown:
                return
            self.logger.removeHandler(self._queue_handler)
            self._listener.stop()
            self._queue_handler.close()
            self._file_handler.close()
            self._is_shutdown = True


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Attach a queue-backed JSON-lines sink to ``config.logger_name``."""

    if not config.log_filename or Path(config.log_filename).name != config.log_filename:
        raise ValueError("log_filename must be a bare file name")
    level = _parse_log_level(config.level)
    shutdown_logging()

    log_dir = Path(config.base_log_dir)
    if config.run_id:
        log_dir = log_dir / config.run_id
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / config.log_filename

    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(_JsonLineFormatter(config.run_id))

    log_queue: queue.SimpleQueue[logging.LogRecord] = queue.SimpleQueue()
    queue_handler = _CorrelatingQueueHandler(log_queue)
    listener = logging.handlers.QueueListener(log_queue, file_handler)

    logger = logging.getLogger(config.logger_name)
    logger.setLevel(level)
    logger.propagate = False
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()
    listener.start()
    logger.addHandler(queue_handler)

    handle = StructuredLoggingHandle(
        logger=logger,
        log_path=log_path,
        queue_handler=queue_handler,
        file_handler=file_handler,
        listener=listener,
    )
    global _ACTIVE, _ATEXIT_REGISTERED
    with _ACTIVE_LOCK:
        _ACTIVE = handle
        if not _ATEXIT_REGISTERED:
            atexit.register(shutdown_logging)
            _ATEXIT_REGISTERED = True
    return handle


def configure_structlog(level: int | str = "INFO") -> None:
    """
    Route ``structlog`` events through stdlib logging.

    Event keys become record extras, so they land in the ``fields`` object of
    the JSON-lines log next to the correlation fields.
    """

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.format_exc_info,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(_parse_log_level(level)),
        cache_logger_on_first_use=False,
    )


def shutdown_logging(handle: StructuredLoggingHandle | None = None) -> None:
    global _ACTIVE
    with _ACTIVE_LOCK:
        resolved = handle if handle is not None else _ACTIVE
        if resolved is not None and resolved is _ACTIVE:
            _ACTIVE = None
    if resolved is not None:
        resolved.shutdown()


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    with _ACTIVE_LOCK:
        return _ACTIVE


def get_correlation_context() -> dict[str, str]:
    return dict(_CORRELATION.get())


@contextmanager
def correlation_scope(**fields: str | int | None) -> Iterator[None]:
    """Bind correlation fields for records logged in scope; ``None`` unbinds a key."""

    state = get_correlation_context()
    for key, value in fields.items():
        if value is None:
            state.pop(key, None)
            continue
        text = str(value).strip()
        if not text:
            raise ValueError(f"correlation value for {key!r} must not be empty")
        state[key] = text
    token = _CORRELATION.set(tuple(state.items()))
    try:
        yield
    finally:
        _CORRELATION.reset(token)


def default_log_redactor(value: JSONValue, *, key: str | None = None) -> JSONValue:
    """Mask values under secret-looking keys and inline credentials in strings."""

    if key is not None and _is_sensitive_key(key):
        return REDACTED
    if isinstance(value, str):
        return _redact_string(value)
    if isinstance(value, list):
        return [default_log_redactor(item) for item in value]
    if isinstance(value, dict):
        return {name: default_log_redactor(item, key=name) for name, item in value.items()}
    return value


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return lowered not in _USAGE_KEYS and any(term in lowered for term in _SENSITIVE_KEY_TERMS)


def _redact_string(text: str) -> str:
    text = _INLINE_SECRET_RE.sub(lambda match: f"{match[1]}{match[2]}{REDACTED}", text)
    text = _BEARER_RE.sub(f"Bearer {REDACTED}", text)
    return _PROVIDER_KEY_RE.sub(REDACTED, text)


def _parse_log_level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    parsed = logging.getLevelName(value.strip().upper())
    if isinstance(parsed, int):
        return parsed
    raise ValueError(f"unsupported logging level {value!r}")


def _to_json(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else str(value)
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, Mapping):
        return {str(key): _to_json(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_to_json(item) for item in value]
    return repr(value)


__all__ = [
    "JSONScalar",
    "JSONValue",
    "LoggingConfig",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "get_active_logging_handle",
    "get_correlation_context",
    "setup_structured_logging",
    "shutdown_logging",
]
