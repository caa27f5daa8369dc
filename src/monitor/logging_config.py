"""Logging for the session monitor.

Every component logs through a `monitor.<namespace>` logger. Records are
printed to stdout and, when streaming is enabled, kept in a ring buffer
that WebSocket clients can read back and subscribe to.
"""

import logging
import sys
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from .config import LOG_BUFFER_SIZE, LOG_FORMAT, LOG_LEVEL, LOG_STREAM_ENABLED

NAMESPACES = {
    'watcher': 'File Tailing',
    'parser': 'Transcript Parsing',
    'matcher': 'Session Matching',
    'monitor': 'Repository Monitor',
    'store': 'Mapping Store',
    'git': 'Git Operations',
    'ws': 'WebSocket',
    'api': 'API Routes',
}

LOGGER_PREFIX = 'monitor'
DEFAULT_NAMESPACE = 'general'


def namespace_for(logger_name: str) -> str:
    """Map a logger name to its namespace ('monitor.ws' -> 'ws')."""
    prefix, _, rest = logger_name.partition('.')
    if prefix == LOGGER_PREFIX and rest:
        namespace = rest.split('.', 1)[0]
        if namespace in NAMESPACES:
            return namespace
    return DEFAULT_NAMESPACE


def resolve_level(level: str | int) -> int:
    """Turn a level name or number into a logging level (INFO if unknown)."""
    if isinstance(level, int):
        return level
    value = logging.getLevelName(level.upper())
    return value if isinstance(value, int) else logging.INFO


@dataclass(frozen=True)
class LogEntry:
    timestamp: str
    level: str
    namespace: str
    message: str

    @classmethod
    def from_record(cls, record: logging.LogRecord, message: str) -> 'LogEntry':
        return cls(
            timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            level=record.levelname,
            namespace=namespace_for(record.name),
            message=message,
        )

    def to_dict(self) -> dict:
        return asdict(self)


class WebSocketLogHandler(logging.Handler):
    """Keeps the most recent log entries and hands each new one to a callback.

    The callback runs on whatever thread emitted the record, so it must not
    touch the event loop directly.
    """

    def __init__(self, buffer_size: int = LOG_BUFFER_SIZE):
        super().__init__()
        self.buffer: deque[LogEntry] = deque(maxlen=buffer_size)
        self.broadcast_callback: Optional[Callable[[LogEntry], None]] = None

    def emit(self, record: logging.LogRecord):
        try:
            entry = LogEntry.from_record(record, self.format(record))
            self.buffer.append(entry)
            if self.broadcast_callback is not None:
                self.broadcast_callback(entry)
        except Exception:
            self.handleError(record)

    def get_history(self, count: int = 100, namespaces: Optional[set[str]] = None) -> list[dict]:
        """Most recent `count` entries, oldest first, optionally by namespace."""
        if count <= 0:
            return []
        entries = [e for e in self.buffer if not namespaces or e.namespace in namespaces]
        return [e.to_dict() for e in entries[-count:]]

    def set_broadcast_callback(self, callback: Optional[Callable[[LogEntry], None]]):
        self.broadcast_callback = callback


_ws_log_handler: Optional[WebSocketLogHandler] = None


def get_ws_log_handler() -> WebSocketLogHandler:
    """The process-wide buffering handler, created on first use."""
    global _ws_log_handler
    if _ws_log_handler is None:
        _ws_log_handler = WebSocketLogHandler()
        _ws_log_handler.setFormatter(logging.Formatter('%(message)s'))
    return _ws_log_handler


def setup_logging(
    level: str | int = LOG_LEVEL,
    log_format: str = LOG_FORMAT,
    stream_logs: bool = LOG_STREAM_ENABLED,
) -> None:
    """Install the console handler and, if enabled, the buffering handler.

    Replaces any handlers already on the root logger.
    """
    log_level = resolve_level(level)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter(log_format))
    root_logger.addHandler(console_handler)

    if stream_logs:
        root_logger.addHandler(get_ws_log_handler())

    set_log_level(log_level)

    # Third-party chatter
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("watchfiles").setLevel(logging.WARNING)


def set_log_level(level: str | int) -> int:
    """Apply a level to the root logger, its handlers and every namespace.

    Returns the numeric level applied.
    """
    log_level = resolve_level(level)
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers:
        handler.setLevel(log_level)
    for namespace in NAMESPACES:
        logging.getLogger(f'{LOGGER_PREFIX}.{namespace}').setLevel(log_level)
    return log_level


def get_logger(name: str, namespace: Optional[str] = None) -> logging.Logger:
    """Logger for a module, grouped under `monitor.<namespace>` when known."""
    if namespace in NAMESPACES:
        return logging.getLogger(f'{LOGGER_PREFIX}.{namespace}')
    return logging.getLogger(name)
