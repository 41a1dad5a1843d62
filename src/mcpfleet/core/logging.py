"""
Structured logging for fleet observability.

Provides JSON-formatted logs with pluggable output handlers.
"""

import json
import logging as _stdlib_logging
import sys
import time
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Optional, Dict
from enum import Enum


class LogLevel(Enum):
    """Log levels for structured logging."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class LogEvent(Enum):
    """Standard log events for fleet operations."""

    # Client lifecycle
    CLIENT_INIT = "client_init"
    CLIENT_CONNECT = "client_connect"
    CLIENT_DISCONNECT = "client_disconnect"

    # Worker lifecycle
    WORKER_REGISTER = "worker_register"
    WORKER_READY = "worker_ready"
    WORKER_RECONNECT = "worker_reconnect"
    WORKER_FAILED = "worker_failed"

    # Process
    PROCESS_SPAWN = "process_spawn"
    PROCESS_EXIT = "process_exit"
    PROCESS_STDERR = "process_stderr"

    # Protocol
    HANDSHAKE = "handshake"
    MALFORMED_MESSAGE = "malformed_message"
    UNMATCHED_RESPONSE = "unmatched_response"

    # Requests
    REQUEST_START = "request_start"
    REQUEST_END = "request_end"
    REQUEST_TIMEOUT = "request_timeout"
    REQUEST_ERROR = "request_error"

    # Health
    HEALTH_CHECK = "health_check"
    HEALTH_UNHEALTHY = "health_unhealthy"

    # Notifier
    HANDLER_ERROR = "handler_error"


@dataclass
class LogEntry:
    """
    Structured log entry with all context.

    Can be serialized to JSON or passed to custom handlers.
    """

    # Required
    event: str
    level: str
    message: str
    timestamp: float = field(default_factory=time.time)

    # Context
    worker: Optional[str] = None
    request_id: Optional[int] = None
    method: Optional[str] = None

    # Timing
    duration_ms: Optional[float] = None

    # Status
    success: Optional[bool] = None
    error: Optional[str] = None

    # Custom metadata
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, omitting None values."""
        result = {}
        for key, value in asdict(self).items():
            if value is not None:
                result[key] = value
        return result

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), default=str)


# Type alias for log handler
LogHandler = Callable[[LogEntry], None]


class StructuredLogger:
    """
    Structured logger with pluggable handlers.

    Usage:
        logger = StructuredLogger(handler=lambda entry: print(entry.to_json()))

        logger.info(LogEvent.WORKER_READY, "Worker ready", worker="math")
        logger.warn(LogEvent.REQUEST_TIMEOUT, "Timed out", worker="math", request_id=7)

    Integration with FleetClient:
        client = FleetClient(log_handler=default_pretty_handler)
    """

    def __init__(
        self,
        handler: Optional[LogHandler] = None,
        level: LogLevel = LogLevel.INFO,
    ):
        self.handler = handler
        self.level = level
        self._level_order = {
            LogLevel.DEBUG: 0,
            LogLevel.INFO: 1,
            LogLevel.WARN: 2,
            LogLevel.ERROR: 3,
        }

    def set_handler(self, handler: Optional[LogHandler]):
        """Set or update the log handler."""
        self.handler = handler

    def _should_log(self, level: LogLevel) -> bool:
        """Check if this level should be logged."""
        return self._level_order.get(level, 0) >= self._level_order.get(self.level, 0)

    def log(
        self,
        event: LogEvent,
        message: str,
        level: LogLevel = LogLevel.INFO,
        **kwargs,
    ):
        """
        Log an event with structured data.

        Args:
            event: The event type (from LogEvent enum)
            message: Human-readable message
            level: Log level (default: INFO)
            **kwargs: Additional fields for LogEntry
        """
        if not self.handler or not self._should_log(level):
            return

        entry = LogEntry(
            event=event.value,
            level=level.value,
            message=message,
            **kwargs,
        )

        try:
            self.handler(entry)
        except Exception as e:
            # Don't let logging errors break the client
            print(f"Log handler error: {e}", file=sys.stderr)

    def debug(self, event: LogEvent, message: str, **kwargs):
        """Log at DEBUG level."""
        self.log(event, message, level=LogLevel.DEBUG, **kwargs)

    def info(self, event: LogEvent, message: str, **kwargs):
        """Log at INFO level."""
        self.log(event, message, level=LogLevel.INFO, **kwargs)

    def warn(self, event: LogEvent, message: str, **kwargs):
        """Log at WARN level."""
        self.log(event, message, level=LogLevel.WARN, **kwargs)

    def error(self, event: LogEvent, message: str, **kwargs):
        """Log at ERROR level."""
        self.log(event, message, level=LogLevel.ERROR, **kwargs)

    # Convenience methods for common events

    def request_start(self, worker: str, request_id: int, method: str):
        """Log request start."""
        self.debug(
            LogEvent.REQUEST_START,
            f"Sending {method}",
            worker=worker,
            request_id=request_id,
            method=method,
        )

    def request_end(
        self,
        worker: str,
        request_id: int,
        method: str,
        duration_ms: float,
        success: bool = True,
        error: Optional[str] = None,
    ):
        """Log request completion."""
        event = LogEvent.REQUEST_END if success else LogEvent.REQUEST_ERROR
        level = LogLevel.DEBUG if success else LogLevel.WARN
        self.log(
            event,
            f"{'Completed' if success else 'Failed'} {method}",
            level=level,
            worker=worker,
            request_id=request_id,
            method=method,
            duration_ms=round(duration_ms, 2),
            success=success,
            error=error,
        )

    def process_spawn(self, worker: str, pid: Optional[int], command: str):
        """Log worker process start."""
        self.info(
            LogEvent.PROCESS_SPAWN,
            f"Spawned {command}",
            worker=worker,
            metadata={"pid": pid},
        )

    def process_exit(self, worker: str, exit_code: Optional[int]):
        """Log worker process exit."""
        level = LogLevel.INFO if exit_code == 0 else LogLevel.WARN
        self.log(
            LogEvent.PROCESS_EXIT,
            f"Worker process exited with code {exit_code}",
            level=level,
            worker=worker,
            metadata={"exit_code": exit_code},
        )


def default_json_handler(entry: LogEntry):
    """Default handler that prints JSON to stderr."""
    print(entry.to_json(), file=sys.stderr)


def default_pretty_handler(entry: LogEntry):
    """Default handler that prints human-readable output."""
    timestamp = time.strftime("%H:%M:%S", time.localtime(entry.timestamp))
    level = entry.level.upper().ljust(5)
    prefix = f"[{timestamp}] [{level}]"

    parts = [prefix, entry.event]
    if entry.worker:
        parts.append(f"[{entry.worker}]")
    parts.append(entry.message)

    if entry.request_id is not None:
        parts.append(f"req={entry.request_id}")
    if entry.duration_ms is not None:
        parts.append(f"{entry.duration_ms:.1f}ms")
    if entry.error:
        parts.append(f"error={entry.error}")

    print(" ".join(parts), file=sys.stderr)


_STDLIB_LEVELS = {
    LogLevel.DEBUG.value: _stdlib_logging.DEBUG,
    LogLevel.INFO.value: _stdlib_logging.INFO,
    LogLevel.WARN.value: _stdlib_logging.WARNING,
    LogLevel.ERROR.value: _stdlib_logging.ERROR,
}


def stdlib_handler(entry: LogEntry):
    """Handler that forwards entries to the standard 'mcpfleet' logger."""
    logger = _stdlib_logging.getLogger("mcpfleet")
    level = _STDLIB_LEVELS.get(entry.level, _stdlib_logging.INFO)
    if entry.worker:
        logger.log(level, "[%s] %s", entry.worker, entry.message, extra={"entry": entry.to_dict()})
    else:
        logger.log(level, "%s", entry.message, extra={"entry": entry.to_dict()})
