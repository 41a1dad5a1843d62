"""
Core modules for the stdio worker fleet client.
"""

from .message import RpcMessage, MessageKind, JSONRPC_VERSION
from .errors import (
    FleetError,
    ConfigurationError,
    DuplicateWorkerError,
    SpawnError,
    HandshakeError,
    RequestTimeoutError,
    MalformedMessageError,
    UnknownWorkerError,
    UnknownOperationError,
    NotConnectedError,
    ProcessExitError,
    RemoteCallError,
    ConnectError,
)
from .config import ClientConfig, WorkerOptions
from .timers import Scheduler, AsyncioScheduler, ManualScheduler
from .correlator import RequestCorrelator, PendingRequest
from .catalog import Operation, Resource, CapabilityAggregator
from .supervisor import (
    WorkerDefinition,
    WorkerConnection,
    WorkerState,
    WorkerStatus,
    spawn_process,
)
from .health import HealthMonitor, HealthRecord
from .events import ClientEvent, Event, EventNotifier
from .client import FleetClient
from .worker import StdioWorker, operation, resource
from .metrics import Metrics, MetricsSnapshot
from .logging import (
    StructuredLogger,
    LogEntry,
    LogEvent,
    LogLevel,
    LogHandler,
    default_json_handler,
    default_pretty_handler,
    stdlib_handler,
)

__all__ = [
    "RpcMessage",
    "MessageKind",
    "JSONRPC_VERSION",
    "FleetClient",
    "StdioWorker",
    "operation",
    "resource",
    # Errors
    "FleetError",
    "ConfigurationError",
    "DuplicateWorkerError",
    "SpawnError",
    "HandshakeError",
    "RequestTimeoutError",
    "MalformedMessageError",
    "UnknownWorkerError",
    "UnknownOperationError",
    "NotConnectedError",
    "ProcessExitError",
    "RemoteCallError",
    "ConnectError",
    # Config and timers
    "ClientConfig",
    "WorkerOptions",
    "Scheduler",
    "AsyncioScheduler",
    "ManualScheduler",
    # Supervision
    "RequestCorrelator",
    "PendingRequest",
    "WorkerDefinition",
    "WorkerConnection",
    "WorkerState",
    "WorkerStatus",
    "spawn_process",
    # Catalog
    "Operation",
    "Resource",
    "CapabilityAggregator",
    # Health and events
    "HealthMonitor",
    "HealthRecord",
    "ClientEvent",
    "Event",
    "EventNotifier",
    # Metrics
    "Metrics",
    "MetricsSnapshot",
    # Logging
    "StructuredLogger",
    "LogEntry",
    "LogEvent",
    "LogLevel",
    "LogHandler",
    "default_json_handler",
    "default_pretty_handler",
    "stdlib_handler",
]
