"""
mcpfleet - one client for a fleet of stdio JSON-RPC workers

Each worker is a separate process speaking newline-delimited JSON-RPC 2.0 on
its stdin/stdout and exposing a catalog of operations and resources. The
client spawns every worker, discovers its catalog, routes calls, recovers
from crashes and monitors liveness.

## Quick Start

### Worker script
```python
from mcpfleet import StdioWorker, operation, resource

class MathWorker(StdioWorker):
    @operation(description="Add two numbers", input_schema={
        "type": "object",
        "properties": {"a": {"type": "number"}, "b": {"type": "number"}},
        "required": ["a", "b"],
    })
    def add(self, a, b):
        return a + b

    @resource("math://constants", mime_type="application/json")
    def constants(self):
        return {"pi": 3.14159}

if __name__ == "__main__":
    MathWorker().run()
```

### Client
```python
from mcpfleet import FleetClient

client = FleetClient(timeout=5.0, auto_reconnect=True)
client.register("math", "workers/math_worker.py")
client.register("text", "workers/text_worker.py")
await client.connect()

print([op.name for op in client.get_all_operations()])
result = await client.invoke_operation("math", "add", {"a": 1, "b": 2})
constants = await client.read_resource("math", "math://constants")

await client.disconnect()
```

### With Observability (Events, Metrics & Logging)
```python
from mcpfleet import FleetClient, ClientEvent, default_json_handler

client = FleetClient(log_handler=default_json_handler)
client.on(ClientEvent.WORKER_RECONNECTING, lambda e: print(e["worker"], e["attempt"]))

async with client:
    await client.invoke_operation("math", "add", {"a": 1, "b": 2})
    metrics = client.get_metrics()
    print(f"Avg latency: {metrics.latency_avg_ms}ms")
    print(f"Error rate: {metrics.error_rate}")
```

## Configuration

`ClientConfig.from_env()` reads MCPFLEET_* variables (MCPFLEET_TIMEOUT,
MCPFLEET_AUTO_RECONNECT, ...). Keyword overrides passed to FleetClient win
over the config object.

## Exports

- FleetClient: Supervises workers and routes calls
- StdioWorker, operation, resource: Building blocks for worker scripts
- RpcMessage: Wire message container
- ClientConfig: Client settings
- ClientEvent: Event names for FleetClient.on()
- Metrics: Metrics collection for observability
- StructuredLogger: Structured logging with correlation ids
"""

from .core.client import FleetClient
from .core.worker import StdioWorker, operation, resource
from .core.message import RpcMessage, MessageKind
from .core.config import ClientConfig, WorkerOptions
from .core.timers import Scheduler, AsyncioScheduler, ManualScheduler
from .core.catalog import Operation, Resource
from .core.supervisor import WorkerDefinition, WorkerState, WorkerStatus
from .core.health import HealthRecord
from .core.events import ClientEvent, Event
from .core.errors import (
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
from .core.metrics import Metrics, MetricsSnapshot
from .core.logging import (
    StructuredLogger,
    LogEntry,
    LogEvent,
    LogLevel,
    LogHandler,
    default_json_handler,
    default_pretty_handler,
    stdlib_handler,
)

__version__ = "0.1.0"
__all__ = [
    # Core
    "FleetClient",
    "StdioWorker",
    "operation",
    "resource",
    "RpcMessage",
    "MessageKind",
    "ClientConfig",
    "WorkerOptions",
    "Scheduler",
    "AsyncioScheduler",
    "ManualScheduler",
    "Operation",
    "Resource",
    "WorkerDefinition",
    "WorkerState",
    "WorkerStatus",
    "HealthRecord",
    "ClientEvent",
    "Event",
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
