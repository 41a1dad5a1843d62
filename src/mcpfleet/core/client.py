"""
FleetClient: one client, many stdio workers.
"""

import asyncio
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from .catalog import CapabilityAggregator, Operation, Resource
from .config import ClientConfig, WorkerOptions
from .errors import (
    ConfigurationError,
    ConnectError,
    DuplicateWorkerError,
    NotConnectedError,
    UnknownOperationError,
    UnknownWorkerError,
)
from .events import ClientEvent, EventHandler, EventNotifier
from .health import HealthMonitor, HealthRecord
from .logging import LogEvent, LogHandler, LogLevel, StructuredLogger, default_pretty_handler
from .metrics import Metrics, MetricsSnapshot
from .supervisor import Spawner, WorkerConnection, WorkerDefinition, WorkerStatus
from .timers import AsyncioScheduler, Scheduler


class FleetClient:
    """
    Client for a fleet of stdio JSON-RPC workers.

    Features:
    - Concurrent spawn and handshake of every registered worker
    - Merged catalog of operations and resources, stamped with their worker
    - Per-request timeouts, crash detection and optional auto-reconnect
    - Periodic health probes, request metrics and event subscriptions

    Usage:
        async with FleetClient(timeout=5.0) as client:   # connects on enter
            ...

        client = FleetClient()
        client.register("math", "workers/math_worker.py")
        await client.connect()
        result = await client.invoke_operation("math", "add", {"a": 1, "b": 2})
        await client.disconnect()
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        *,
        scheduler: Optional[Scheduler] = None,
        spawner: Optional[Spawner] = None,
        log_handler: Optional[LogHandler] = None,
        log_level: LogLevel = LogLevel.INFO,
        **overrides: Any,
    ):
        config = config or ClientConfig()
        if overrides:
            config = config.with_overrides(**overrides)
        self.config = config

        if log_handler is None and config.debug:
            log_handler = default_pretty_handler
        if config.debug:
            log_level = LogLevel.DEBUG

        self._scheduler = scheduler or AsyncioScheduler()
        self._spawner = spawner
        self._logger = StructuredLogger(handler=log_handler, level=log_level)
        self._notifier = EventNotifier(self._logger)
        self._metrics = Metrics(clock=self._scheduler.time)
        self._catalog = CapabilityAggregator()
        # Insertion order is registration order
        self._workers: Dict[str, WorkerConnection] = {}
        self._health = HealthMonitor(
            lambda: list(self._workers.values()),
            self._scheduler,
            self._notifier,
            self._logger,
            interval=config.health_check_interval,
            probe_method=config.health_probe_method,
        )

        self._connected = False
        self._connect_task: Optional[asyncio.Task] = None
        # A permanently failed worker means the next connect() must retry it
        self._notifier.subscribe(ClientEvent.WORKER_FAILED, self._on_worker_failed)

        self._logger.debug(
            LogEvent.CLIENT_INIT,
            "Client created",
            metadata={"timeout": config.timeout, "auto_reconnect": config.auto_reconnect},
        )

    # Registration

    def register(
        self,
        name: str,
        script_path: str,
        working_dir: Optional[str] = None,
        *,
        executable: Optional[str] = None,
        args: Sequence[str] = (),
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        max_reconnect_attempts: Optional[int] = None,
        auto_reconnect: Optional[bool] = None,
    ) -> WorkerDefinition:
        """
        Add a worker definition. Nothing is spawned until connect().

        Raises:
            DuplicateWorkerError: If a worker with this name exists
            ConfigurationError: If called while connect() is in progress
        """
        if name in self._workers:
            raise DuplicateWorkerError(f"Worker '{name}' is already registered")
        if self._connect_task is not None:
            raise ConfigurationError(
                f"Cannot register worker '{name}' while connect() is in progress"
            )

        definition = WorkerDefinition(
            name=name,
            script_path=script_path,
            working_dir=working_dir,
            executable=executable,
            args=tuple(args),
            env=dict(env) if env else None,
            options=WorkerOptions(
                timeout=timeout,
                max_reconnect_attempts=max_reconnect_attempts,
                auto_reconnect=auto_reconnect,
            ),
        )
        self._workers[name] = WorkerConnection(
            definition,
            self.config,
            scheduler=self._scheduler,
            notifier=self._notifier,
            logger=self._logger,
            metrics=self._metrics,
            handshake=self._catalog.discover,
            on_catalog_changed=self._on_catalog_changed,
            spawner=self._spawner,
        )
        # A new worker must go through connect() before the client counts as connected
        self._connected = False

        self._logger.info(
            LogEvent.WORKER_REGISTER,
            f"Registered {' '.join(definition.command)}",
            worker=name,
        )
        self._notifier.emit(
            ClientEvent.WORKER_REGISTERED,
            worker=name,
            script_path=script_path,
            working_dir=working_dir,
        )
        return definition

    @property
    def workers(self) -> List[str]:
        """Registered worker names in registration order."""
        return list(self._workers)

    @property
    def is_connected(self) -> bool:
        return self._connected

    # Lifecycle

    async def connect(self) -> None:
        """
        Spawn and handshake every worker not yet connected.

        Concurrent callers share one in-flight attempt. A worker that crashed
        and ran out of reconnect attempts is spawned again here.

        Raises:
            ConnectError: If any worker failed; the others stay connected
        """
        if self._connected:
            return
        if self._connect_task is None:
            self._connect_task = asyncio.get_running_loop().create_task(self._connect())
        await asyncio.shield(self._connect_task)

    async def _connect(self) -> None:
        try:
            pending = [conn for conn in self._workers.values() if not conn.connected]
            self._logger.info(
                LogEvent.CLIENT_CONNECT,
                f"Connecting to {len(pending)} worker(s)",
                metadata={"workers": [conn.name for conn in pending]},
            )
            results = await asyncio.gather(
                *(conn.connect() for conn in pending), return_exceptions=True
            )
            self._catalog.rebuild(self._workers.values())

            failures = {
                conn.name: result
                for conn, result in zip(pending, results)
                if isinstance(result, BaseException)
            }
            if failures:
                for name, exc in failures.items():
                    self._logger.error(
                        LogEvent.WORKER_FAILED,
                        f"Failed to connect: {exc}",
                        worker=name,
                        error=str(exc),
                    )
                error = ConnectError(failures)
                self._notifier.emit(
                    ClientEvent.CONNECTION_FAILED,
                    error=str(error),
                    failures={name: str(exc) for name, exc in failures.items()},
                )
                raise error

            self._connected = True
            self._logger.info(
                LogEvent.CLIENT_CONNECT,
                f"Connected to {len(self._workers)} worker(s)",
                metadata={
                    "operations": len(self._catalog.operations),
                    "resources": len(self._catalog.resources),
                },
            )
            self._notifier.emit(ClientEvent.CONNECTED, worker_count=len(self._workers))
            if self.config.health_check_interval > 0:
                self._health.start()
        finally:
            self._connect_task = None

    async def disconnect(self) -> None:
        """
        Stop every worker and clear the catalog.

        Pending requests are abandoned without being resolved. Metrics are
        kept.
        """
        self._logger.info(LogEvent.CLIENT_DISCONNECT, "Disconnecting from all workers")
        self._health.stop()

        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
            await asyncio.gather(self._connect_task, return_exceptions=True)
        self._connect_task = None

        await asyncio.gather(*(conn.close() for conn in self._workers.values()))
        self._catalog.clear()
        self._connected = False
        self._notifier.emit(ClientEvent.DISCONNECTED)

    async def __aenter__(self) -> "FleetClient":
        try:
            await self.connect()
        except BaseException:
            # __aexit__ does not run when __aenter__ raises
            await self.disconnect()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    def _on_catalog_changed(self, connection: WorkerConnection) -> None:
        self._catalog.rebuild(self._workers.values())

    def _on_worker_failed(self, event) -> None:
        self._connected = False

    # Calls

    def _connection(self, worker: str) -> WorkerConnection:
        connection = self._workers.get(worker)
        if connection is None:
            raise UnknownWorkerError(f"Worker '{worker}' not found")
        return connection

    def _connected_worker(self, worker: str) -> WorkerConnection:
        connection = self._connection(worker)
        if not connection.connected:
            raise NotConnectedError(f"Worker '{worker}' is not connected")
        return connection

    async def invoke_operation(
        self,
        worker: str,
        name: str,
        arguments: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Call an operation on a worker.

        Args:
            worker: Registered worker name
            name: Operation name from that worker's catalog
            arguments: Operation arguments

        Returns:
            The worker's result payload

        Raises:
            UnknownWorkerError: If no such worker is registered
            NotConnectedError: If the worker is not connected
            UnknownOperationError: If the worker does not offer the operation
            RequestTimeoutError: If the worker does not answer in time
            RemoteCallError: If the worker answers with an error
        """
        connection = self._connected_worker(worker)
        if not any(op.name == name for op in connection.operations):
            raise UnknownOperationError(f"Worker '{worker}' has no operation '{name}'")

        arguments = dict(arguments or {})
        result = await connection.request(
            "tools/call", {"name": name, "arguments": arguments}
        )
        self._notifier.emit(
            ClientEvent.OPERATION_INVOKED,
            worker=worker,
            operation=name,
            arguments=arguments,
            result=result,
        )
        return result

    async def read_resource(self, worker: str, uri: str) -> Any:
        """Read a resource from a worker. URIs are passed through unchecked."""
        connection = self._connected_worker(worker)
        result = await connection.request("resources/read", {"uri": uri})
        self._notifier.emit(ClientEvent.RESOURCE_READ, worker=worker, uri=uri, result=result)
        return result

    async def request(
        self, worker: str, method: str, params: Optional[Dict[str, Any]] = None
    ) -> Any:
        """Send an arbitrary protocol request to a connected worker."""
        return await self._connected_worker(worker).request(method, params)

    # Catalog

    def get_all_operations(self) -> List[Operation]:
        return self._catalog.operations

    def get_all_resources(self) -> List[Resource]:
        return self._catalog.resources

    def get_worker_operations(self, worker: str) -> List[Operation]:
        return list(self._connection(worker).operations)

    def get_worker_resources(self, worker: str) -> List[Resource]:
        return list(self._connection(worker).resources)

    def find_operation_worker(self, name: str) -> Optional[str]:
        return self._catalog.find_operation_worker(name)

    def find_resource_worker(self, uri: str) -> Optional[str]:
        return self._catalog.find_resource_worker(uri)

    # Status

    def is_worker_connected(self, worker: str) -> bool:
        connection = self._workers.get(worker)
        return connection is not None and connection.connected

    def get_status(self) -> Dict[str, WorkerStatus]:
        return {name: conn.status() for name, conn in self._workers.items()}

    def get_health(
        self, worker: Optional[str] = None
    ) -> Union[HealthRecord, Dict[str, HealthRecord]]:
        """Health of one worker, or of every worker when worker is None."""
        if worker is not None:
            return replace(self._connection(worker).health)
        return {name: replace(conn.health) for name, conn in self._workers.items()}

    def get_metrics(self) -> MetricsSnapshot:
        return self._metrics.snapshot()

    @property
    def metrics(self) -> Metrics:
        return self._metrics

    # Health

    def start_health_monitoring(self) -> None:
        self._health.start()

    def stop_health_monitoring(self) -> None:
        self._health.stop()

    async def check_health(self) -> Dict[str, HealthRecord]:
        """Probe every connected worker now and return the updated records."""
        await self._health.check_all()
        return self.get_health()

    # Events

    @property
    def events(self) -> EventNotifier:
        return self._notifier

    def on(
        self, event: Union[ClientEvent, str], handler: EventHandler
    ) -> Callable[[], None]:
        """Subscribe to a client event. Returns an unsubscribe callable."""
        return self._notifier.subscribe(event, handler)

    @property
    def logger(self) -> StructuredLogger:
        return self._logger
