"""
Process supervision for a single worker.

A WorkerConnection owns one worker's process from spawn to exit: it wires
the three stdio pipes, hands decoded responses to the worker's correlator,
reports stderr lines, detects exit and applies the reconnect policy.
"""

import asyncio
import os
import sys
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import psutil

from .config import ClientConfig, WorkerOptions
from .correlator import RequestCorrelator
from .errors import (
    ConfigurationError,
    FleetError,
    HandshakeError,
    MalformedMessageError,
    NotConnectedError,
    ProcessExitError,
    RemoteCallError,
    RequestTimeoutError,
    SpawnError,
)
from .events import ClientEvent, EventNotifier
from .health import HealthRecord
from .logging import LogEvent, StructuredLogger
from .message import MessageKind, RpcMessage
from .metrics import Metrics
from .timers import AsyncioScheduler, Scheduler


class WorkerState(Enum):
    """Lifecycle states of a worker connection."""

    REGISTERED = "registered"
    STARTING = "starting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass(frozen=True)
class WorkerDefinition:
    """How to launch a worker. Immutable once registered."""

    name: str
    script_path: str
    working_dir: Optional[str] = None
    executable: Optional[str] = None
    args: Tuple[str, ...] = ()
    env: Optional[Dict[str, str]] = None
    options: WorkerOptions = field(default_factory=WorkerOptions)

    def __post_init__(self):
        if not self.name:
            raise ConfigurationError("Worker name must not be empty")
        if not self.script_path:
            raise ConfigurationError(f"Worker '{self.name}' has no script path")

    @property
    def command(self) -> List[str]:
        """Argv used to launch the worker."""
        if self.executable:
            return [self.executable, self.script_path, *self.args]
        if self.script_path.endswith(".py"):
            return [sys.executable, self.script_path, *self.args]
        return [self.script_path, *self.args]


@dataclass
class WorkerStatus:
    """Snapshot of one worker for status reporting."""

    name: str
    state: str
    connected: bool
    pid: Optional[int]
    operation_count: int
    resource_count: int
    reconnect_attempts: int
    pending_requests: int
    health: HealthRecord


Spawner = Callable[[WorkerDefinition, int], Awaitable[Any]]
Handshake = Callable[["WorkerConnection"], Awaitable[None]]


async def spawn_process(definition: WorkerDefinition, limit: int):
    """Start a worker with piped stdin, stdout and stderr."""
    env = os.environ.copy()
    env["PYTHONUNBUFFERED"] = "1"
    env["MCPFLEET_WORKER_NAME"] = definition.name
    if definition.env:
        env.update(definition.env)

    return await asyncio.create_subprocess_exec(
        *definition.command,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=definition.working_dir,
        env=env,
        limit=limit,
    )


def _terminate_children(pid: Optional[int]) -> None:
    """Terminate every descendant of pid so no grandchild outlives the worker."""
    if pid is None:
        return
    try:
        children = psutil.Process(pid).children(recursive=True)
    except psutil.Error:
        return
    for child in children:
        try:
            child.terminate()
        except psutil.Error:
            pass


async def terminate_process(
    process, grace: float, scheduler: Optional[Scheduler] = None
) -> Optional[int]:
    """Terminate a process (and its children), killing it after grace seconds."""
    scheduler = scheduler or AsyncioScheduler()
    if process.returncode is None:
        _terminate_children(getattr(process, "pid", None))
        try:
            process.terminate()
        except ProcessLookupError:
            pass
        exited = asyncio.ensure_future(process.wait())
        timer = asyncio.ensure_future(scheduler.sleep(grace))
        try:
            await asyncio.wait({exited, timer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            timer.cancel()
        if not exited.done():
            try:
                process.kill()
            except ProcessLookupError:
                pass
        await exited

    stdin = getattr(process, "stdin", None)
    if stdin is not None and not stdin.is_closing():
        stdin.close()
    return process.returncode


class WorkerConnection:
    """
    Supervises one worker process.

    Features:
    - Concurrent requests multiplexed over stdin/stdout with per-worker ids
    - Per-request timeouts that leave a slow process running
    - Exit detection with linear-backoff reconnect
    - Malformed output reported and discarded without disturbing other requests
    """

    def __init__(
        self,
        definition: WorkerDefinition,
        config: ClientConfig,
        *,
        scheduler: Scheduler,
        notifier: EventNotifier,
        logger: StructuredLogger,
        metrics: Metrics,
        handshake: Handshake,
        on_catalog_changed: Optional[Callable[["WorkerConnection"], None]] = None,
        spawner: Optional[Spawner] = None,
    ):
        self.definition = definition
        self._config = config
        self._scheduler = scheduler
        self._notifier = notifier
        self._logger = logger
        self._metrics = metrics
        self._handshake = handshake
        self._on_catalog_changed = on_catalog_changed
        self._spawner = spawner or spawn_process

        self.state = WorkerState.REGISTERED
        self.process = None
        self.reconnect_attempts = 0
        self.last_exit_code: Optional[int] = None
        self.operations: List[Any] = []
        self.resources: List[Any] = []
        self.correlator = RequestCorrelator(definition.name, scheduler)
        self.health = HealthRecord()

        self._stdout_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._exit_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def connected(self) -> bool:
        return self.state is WorkerState.CONNECTED

    @property
    def timeout(self) -> float:
        if self.definition.options.timeout is not None:
            return self.definition.options.timeout
        return self._config.timeout

    @property
    def max_reconnect_attempts(self) -> int:
        if self.definition.options.max_reconnect_attempts is not None:
            return self.definition.options.max_reconnect_attempts
        return self._config.max_reconnect_attempts

    @property
    def auto_reconnect(self) -> bool:
        if self.definition.options.auto_reconnect is not None:
            return self.definition.options.auto_reconnect
        return self._config.auto_reconnect

    @property
    def pid(self) -> Optional[int]:
        return getattr(self.process, "pid", None) if self.process else None

    # Lifecycle

    async def connect(self) -> None:
        """
        Spawn the worker and run the handshake.

        Raises:
            SpawnError: If the executable could not be started
            HandshakeError: If capability discovery failed
        """
        if self.connected:
            return
        self._closed = False

        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            await asyncio.gather(self._reconnect_task, return_exceptions=True)
        self._reconnect_task = None

        self.state = WorkerState.STARTING
        try:
            await self._start()
        except FleetError as e:
            self.state = WorkerState.FAILED
            self.health.mark_unhealthy(str(e))
            raise

    async def _start(self) -> None:
        """Spawn, wait out the startup delay, then discover capabilities."""
        process = await self._spawn()
        try:
            await self._scheduler.sleep(self._config.startup_delay)
            if self.process is not process or process.returncode is not None:
                raise HandshakeError(
                    f"Worker '{self.name}' exited during startup "
                    f"(code {process.returncode})"
                )
            await self._handshake(self)
        except BaseException:
            await self._retire(process)
            raise

        self.state = WorkerState.CONNECTED
        self.reconnect_attempts = 0
        self.health.mark_healthy()
        self._logger.info(
            LogEvent.WORKER_READY,
            f"Found {len(self.operations)} operations and "
            f"{len(self.resources)} resources",
            worker=self.name,
            metadata={"pid": self.pid},
        )
        self._notifier.emit(
            ClientEvent.WORKER_INITIALIZED,
            worker=self.name,
            operation_count=len(self.operations),
            resource_count=len(self.resources),
        )
        if self._on_catalog_changed:
            self._on_catalog_changed(self)

    async def _spawn(self):
        command = " ".join(self.definition.command)
        try:
            process = await self._spawner(self.definition, self._config.max_line_bytes)
        except (OSError, ValueError) as e:
            error = SpawnError(f"Failed to start worker '{self.name}' ({command}): {e}")
            self.health.mark_unhealthy(str(error))
            self._logger.error(
                LogEvent.PROCESS_SPAWN, str(error), worker=self.name, error=str(e)
            )
            raise error from e

        self.process = process
        self.last_exit_code = None
        self._logger.process_spawn(self.name, getattr(process, "pid", None), command)

        loop = asyncio.get_running_loop()
        self._stdout_task = loop.create_task(self._read_stdout(process))
        self._stderr_task = loop.create_task(self._read_stderr(process))
        self._exit_task = loop.create_task(self._watch_exit(process))
        return process

    async def _retire(self, process) -> None:
        """Detach and stop a process without triggering exit handling."""
        if self.process is process:
            self.process = None
        current = asyncio.current_task()
        for task in (self._stdout_task, self._stderr_task, self._exit_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self.last_exit_code = await terminate_process(
            process, self._config.shutdown_grace, self._scheduler
        )

    async def close(self) -> int:
        """
        Stop the worker for good.

        Pending requests are abandoned, not failed: their callers are never
        resolved. Returns how many were abandoned.
        """
        if self._closed:
            return 0
        self._closed = True

        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        self._reconnect_task = None

        abandoned = self.correlator.abandon_all()
        self._metrics.abandon_requests(abandoned)
        process = self.process
        self.state = WorkerState.STOPPED
        self.health.healthy = False
        if process is not None:
            await self._retire(process)
        self._logger.info(
            LogEvent.PROCESS_EXIT,
            "Worker stopped",
            worker=self.name,
            metadata={"abandoned_requests": abandoned, "exit_code": self.last_exit_code},
        )
        return abandoned

    # Stream handling

    async def _read_stdout(self, process) -> None:
        while True:
            try:
                line = await process.stdout.readline()
            except ValueError as e:
                # Line longer than max_line_bytes; the reader skips past it
                self._report_malformed(f"Line exceeds {self._config.max_line_bytes} bytes: {e}")
                continue
            except Exception as e:
                self._logger.error(
                    LogEvent.MALFORMED_MESSAGE,
                    f"Error reading worker output: {e}",
                    worker=self.name,
                    error=str(e),
                )
                return
            if not line:
                return
            try:
                self._handle_line(line)
            except Exception as e:
                # One bad line must not end the reader
                self._report_malformed(f"{type(e).__name__}: {e}", line)

    def _handle_line(self, line: bytes) -> None:
        if not line.strip():
            return
        try:
            message = RpcMessage.unpack(line)
        except MalformedMessageError as e:
            self._report_malformed(str(e), line)
            return

        if message.is_response:
            if not self.correlator.resolve(message):
                self._logger.debug(
                    LogEvent.UNMATCHED_RESPONSE,
                    f"Discarding response with no pending request (id {message.id})",
                    worker=self.name,
                    request_id=message.id,
                )
        else:
            self._logger.debug(
                LogEvent.UNMATCHED_RESPONSE,
                f"Ignoring {message.kind.value} {getattr(message, 'method', '')}",
                worker=self.name,
            )

    def _report_malformed(self, error: str, line: Optional[bytes] = None) -> None:
        metadata = {}
        if line is not None:
            metadata["line"] = line[:200].decode("utf-8", errors="replace")
        self._logger.warn(
            LogEvent.MALFORMED_MESSAGE,
            f"Discarding malformed output: {error}",
            worker=self.name,
            error=error,
            metadata=metadata,
        )
        self._notifier.emit(ClientEvent.WORKER_ERROR, worker=self.name, error=error)

    async def _read_stderr(self, process) -> None:
        while True:
            try:
                line = await process.stderr.readline()
            except ValueError:
                continue
            except Exception:
                return
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip("\r\n")
            if not text:
                continue
            self._logger.info(LogEvent.PROCESS_STDERR, text, worker=self.name)
            self._notifier.emit(ClientEvent.WORKER_LOG, worker=self.name, message=text)

    async def _watch_exit(self, process) -> None:
        exit_code = await process.wait()
        stdout_task = self._stdout_task
        if self.process is process and stdout_task is not None and not stdout_task.done():
            # Let responses written just before exit reach their callers
            grace = asyncio.ensure_future(self._scheduler.sleep(self._config.shutdown_grace))
            try:
                await asyncio.wait({stdout_task, grace}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                grace.cancel()
        if self.process is not process:
            return
        self._on_exit(exit_code)

    def _on_exit(self, exit_code: Optional[int]) -> None:
        was_connected = self.connected
        reason = f"Exited with code {exit_code}"

        self.process = None
        self.last_exit_code = exit_code
        for task in (self._stdout_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()

        self.health.mark_unhealthy(reason)
        self.correlator.fail_all(
            ProcessExitError(f"Worker '{self.name}' terminated unexpectedly ({reason})")
        )
        self._logger.process_exit(self.name, exit_code)
        self._notifier.emit(
            ClientEvent.WORKER_DISCONNECTED,
            worker=self.name,
            reason=reason,
            exit_code=exit_code,
        )

        if was_connected:
            # Leaves CONNECTED before the catalog is rebuilt
            self._schedule_reconnect_or_fail(reason)
            if self._on_catalog_changed:
                self._on_catalog_changed(self)

    def _schedule_reconnect_or_fail(self, reason: str) -> None:
        if self._closed:
            return
        if self.auto_reconnect and self.reconnect_attempts < self.max_reconnect_attempts:
            self.reconnect_attempts += 1
            delay = self._config.reconnect_delay * self.reconnect_attempts
            self.state = WorkerState.RECONNECTING
            self._logger.info(
                LogEvent.WORKER_RECONNECT,
                f"Reconnecting in {delay}s "
                f"(attempt {self.reconnect_attempts}/{self.max_reconnect_attempts})",
                worker=self.name,
                metadata={
                    "attempt": self.reconnect_attempts,
                    "max": self.max_reconnect_attempts,
                    "delay": delay,
                },
            )
            self._notifier.emit(
                ClientEvent.WORKER_RECONNECTING,
                worker=self.name,
                attempt=self.reconnect_attempts,
                delay=delay,
            )
            self._reconnect_task = asyncio.get_running_loop().create_task(
                self._reconnect(delay)
            )
        else:
            self.state = WorkerState.FAILED
            self._logger.error(
                LogEvent.WORKER_FAILED,
                f"Worker permanently disconnected: {reason}",
                worker=self.name,
                error=reason,
            )
            self._notifier.emit(ClientEvent.WORKER_FAILED, worker=self.name, reason=reason)

    async def _reconnect(self, delay: float) -> None:
        await self._scheduler.sleep(delay)
        if self._closed:
            return
        try:
            await self._start()
        except FleetError as e:
            self.health.mark_unhealthy(str(e))
            self._logger.warn(
                LogEvent.WORKER_RECONNECT,
                f"Reconnect attempt {self.reconnect_attempts} failed: {e}",
                worker=self.name,
                error=str(e),
            )
            self._schedule_reconnect_or_fail(str(e))
            return

        self._logger.info(
            LogEvent.WORKER_RECONNECT, "Worker reconnected", worker=self.name
        )
        self._notifier.emit(ClientEvent.WORKER_RECONNECTED, worker=self.name)

    # Requests

    async def request(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        require_connected: bool = True,
    ) -> Any:
        """
        Send one request and wait for its result.

        Args:
            method: Protocol method, e.g. "tools/call"
            params: Method parameters
            require_connected: False only for handshake requests

        Returns:
            The response's result payload

        Raises:
            NotConnectedError: If the worker is not connected
            RequestTimeoutError: If no response arrives within the timeout
            RemoteCallError: If the worker answers with an error object
            ProcessExitError: If the process exits before answering
        """
        if self._closed:
            raise NotConnectedError(f"Worker '{self.name}' is closed")
        if require_connected and not self.connected:
            raise NotConnectedError(f"Worker '{self.name}' is not connected")
        process = self.process
        if process is None or process.returncode is not None:
            raise NotConnectedError(f"Worker '{self.name}' process not started")

        pending = self.correlator.open(method, self.timeout)
        start = self._metrics.start_request()
        self._logger.request_start(self.name, pending.id, method)
        message = RpcMessage.create_request(method, params, pending.id)

        try:
            process.stdin.write(message.pack())
            await process.stdin.drain()
            response = await pending.future
        except asyncio.CancelledError:
            if not pending.abandoned:
                self.correlator.discard(pending.id)
                self._finish(pending, start, "Cancelled")
            raise
        except ConnectionError as e:
            self.correlator.discard(pending.id)
            error = ProcessExitError(f"Failed to write to worker '{self.name}': {e}")
            self._finish(pending, start, error)
            raise error from e
        except FleetError as e:
            self._finish(pending, start, e)
            raise

        if response.kind is MessageKind.ERROR:
            error = RemoteCallError(
                response.error_message,
                code=response.error_code,
                data=response.error.get("data"),
            )
            self._finish(pending, start, error)
            raise error

        self._finish(pending, start, None)
        return getattr(response, "result", None)

    def _finish(self, pending, start: float, error) -> None:
        success = error is None
        error_text = None if success else str(error)
        latency_ms = self._metrics.end_request(start, success=success, error=error_text)

        if isinstance(error, RequestTimeoutError):
            self._logger.warn(
                LogEvent.REQUEST_TIMEOUT,
                error_text,
                worker=self.name,
                request_id=pending.id,
                method=pending.method,
            )
        self._logger.request_end(
            self.name, pending.id, pending.method, latency_ms, success, error_text
        )
        self._notifier.emit(
            ClientEvent.REQUEST_COMPLETED,
            worker=self.name,
            method=pending.method,
            latency_ms=latency_ms,
            success=success,
            error=error_text,
        )

    def status(self) -> WorkerStatus:
        return WorkerStatus(
            name=self.name,
            state=self.state.value,
            connected=self.connected,
            pid=self.pid,
            operation_count=len(self.operations),
            resource_count=len(self.resources),
            reconnect_attempts=self.reconnect_attempts,
            pending_requests=len(self.correlator),
            health=replace(self.health),
        )
