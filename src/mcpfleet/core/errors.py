"""
Error taxonomy for the fleet client.

Every error raised by mcpfleet derives from FleetError, so callers can catch
the whole family with one clause and still tell the cases apart.
"""

from typing import Any, Dict, Optional


class FleetError(Exception):
    """Base class for all mcpfleet errors."""


class ConfigurationError(FleetError, ValueError):
    """Invalid client or worker configuration."""


class DuplicateWorkerError(ConfigurationError):
    """A worker with the same name is already registered."""


class SpawnError(FleetError):
    """The worker executable could not be started."""


class HandshakeError(FleetError):
    """Capability discovery failed after the worker process started."""


class RequestTimeoutError(FleetError, TimeoutError):
    """No response arrived within the worker's timeout."""


class MalformedMessageError(FleetError, ValueError):
    """A line from a worker could not be decoded as a protocol message."""


class UnknownWorkerError(FleetError):
    """No worker is registered under the requested name."""


class UnknownOperationError(FleetError):
    """The worker's catalog has no operation with the requested name."""


class NotConnectedError(FleetError):
    """The worker (or the client) is not connected."""


class ProcessExitError(FleetError):
    """The worker process exited while a request was outstanding."""


class RemoteCallError(FleetError):
    """The worker answered with a JSON-RPC error object."""

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        super().__init__(message)
        self.code = code
        self.data = data


class ConnectError(FleetError):
    """One or more workers failed to connect.

    ``failures`` maps each failing worker name to the exception it raised.
    """

    def __init__(self, failures: Dict[str, BaseException]):
        self.failures = dict(failures)
        details = "; ".join(f"{name}: {exc}" for name, exc in self.failures.items())
        super().__init__(
            f"Failed to connect {len(self.failures)} worker(s): {details}"
        )
