"""
Event notifier.

External layers subscribe to client events instead of polling. Delivery is
synchronous and in subscription order, so for a single worker handlers see
events in the order they happened.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .logging import LogEvent, StructuredLogger


class ClientEvent(Enum):
    """Events published by FleetClient."""

    WORKER_REGISTERED = "worker_registered"
    CONNECTED = "connected"
    CONNECTION_FAILED = "connection_failed"
    WORKER_INITIALIZED = "worker_initialized"
    WORKER_DISCONNECTED = "worker_disconnected"
    WORKER_UNHEALTHY = "worker_unhealthy"
    OPERATION_INVOKED = "operation_invoked"
    RESOURCE_READ = "resource_read"
    REQUEST_COMPLETED = "request_completed"
    DISCONNECTED = "disconnected"

    WORKER_LOG = "worker_log"
    WORKER_ERROR = "worker_error"
    WORKER_RECONNECTING = "worker_reconnecting"
    WORKER_RECONNECTED = "worker_reconnected"
    WORKER_FAILED = "worker_failed"


@dataclass
class Event:
    """A published event and its payload."""

    name: ClientEvent
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def __getitem__(self, key: str) -> Any:
        return self.payload[key]

    def get(self, key: str, default: Any = None) -> Any:
        return self.payload.get(key, default)


EventHandler = Callable[[Event], None]


class EventNotifier:
    """
    Observer registry for client events.

    Usage:
        notifier = EventNotifier()
        unsubscribe = notifier.subscribe(ClientEvent.CONNECTED, on_connected)
        notifier.subscribe_all(lambda event: print(event.name, event.payload))
        ...
        unsubscribe()
    """

    def __init__(self, logger: Optional[StructuredLogger] = None):
        self._logger = logger or StructuredLogger()
        # None key means "all events"
        self._subscriptions: List[Tuple[Optional[ClientEvent], EventHandler]] = []

    def subscribe(
        self, event: Union[ClientEvent, str], handler: EventHandler
    ) -> Callable[[], None]:
        """Register handler for one event. Returns an unsubscribe callable."""
        entry = (ClientEvent(event), handler)
        self._subscriptions.append(entry)
        return lambda: self._remove(entry)

    def subscribe_all(self, handler: EventHandler) -> Callable[[], None]:
        """Register handler for every event. Returns an unsubscribe callable."""
        entry = (None, handler)
        self._subscriptions.append(entry)
        return lambda: self._remove(entry)

    def unsubscribe(self, handler: EventHandler) -> None:
        """Remove every subscription of handler."""
        self._subscriptions = [s for s in self._subscriptions if s[1] != handler]

    def _remove(self, entry) -> None:
        try:
            self._subscriptions.remove(entry)
        except ValueError:
            pass

    def emit(self, event: ClientEvent, **payload: Any) -> Event:
        """Deliver an event to its subscribers and return it."""
        record = Event(name=event, payload=payload)
        for wanted, handler in list(self._subscriptions):
            if wanted is not None and wanted is not event:
                continue
            try:
                handler(record)
            except Exception as e:
                self._logger.error(
                    LogEvent.HANDLER_ERROR,
                    f"Handler for {event.value} raised: {e}",
                    error=str(e),
                    metadata={"event": event.value},
                )
        return record

    def __len__(self) -> int:
        return len(self._subscriptions)
