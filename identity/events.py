"""
identity/events.py -- In-process synchronous publish/subscribe for lifecycle events.

One EventBus instance is built at process start, handed to AuthService, and
lives for the rest of the process. Subscribers register during startup,
before any operation runs; subscribing after traffic has started is not
supported.

Delivery rules:
  - Handlers for a kind run in registration order, synchronously, on the
    publishing thread.
  - No deduplication: subscribing the same handler twice calls it twice.
  - No isolation: a handler exception stops delivery to later handlers and
    propagates to the publisher. AuthService therefore publishes only after
    every store write of an operation is final.

Concurrent publish() calls are safe: each one iterates over a snapshot of the
handler list taken under the registry lock.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from collections.abc import Callable
from enum import Enum
from typing import Any

logger = logging.getLogger("gatehouse.events")

Handler = Callable[..., Any]


class EventKind(str, Enum):
    AUTHENTICATED = "authenticated"
    REGISTERED = "registered"
    DEREGISTERED = "deregistered"
    LOGGED_IN = "logged_in"
    LOGGED_OUT = "logged_out"
    CREDENTIAL_RESET = "credential_reset"
    UPDATED = "updated"


class EventBus:
    """Synchronous event registry keyed by EventKind.

    Usage:
        bus = EventBus()
        bus.subscribe(EventKind.REGISTERED, send_welcome_mail)
        service = AuthService(..., bus=bus)
    """

    def __init__(self) -> None:
        self._handlers: dict[EventKind, list[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, kind: EventKind, handler: Handler) -> Handler:
        """Append handler to kind's list. Returns handler so this works as a decorator body."""
        kind = EventKind(kind)
        with self._lock:
            self._handlers[kind].append(handler)
        logger.debug("Subscribed %s to %s", getattr(handler, "__qualname__", handler), kind.value)
        return handler

    def handlers(self, kind: EventKind) -> tuple[Handler, ...]:
        with self._lock:
            return tuple(self._handlers.get(EventKind(kind), ()))

    def publish(self, kind: EventKind, *payload: Any) -> int:
        """Call every handler of kind with payload, in order. Returns the count called.

        Exceptions raised by a handler propagate unchanged.
        """
        handlers = self.handlers(kind)
        for handler in handlers:
            handler(*payload)
        return len(handlers)
