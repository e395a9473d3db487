"""
Broadcast signals for the rest of the application.

The cart UI listens for CART_CLEAR_REQUESTED, notification widgets listen for
SESSION_EXPIRED. Handlers are plain callables invoked synchronously in
subscription order; a failing handler is logged and does not stop the others.
"""
import logging
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)

CART_CLEAR_REQUESTED = "cart_clear_requested"
SESSION_EXPIRED = "session_expired"
LOCATION_CHANGED = "location_changed"
PENDING_CHECKOUT_CHANGED = "pending_checkout_changed"

Handler = Callable[..., Any]


class SignalBus:
    """In-process publish/subscribe for named signals."""

    def __init__(self):
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, signal: str, handler: Handler) -> Callable[[], None]:
        """Register a handler. Returns a function that removes it again."""
        self._handlers[signal].append(handler)

        def unsubscribe() -> None:
            try:
                self._handlers[signal].remove(handler)
            except ValueError:
                pass

        return unsubscribe

    def emit(self, signal: str, **payload: Any) -> int:
        """Deliver a signal to every subscriber. Returns how many were called."""
        handlers = list(self._handlers.get(signal, ()))
        logger.debug("Emitting %s to %d handler(s)", signal, len(handlers))
        for handler in handlers:
            try:
                handler(**payload)
            except Exception:
                logger.exception("Handler for %s failed", signal)
        return len(handlers)
