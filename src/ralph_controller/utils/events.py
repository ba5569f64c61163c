"""Multicast event hooks used by the controller and its components."""

import threading
from typing import Any, Callable, List

Handler = Callable[..., Any]


class EventHook:
    """A list of subscribers notified in subscription order.

    ``emit`` runs handlers synchronously on the calling thread, so a handler
    sees the state change that triggered it before the emitter moves on.
    """

    def __init__(self, name: str = ""):
        self.name = name
        self._handlers: List[Handler] = []
        self._lock = threading.Lock()

    def subscribe(self, handler: Handler) -> Handler:
        """Register a handler. Returns it, so this also works as a decorator."""
        with self._lock:
            self._handlers.append(handler)
        return handler

    def unsubscribe(self, handler: Handler) -> None:
        with self._lock:
            if handler in self._handlers:
                self._handlers.remove(handler)

    def emit(self, *args: Any) -> None:
        with self._lock:
            handlers = list(self._handlers)
        for handler in handlers:
            handler(*args)

    def __len__(self) -> int:
        return len(self._handlers)

    def __repr__(self) -> str:
        return f"EventHook({self.name!r}, handlers={len(self._handlers)})"
