"""
Observer channels used by transports, clients, servers, discovery and the manager.

Each component declares one ``Signal`` per event as an instance attribute:

    server.status_changed.connect(on_status)
    server.status_changed.emit(new, previous)

Handlers run synchronously, in registration order, inside the emitting call.
A handler that raises is logged and skipped; the remaining handlers still run.
"""
from __future__ import annotations

import logging
from typing import Callable, List

logger = logging.getLogger(__name__)

Handler = Callable[..., None]


class Signal:
    def __init__(self, name: str):
        self.name = name
        self._handlers: List[Handler] = []

    def connect(self, handler: Handler) -> Handler:
        """Register a handler; returns it so the method can be used as a decorator."""
        self._handlers.append(handler)
        return handler

    def disconnect(self, handler: Handler) -> None:
        try:
            self._handlers.remove(handler)
        except ValueError:
            pass

    def disconnect_all(self) -> None:
        self._handlers.clear()

    def emit(self, *args) -> None:
        for handler in list(self._handlers):
            try:
                handler(*args)
            except Exception:
                logger.exception("Handler %r for signal '%s' failed", handler, self.name)

    def __len__(self) -> int:
        return len(self._handlers)

    def __repr__(self) -> str:
        return f"<Signal {self.name} handlers={len(self._handlers)}>"


def disconnect_all(*signals: Signal) -> None:
    for sig in signals:
        sig.disconnect_all()
