"""Explicit cancellation handle passed into shell executions."""

from __future__ import annotations

import logging
from typing import Callable

logger = logging.getLogger(__name__)


class CancellationToken:
    """A one-shot abort flag with listeners.

    Listeners run synchronously, in registration order, the first time
    ``cancel()`` is called. Registering on an already-cancelled token runs
    the listener immediately.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._listeners: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            try:
                listener()
            except Exception:
                logger.exception("Cancellation listener failed")

    def add_listener(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Register ``listener``; returns a function that removes it."""
        if self._cancelled:
            listener()
            return lambda: None

        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove
