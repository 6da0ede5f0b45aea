from __future__ import annotations

import logging
from collections.abc import Callable

from .errors import OperationCancelled

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative, monotonic cancellation signal for one conversation turn.

    Nothing is preempted: code holding the token checks it at loop boundaries
    and before each tool call. A token is created per turn and discarded when
    the turn ends.
    """

    __slots__ = ("_cancelled", "_listeners")

    def __init__(self) -> None:
        self._cancelled = False
        self._listeners: list[Callable[[], None]] = []

    @property
    def is_cancelled(self) -> bool:
        """True once `cancel()` has been called; never resets."""
        return self._cancelled

    def cancel(self) -> None:
        """Mark the token cancelled and notify listeners. Later calls are no-ops."""
        if self._cancelled:
            return
        self._cancelled = True
        listeners = self._listeners
        self._listeners = []
        for listener in listeners:
            self._notify(listener)

    def throw_if_cancelled(self) -> None:
        """Raise `OperationCancelled` at the call site when cancelled."""
        if self._cancelled:
            raise OperationCancelled()

    def on_cancel(self, listener: Callable[[], None]) -> None:
        """Register a zero-argument callback fired once on cancellation.

        When the token is already cancelled the listener runs immediately.
        """
        if self._cancelled:
            self._notify(listener)
        else:
            self._listeners.append(listener)

    @staticmethod
    def _notify(listener: Callable[[], None]) -> None:
        try:
            listener()
        except Exception:
            logger.exception("cancellation listener %r failed", listener)

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self._cancelled})"
