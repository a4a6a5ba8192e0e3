"""Cooperative cancellation signal shared by workers, dispatchers and sinks."""

from __future__ import annotations

import threading

from m365relay.logging import get_logger

logger = get_logger(__name__)


class CancellationToken:
    """A one-shot cancellation signal.

    The token is created once at startup and handed to every component that
    sleeps or loops. Setting it wakes all sleepers immediately; it can never be
    reset. Reads are safe from any thread.

    Example:
        token = CancellationToken()
        while not token.cancelled:
            do_work()
            if token.wait(60):
                break  # cancelled while sleeping
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        """Whether cancellation has been requested."""
        return self._event.is_set()

    def cancel(self) -> None:
        """Request cancellation. Subsequent calls have no effect."""
        if not self._event.is_set():
            logger.debug("Cancellation requested")
        self._event.set()

    def wait(self, seconds: float) -> bool:
        """Sleep for up to ``seconds``, returning early on cancellation.

        Args:
            seconds: Maximum time to sleep. Non-positive values only check the flag.

        Returns:
            True if cancellation was requested before or during the wait.
        """
        if seconds <= 0:
            return self._event.is_set()
        return self._event.wait(seconds)


__all__ = ["CancellationToken"]
