"""Signal handling for graceful shutdown.

SIGINT and SIGTERM cancel the shared :class:`CancellationToken`, which wakes
every sleeping worker, dispatcher and the supervisor at once.
"""

from __future__ import annotations

import signal
from collections.abc import Callable
from types import FrameType

from m365relay.cancellation import CancellationToken
from m365relay.logging import get_logger

logger = get_logger(__name__)


class ShutdownHandler:
    """Turns shutdown requests into cancellation of the shared token."""

    def __init__(
        self,
        cancel_token: CancellationToken,
        on_shutdown: Callable[[], None] | None = None,
    ) -> None:
        """Initialize the shutdown handler.

        Args:
            cancel_token: Token cancelled when shutdown is requested.
            on_shutdown: Optional callback invoked after cancellation.
        """
        self._cancel_token = cancel_token
        self._on_shutdown = on_shutdown

    @property
    def shutdown_requested(self) -> bool:
        return self._cancel_token.cancelled

    def request_shutdown(self) -> None:
        """Request graceful shutdown. Safe to call more than once."""
        if self._cancel_token.cancelled:
            logger.debug("Shutdown already in progress")
            return

        logger.info("Shutdown requested")
        self._cancel_token.cancel()

        if self._on_shutdown is not None:
            self._on_shutdown()

    def handle_signal(self, signum: int, frame: FrameType | None) -> None:
        """Signal handler for SIGINT and SIGTERM."""
        signal_name = signal.Signals(signum).name
        logger.info("Received %s, stopping workers...", signal_name)
        self.request_shutdown()

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self.handle_signal)
        signal.signal(signal.SIGTERM, self.handle_signal)
        logger.debug("Signal handlers installed for SIGINT and SIGTERM")


def create_shutdown_handler(
    cancel_token: CancellationToken,
    on_shutdown: Callable[[], None] | None = None,
) -> ShutdownHandler:
    """Create a ShutdownHandler and install its signal handlers."""
    handler = ShutdownHandler(cancel_token, on_shutdown)
    handler.install_signal_handlers()
    return handler


__all__ = [
    "ShutdownHandler",
    "create_shutdown_handler",
]
