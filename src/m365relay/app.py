"""Application runner for the relay.

Coordinates bootstrap, the supervisor and shutdown handling, and maps the
outcome to a process exit code.
"""

from __future__ import annotations

import argparse

from m365relay.bootstrap import BootstrapContext, bootstrap
from m365relay.cancellation import CancellationToken
from m365relay.cli import parse_args
from m365relay.logging import get_logger
from m365relay.shutdown import create_shutdown_handler
from m365relay.supervisor import Supervisor

logger = get_logger(__name__)


def run_once_mode(context: BootstrapContext) -> int:
    """Run one poll cycle for every worker, sequentially.

    Returns:
        Exit code: 0 if every cycle completed, 1 otherwise.
    """
    logger.info("Running single poll cycle (--once mode)")
    failed = 0
    delivered = 0
    for worker in context.workers:
        if context.cancel_token.cancelled:
            break
        try:
            delivered += worker.run_once()
        except Exception:
            # INTENTIONAL BROAD CATCH: one broken pair must not hide the
            # results of the others; the exit code reports the failure.
            logger.exception("Poll cycle failed for %s", worker.name)
            failed += 1

    logger.info(
        "Completed: %d of %d pair(s) succeeded, %d item(s) delivered",
        len(context.workers) - failed,
        len(context.workers),
        delivered,
    )
    return 0 if failed == 0 else 1


def run_continuous_mode(context: BootstrapContext) -> int:
    """Supervise the workers until the shared token is cancelled.

    Returns:
        Exit code: 0 once every worker has stopped, 1 if the shutdown timeout
        expired first.
    """
    supervisor = Supervisor(
        context.workers,
        context.cancel_token,
        check_interval=context.config.watchdog_interval,
        shutdown_timeout=context.config.shutdown_timeout,
    )
    return 0 if supervisor.run() else 1


def run_application(parsed: argparse.Namespace, context: BootstrapContext) -> int:
    """Run the selected mode and release network resources afterwards."""
    try:
        if parsed.once:
            return run_once_mode(context)
        return run_continuous_mode(context)
    finally:
        context.close()


def main(args: list[str] | None = None) -> int:
    """Main entry point for the application.

    Args:
        args: Optional list of command-line arguments.

    Returns:
        Exit code for the application.
    """
    parsed = parse_args(args)

    # Signals cancel this token from here on, including during bootstrap
    cancel_token = CancellationToken()
    create_shutdown_handler(cancel_token)

    context = bootstrap(parsed, cancel_token)
    if context is None:
        # Bootstrap failed (logged internally)
        return 1

    return run_application(parsed, context)


__all__ = [
    "main",
    "run_application",
    "run_continuous_mode",
    "run_once_mode",
]
