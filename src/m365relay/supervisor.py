"""Worker supervision.

The supervisor runs every :class:`~m365relay.worker.PollWorker` on its own
thread and acts as a watchdog: a worker whose thread has died is relaunched on
the next check. On shutdown it cancels the shared token and waits for the
threads to finish.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Sequence

from m365relay.cancellation import CancellationToken
from m365relay.logging import get_logger
from m365relay.worker import PollWorker

logger = get_logger(__name__)

# Lower bound for the watchdog interval, in seconds
MIN_CHECK_INTERVAL = 0.1

# How often shutdown re-checks the remaining threads, in seconds
SHUTDOWN_POLL_INTERVAL = 1.0


class Supervisor:
    """Runs workers on threads and restarts the ones that die."""

    def __init__(
        self,
        workers: Sequence[PollWorker],
        cancel_token: CancellationToken,
        check_interval: float = 5.0,
        shutdown_timeout: float = 0.0,
    ) -> None:
        """Initialize the supervisor.

        Args:
            workers: Workers to run; names must be unique.
            cancel_token: Shared cancellation signal.
            check_interval: Seconds between watchdog checks.
            shutdown_timeout: Seconds to wait for workers on shutdown. Zero
                waits until every worker has stopped.
        """
        self._workers = list(workers)
        self._cancel_token = cancel_token
        self.check_interval = max(check_interval, MIN_CHECK_INTERVAL)
        self.shutdown_timeout = shutdown_timeout
        self._threads: dict[str, threading.Thread] = {}
        self.restart_counts: dict[str, int] = {worker.name: 0 for worker in self._workers}

    @property
    def workers(self) -> list[PollWorker]:
        return list(self._workers)

    def _run_worker(self, worker: PollWorker) -> None:
        try:
            worker.run()
        except Exception:
            # INTENTIONAL BROAD CATCH: a crashed worker is restarted by the
            # watchdog; the traceback must still reach the log.
            logger.exception("Worker %s crashed", worker.name)

    def _launch(self, worker: PollWorker) -> threading.Thread:
        thread = threading.Thread(
            target=self._run_worker,
            args=(worker,),
            name=f"worker-{worker.name}",
            daemon=True,
        )
        self._threads[worker.name] = thread
        thread.start()
        return thread

    def start(self) -> None:
        """Launch a thread for every worker."""
        for worker in self._workers:
            self._launch(worker)
        logger.info("Started %d worker(s)", len(self._workers))

    def is_alive(self, name: str) -> bool:
        thread = self._threads.get(name)
        return thread is not None and thread.is_alive()

    def check_workers(self) -> list[str]:
        """Relaunch every worker whose thread is no longer running.

        Nothing is relaunched once cancellation has been requested.

        Returns:
            Names of the workers that were relaunched.
        """
        restarted: list[str] = []
        if self._cancel_token.cancelled:
            return restarted

        for worker in self._workers:
            if self.is_alive(worker.name):
                continue
            self.restart_counts[worker.name] += 1
            logger.warning(
                "Worker %s is not running (state %s, last alive %s); restarting (restart #%d)",
                worker.name,
                worker.state.value,
                worker.last_alive.isoformat(),
                self.restart_counts[worker.name],
            )
            self._launch(worker)
            restarted.append(worker.name)

        return restarted

    def run(self) -> bool:
        """Start the workers and supervise them until cancellation.

        Returns:
            True if every worker stopped within the shutdown timeout.
        """
        self.start()
        while not self._cancel_token.wait(self.check_interval):
            self.check_workers()
        return self.shutdown()

    def shutdown(self) -> bool:
        """Cancel the workers and wait for their threads to end.

        Returns:
            False if the shutdown timeout expired with workers still running.
        """
        self._cancel_token.cancel()
        deadline = (
            time.monotonic() + self.shutdown_timeout if self.shutdown_timeout > 0 else None
        )

        waiting_logged = False
        while True:
            alive = [thread for thread in self._threads.values() if thread.is_alive()]
            if not alive:
                logger.info("All workers stopped")
                return True

            if deadline is not None and time.monotonic() >= deadline:
                logger.error(
                    "Shutdown timed out after %.1fs; still running: %s",
                    self.shutdown_timeout,
                    ", ".join(thread.name for thread in alive),
                )
                return False

            if not waiting_logged:
                logger.info("Waiting for %d worker(s) to stop", len(alive))
                waiting_logged = True

            timeout = SHUTDOWN_POLL_INTERVAL
            if deadline is not None:
                timeout = max(min(timeout, deadline - time.monotonic()), 0.0)
            alive[0].join(timeout)


__all__ = ["Supervisor"]
