"""Poll worker: one source operation feeding one sink.

Each configured pair gets a :class:`PollWorker`. The worker repeatedly pulls
new items from its source operation, hands them to its sink one at a time
with a growing flood-control delay, then sleeps for the poll interval. Every
sleep is interruptible through the shared cancellation token.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from m365relay.cancellation import CancellationToken
from m365relay.config import PairConfig
from m365relay.credential import utcnow
from m365relay.logging import get_logger
from m365relay.sinks import EventSink
from m365relay.sources import ListOperation
from m365relay.types import EventItem, WorkerState

logger = get_logger(__name__)


class PollWorker:
    """Drives one pair's poll/deliver/sleep loop.

    ``state`` and ``last_alive`` are read by the supervisor from another
    thread; they are only written by the thread running the worker.
    """

    def __init__(
        self,
        pair: PairConfig,
        list_operation: ListOperation,
        sink: EventSink,
        cancel_token: CancellationToken,
        poll_interval: int = 60,
        flood_step_ms: int = 10,
        flood_cap_ms: int = 1000,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the worker.

        Args:
            pair: The pair this worker serves.
            list_operation: Source operation returning new items.
            sink: Destination for the items.
            cancel_token: Shared cancellation signal.
            poll_interval: Seconds to sleep between polls.
            flood_step_ms: Delay added per delivered item, in milliseconds.
            flood_cap_ms: Upper bound of the per-item delay, in milliseconds.
            clock: Source of the current UTC time.
        """
        self.pair = pair
        self.name = pair.name
        self._list_operation = list_operation
        self._sink = sink
        self._cancel_token = cancel_token
        self.poll_interval = poll_interval
        self.flood_step_ms = flood_step_ms
        self.flood_cap_ms = flood_cap_ms
        self._clock = clock
        self.state = WorkerState.IDLE
        self.last_alive = clock()
        self._log = logger.with_context(pair=pair.name, operation=pair.operation)

    def _set_state(self, state: WorkerState) -> None:
        self.state = state
        self.last_alive = self._clock()

    def flood_delay(self, delivered: int) -> float:
        """Seconds to pause after the ``delivered``-th successful delivery."""
        return min(delivered * self.flood_step_ms, self.flood_cap_ms) / 1000.0

    def poll(self) -> list[EventItem]:
        self._set_state(WorkerState.POLLING)
        items = self._list_operation()
        self._log.info("Polled %d item(s)", len(items))
        return items

    def deliver(self, items: list[EventItem]) -> int:
        """Send ``items`` to the sink in order.

        A failed item is logged and skipped. Delivery stops early when
        cancellation is requested; remaining items are abandoned.

        Returns:
            Number of items the sink accepted.
        """
        self._set_state(WorkerState.DELIVERING)
        delivered = 0

        for index, item in enumerate(items):
            if self._cancel_token.cancelled:
                self._log.info(
                    "Shutdown requested; abandoning %d undelivered item(s)", len(items) - index
                )
                break

            if self._sink.send(item):
                delivered += 1
                self._cancel_token.wait(self.flood_delay(delivered))
            else:
                self._log.warning("Delivery of item %d of %d failed", index + 1, len(items))
            self.last_alive = self._clock()

        if items:
            self._log.info("Delivered %d of %d item(s)", delivered, len(items))
        return delivered

    def run_once(self) -> int:
        """One poll followed by delivery of everything it returned."""
        items = self.poll()
        if not items:
            return 0
        return self.deliver(items)

    def sleep(self) -> bool:
        """Sleep for the poll interval. Returns True if cancelled."""
        self._set_state(WorkerState.SLEEPING)
        return self._cancel_token.wait(self.poll_interval)

    def run(self) -> None:
        """Poll until cancellation.

        Exceptions from the source or sink propagate to the caller, which is
        expected to restart the worker.
        """
        self._log.info("Worker started (interval %ss)", self.poll_interval)
        try:
            while not self._cancel_token.cancelled:
                self.run_once()
                if self.sleep():
                    break
        finally:
            if self._cancel_token.cancelled:
                self._set_state(WorkerState.CANCELLED)
                self._log.info("Worker stopped")

    def __repr__(self) -> str:
        return f"PollWorker(name={self.name!r}, state={self.state.value!r})"


__all__ = ["PollWorker"]
