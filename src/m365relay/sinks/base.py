"""Capability interface for event sinks."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import ClassVar

from m365relay.types import EventItem


class EventSink(ABC):
    """A destination that accepts event items one at a time.

    Implementations report failure through the return value of :meth:`send`
    rather than by raising, so one bad item never stops a batch.
    """

    name: ClassVar[str]

    @abstractmethod
    def send(self, item: EventItem) -> bool:
        """Deliver one item.

        Args:
            item: The event to deliver.

        Returns:
            True if the destination accepted the item.
        """
        pass

    def close(self) -> None:
        """Release network resources. The default does nothing."""
        pass


__all__ = ["EventSink"]
