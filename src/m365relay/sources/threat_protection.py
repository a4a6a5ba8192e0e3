"""Microsoft 365 Defender (Threat Protection) incidents API."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import ClassVar, Self

from m365relay.credential import utcnow
from m365relay.dispatcher import RequestDispatcher
from m365relay.logging import get_logger
from m365relay.sources.base import (
    EventSource,
    ListOperation,
    SourceContext,
    Watermark,
    json_items,
    odata_next_link,
)
from m365relay.types import EventItem

logger = get_logger(__name__)


class ThreatProtectionSource(EventSource):
    """Lists incidents updated since the previous poll.

    See https://learn.microsoft.com/microsoft-365/security/defender/api-list-incidents
    """

    name: ClassVar[str] = "MicrosoftThreatProtection"
    resource_id: ClassVar[str] = "https://api.security.microsoft.com"
    required_roles: ClassVar[tuple[str, ...]] = ("Incident.Read.All",)

    def __init__(
        self,
        dispatcher: RequestDispatcher,
        watermark: Watermark,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._dispatcher = dispatcher
        self._watermark = watermark
        self._clock = clock

    @classmethod
    def build(cls, context: SourceContext) -> Self:
        return cls(
            context.dispatcher_for(cls.resource_id, cls.required_roles),
            context.watermark(),
            context.clock,
        )

    def operations(self) -> dict[str, ListOperation]:
        return {"Incidents": self.incidents}

    def incidents(self) -> list[EventItem]:
        """Incidents whose ``lastUpdateTime`` is at or after the watermark."""
        started = self._clock()
        url = (
            f"{self.resource_id}/api/incidents"
            f"?$filter=lastUpdateTime+ge+{self._watermark.isoformat()}"
        )
        bodies = self._dispatcher.send(url, next_page=odata_next_link)
        self._watermark.advance(started)

        incidents: list[EventItem] = []
        for body in bodies:
            incidents.extend(json_items(body, "value"))

        logger.info("Found %d incident(s) across %d page(s)", len(incidents), len(bodies))
        return incidents

    def close(self) -> None:
        self._dispatcher.close()


__all__ = ["ThreatProtectionSource"]
