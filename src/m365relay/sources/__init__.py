"""Event sources the relay can poll."""

from m365relay.sources.base import (
    EventSource,
    ListOperation,
    SourceContext,
    Watermark,
    json_items,
    odata_next_link,
)
from m365relay.sources.office365_management import Office365ManagementSource
from m365relay.sources.threat_protection import ThreatProtectionSource

__all__ = [
    "EventSource",
    "ListOperation",
    "Office365ManagementSource",
    "SourceContext",
    "ThreatProtectionSource",
    "Watermark",
    "json_items",
    "odata_next_link",
]
