"""Office 365 Management Activity API.

Activity content is not listed directly. The relay first makes sure every
tenant is subscribed to each content type, then on every poll lists the
content blobs published in the polling window and downloads each blob. A blob
holds a JSON array of audit records, which are the relayed items.

See https://learn.microsoft.com/office/office-365-management-api/office-365-management-activity-api-reference
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import ClassVar, Self

import httpx

from m365relay.credential import utcnow
from m365relay.dispatcher import TENANT_PLACEHOLDER, RequestDispatcher, ResponseBody
from m365relay.logging import get_logger
from m365relay.sources.base import (
    EventSource,
    ListOperation,
    SourceContext,
    Watermark,
    json_items,
)
from m365relay.types import EventItem

logger = get_logger(__name__)

API_VERSION = "v1.0"

CONTENT_TYPES = (
    "Audit.AzureActiveDirectory",
    "Audit.Exchange",
    "Audit.SharePoint",
    "Audit.General",
    "DLP.All",
)

# The content listing rejects windows longer than 24 hours
MAX_CONTENT_WINDOW = timedelta(hours=24)

CONTENT_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S"


def next_page_uri(body: ResponseBody) -> str | None:
    """Continuation URL of a content listing (the ``NextPageUri`` header)."""
    return body.headers.get("NextPageUri") or None


def tenant_from_content_uri(uri: str) -> str | None:
    """Tenant id embedded in a content blob URI.

    Blob URIs look like ``https://manage.office.com/api/v1.0/<tenant>/activity/...``.
    """
    segments = httpx.URL(uri).path.split("/")
    try:
        index = segments.index(API_VERSION)
    except ValueError:
        return None
    if index + 1 < len(segments) and segments[index + 1]:
        return segments[index + 1]
    return None


class Office365ManagementSource(EventSource):
    """Audit records from the Management Activity API."""

    name: ClassVar[str] = "Office365Management"
    resource_id: ClassVar[str] = "https://manage.office.com"
    required_roles: ClassVar[tuple[str, ...]] = (
        "ActivityFeed.Read",
        "ActivityFeed.ReadDlp",
        "ServiceHealth.Read",
    )

    def __init__(
        self,
        dispatcher: RequestDispatcher,
        watermark: Watermark,
        clock: Callable[[], datetime] = utcnow,
        subscribe: bool = True,
    ) -> None:
        """Initialize the source.

        Args:
            dispatcher: Dispatcher holding credentials for manage.office.com.
            watermark: Start of the next content window.
            clock: Source of the current UTC time.
            subscribe: Start the content subscriptions immediately.
        """
        self._dispatcher = dispatcher
        self._watermark = watermark
        self._clock = clock
        self.subscribed_tenants = self.subscribe() if subscribe else 0

    @classmethod
    def build(cls, context: SourceContext) -> Self:
        return cls(
            context.dispatcher_for(cls.resource_id, cls.required_roles),
            context.watermark(),
            context.clock,
        )

    @property
    def feed_url(self) -> str:
        return f"{self.resource_id}/api/{API_VERSION}/{TENANT_PLACEHOLDER}/activity/feed"

    def subscribe(self) -> int:
        """Start a subscription for every content type in every tenant.

        Tenants that are already subscribed answer 400, which is not an error.

        Returns:
            Number of tenants with every content type enabled.
        """
        for content_type in CONTENT_TYPES:
            self._dispatcher.send(
                f"{self.feed_url}/subscriptions/start"
                f"?contentType={content_type}&PublisherIdentifier={TENANT_PLACEHOLDER}",
                method="POST",
                subscribe=True,
            )

        bodies = self._dispatcher.send(
            f"{self.feed_url}/subscriptions/list?PublisherIdentifier={TENANT_PLACEHOLDER}"
        )
        subscribed = 0
        for body in bodies:
            enabled = {
                item.get("contentType")
                for item in json_items(body)
                if str(item.get("status", "")).lower() == "enabled"
            }
            if enabled.issuperset(CONTENT_TYPES):
                subscribed += 1
            else:
                logger.warning(
                    "Tenant %s is missing subscriptions: %s",
                    body.tenant_id,
                    ", ".join(sorted(set(CONTENT_TYPES) - enabled)),
                )

        logger.info("%d tenant(s) subscribed to all content types", subscribed)
        return subscribed

    def content_window(self) -> tuple[datetime, datetime]:
        """The (start, end) window for the next poll, capped at 24 hours."""
        start = self._watermark.since
        end = self._clock().replace(microsecond=0)
        if end - start > MAX_CONTENT_WINDOW:
            end = start + MAX_CONTENT_WINDOW
        return start, end

    def _content_uris(self, start: datetime, end: datetime) -> list[str]:
        start_time = start.strftime(CONTENT_TIME_FORMAT)
        end_time = end.strftime(CONTENT_TIME_FORMAT)

        uris: list[str] = []
        for content_type in CONTENT_TYPES:
            bodies = self._dispatcher.send(
                f"{self.feed_url}/subscriptions/content"
                f"?contentType={content_type}&PublisherIdentifier={TENANT_PLACEHOLDER}"
                f"&startTime={start_time}&endTime={end_time}",
                next_page=next_page_uri,
            )
            for body in bodies:
                for blob in json_items(body):
                    uri = blob.get("contentUri")
                    if uri:
                        uris.append(str(uri))
        return uris

    def activities(self) -> list[EventItem]:
        """Audit records published since the watermark."""
        start, end = self.content_window()
        uris = self._content_uris(start, end)
        self._watermark.advance(end)

        records: list[EventItem] = []
        for uri in uris:
            tenant = tenant_from_content_uri(uri)
            if tenant is None:
                logger.warning("Cannot determine tenant of content blob %s; skipping", uri)
                continue
            blob_url = str(httpx.URL(uri).copy_merge_params({"PublisherIdentifier": tenant}))
            for body in self._dispatcher.send(blob_url, tenant=tenant):
                records.extend(json_items(body))

        logger.info(
            "Found %d audit record(s) in %d content blob(s) between %s and %s",
            len(records),
            len(uris),
            start.isoformat(),
            end.isoformat(),
        )
        return records

    def operations(self) -> dict[str, ListOperation]:
        return {"Activities": self.activities}

    def close(self) -> None:
        self._dispatcher.close()


__all__ = [
    "API_VERSION",
    "CONTENT_TYPES",
    "Office365ManagementSource",
    "next_page_uri",
    "tenant_from_content_uri",
]
