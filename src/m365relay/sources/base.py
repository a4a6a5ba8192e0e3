"""Capability interface for event sources.

An event source knows the shape of one remote API: which resource its tokens
are for, which roles it needs, which URLs to call and how to pull event items
out of the responses. All network access goes through a
:class:`~m365relay.dispatcher.RequestDispatcher`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import ClassVar, TypeAlias

import httpx

from m365relay.cancellation import CancellationToken
from m365relay.credential import utcnow
from m365relay.dispatcher import (
    DEFAULT_RATE_LIMIT_BACKOFF,
    DEFAULT_TRANSPORT_RETRY_PAUSE,
    RequestDispatcher,
    ResponseBody,
)
from m365relay.exceptions import ConfigurationError
from m365relay.logging import get_logger
from m365relay.resolver import CredentialResolver
from m365relay.types import EventItem

logger = get_logger(__name__)

# A bound list operation returns the items that appeared since its last call
ListOperation: TypeAlias = Callable[[], list[EventItem]]

# Format used when a timestamp is embedded in a request URL
URL_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


class Watermark:
    """High-water mark of the last successful poll.

    Starts ``lookback_minutes`` in the past so the first poll picks up recent
    history, then moves forward to the start time of each poll.
    """

    def __init__(
        self,
        lookback_minutes: int = 1440,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._since = clock().replace(microsecond=0) - timedelta(minutes=lookback_minutes)

    @property
    def since(self) -> datetime:
        return self._since

    def advance(self, to: datetime) -> None:
        """Move the mark forward. Moving backwards is ignored."""
        to = to.replace(microsecond=0)
        if to > self._since:
            self._since = to

    def isoformat(self) -> str:
        return self._since.strftime(URL_TIMESTAMP_FORMAT)


@dataclass
class SourceContext:
    """Everything a source needs to build its own dispatcher.

    Each source resolves its own credentials and owns its own dispatcher, so
    no token or HTTP client is shared between workers.
    """

    resolver: CredentialResolver
    cancel_token: CancellationToken
    lookback_minutes: int = 1440
    rate_limit_backoff: float = DEFAULT_RATE_LIMIT_BACKOFF
    transport_retry_pause: float = DEFAULT_TRANSPORT_RETRY_PAUSE
    show_secrets: bool = False
    clock: Callable[[], datetime] = utcnow
    client_factory: Callable[[], httpx.Client] | None = None

    def dispatcher_for(
        self, resource_id: str, required_roles: tuple[str, ...]
    ) -> RequestDispatcher:
        """Resolve credentials for ``resource_id`` and wrap them in a dispatcher."""
        credentials = self.resolver.resolve(resource_id, required_roles)
        kwargs = {}
        if self.client_factory is not None:
            kwargs["client_factory"] = self.client_factory
        return RequestDispatcher(
            credentials,
            self.cancel_token,
            rate_limit_backoff=self.rate_limit_backoff,
            transport_retry_pause=self.transport_retry_pause,
            show_secrets=self.show_secrets,
            **kwargs,
        )

    def watermark(self) -> Watermark:
        return Watermark(self.lookback_minutes, self.clock)


class EventSource(ABC):
    """A remote API that produces event items.

    Subclasses declare the resource their tokens are issued for and the roles
    those tokens must carry, and expose their list operations by name.
    """

    name: ClassVar[str]
    resource_id: ClassVar[str]
    required_roles: ClassVar[tuple[str, ...]]

    @abstractmethod
    def operations(self) -> dict[str, ListOperation]:
        """Return the list operations this source offers, keyed by name."""
        pass

    def operation(self, name: str) -> ListOperation:
        """Look up a list operation by its configured name.

        Raises:
            ConfigurationError: If the source has no such operation.
        """
        operations = self.operations()
        if name not in operations:
            raise ConfigurationError(
                f"Source '{self.name}' has no operation '{name}'. "
                f"Available operations: {', '.join(sorted(operations))}"
            )
        return operations[name]

    def close(self) -> None:
        """Release network resources. The default does nothing."""
        pass


def odata_next_link(body: ResponseBody) -> str | None:
    """Continuation URL of an OData page (the ``@odata.nextLink`` property)."""
    if not body.content:
        return None
    try:
        data = body.json()
    except ValueError:
        return None
    if isinstance(data, dict):
        link = data.get("@odata.nextLink")
        return str(link) if link else None
    return None


def json_items(body: ResponseBody, key: str | None = None) -> list[EventItem]:
    """Extract the JSON objects of a response body.

    Args:
        body: A response page.
        key: Property holding the item array (e.g. "value" for OData). When
            None, the body itself must be the array.

    Returns:
        The objects found; malformed bodies yield an empty list.
    """
    try:
        data = body.json()
    except ValueError as e:
        logger.warning("Ignoring non-JSON response from %s: %s", body.url, e)
        return []

    if key is not None:
        data = data.get(key, []) if isinstance(data, dict) else []
    if not isinstance(data, list):
        logger.warning("Ignoring unexpected response shape from %s", body.url)
        return []
    return [item for item in data if isinstance(item, dict)]


__all__ = [
    "EventSource",
    "ListOperation",
    "SourceContext",
    "Watermark",
    "json_items",
    "odata_next_link",
]
