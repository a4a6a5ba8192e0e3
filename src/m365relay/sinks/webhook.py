"""Plain JSON webhook sink."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, ClassVar, Self

import httpx

from m365relay.cancellation import CancellationToken
from m365relay.config import PairConfig
from m365relay.logging import get_logger, redact
from m365relay.sinks.base import EventSink
from m365relay.types import EventItem, SinkAuthType

logger = get_logger(__name__)

DEFAULT_TIMEOUT = httpx.Timeout(10.0, read=30.0)


def _default_client_factory() -> httpx.Client:
    return httpx.Client(timeout=DEFAULT_TIMEOUT)


def authorization_header(auth_type: SinkAuthType, auth: str) -> str | None:
    """Value of the Authorization header for a webhook.

    ``blank`` sends the configured value as is. ``bearer`` and ``basic``
    prefix it with the scheme; a basic value must already be base64 encoded.
    No header is sent when the value is empty.
    """
    if not auth:
        return None
    match auth_type:
        case SinkAuthType.BEARER:
            return f"Bearer {auth}"
        case SinkAuthType.BASIC:
            return f"Basic {auth}"
        case _:
            return auth


class PlainWebhookSink(EventSink):
    """POSTs each item as a JSON document.

    Only HTTP 200 counts as delivered. A failed delivery is resent once,
    unless shutdown has been requested in the meantime.
    """

    name: ClassVar[str] = "Plain"

    def __init__(
        self,
        address: str,
        auth_type: SinkAuthType = SinkAuthType.BLANK,
        auth: str = "",
        cancel_token: CancellationToken | None = None,
        client_factory: Callable[[], httpx.Client] = _default_client_factory,
        show_secrets: bool = False,
    ) -> None:
        self.address = address
        self.auth_type = auth_type
        self._auth = auth
        self._cancel_token = cancel_token or CancellationToken()
        self._client_factory = client_factory
        self._show_secrets = show_secrets
        self._client: httpx.Client | None = None

    @classmethod
    def build(
        cls, pair: PairConfig, cancel_token: CancellationToken, show_secrets: bool = False
    ) -> Self:
        return cls(
            pair.sink_address,
            pair.sink_auth_type,
            pair.sink_auth,
            cancel_token=cancel_token,
            show_secrets=show_secrets,
        )

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = self._client_factory()
        return self._client

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {}
        authorization = authorization_header(self.auth_type, self._auth)
        if authorization is not None:
            headers["Authorization"] = authorization
        return headers

    def _post(self, item: EventItem) -> int | None:
        logger.debug(
            "Posting item to %s (auth %s: %s)",
            self.address,
            self.auth_type,
            redact(self._auth, self._show_secrets),
        )
        try:
            response = self._get_client().post(self.address, json=item, headers=self._headers())
        except httpx.HTTPError as e:
            logger.warning("Webhook %s unreachable: %s: %s", self.address, type(e).__name__, e)
            return None
        return response.status_code

    def send(self, item: EventItem) -> bool:
        status = self._post(item)
        if status == 200:
            return True

        logger.warning("Webhook %s did not accept item (status %s)", self.address, status)
        if self._cancel_token.cancelled:
            return False

        logger.info("Resending item to %s", self.address)
        status = self._post(item)
        if status == 200:
            return True

        logger.error("Resend to %s failed (status %s); item dropped", self.address, status)
        return False

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


__all__ = ["PlainWebhookSink", "authorization_header"]
