"""Authenticated HTTP dispatch across a set of tenant credentials.

The dispatcher sends one logical request once per credential, so a single
call collects results from every tenant the relay can see. Retry policy is
deliberately small and bounded:

- HTTP 403 is how the Microsoft 365 APIs signal throttling. The dispatcher
  waits one rate-limit window and retries once; a second 403 abandons the
  request for that credential.
- A transport failure (connection reset, timeout, TLS error) replaces the HTTP
  client, pauses briefly and retries once; a second failure abandons the
  request for that credential.
- Any other non-200 status abandons the request for that credential.

Abandoning a credential never aborts the call: the remaining credentials are
still tried and everything collected so far is returned.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Self

import httpx

from m365relay.cancellation import CancellationToken
from m365relay.credential import Credential
from m365relay.exceptions import RequestFailedError
from m365relay.logging import get_logger, redact

logger = get_logger(__name__)

# Default timeout for API requests (connect, read, write, pool)
DEFAULT_TIMEOUT = httpx.Timeout(10.0, read=60.0)

# Replaced with the credential's tenant id in every request URL
TENANT_PLACEHOLDER = "{tenant_id}"

# Default wait before retrying a throttled (403) request, in seconds
DEFAULT_RATE_LIMIT_BACKOFF = 60.0

# Default pause before retrying after a transport failure, in seconds
DEFAULT_TRANSPORT_RETRY_PAUSE = 5.0


def _default_client_factory() -> httpx.Client:
    return httpx.Client(timeout=DEFAULT_TIMEOUT)


@dataclass(frozen=True)
class ResponseBody:
    """One successful (HTTP 200) response page.

    Attributes:
        tenant_id: Tenant whose credential produced the response.
        url: URL the page was fetched from.
        content: Raw response body; empty for "no content" responses.
        headers: Response headers (case-insensitive mapping).
    """

    tenant_id: str
    url: str
    content: bytes = field(repr=False)
    headers: Mapping[str, str] = field(default_factory=dict, repr=False)

    def json(self) -> Any:
        """Decode the body as JSON."""
        return json.loads(self.content)


# Returns the URL of the next page, or None when the response is the last page
NextPage = Callable[[ResponseBody], str | None]


class RequestDispatcher:
    """Sends requests on behalf of every resolved tenant credential.

    The dispatcher owns its ``httpx.Client`` exclusively. It holds the
    credentials it was given by reference and only ever refreshes their
    tokens.
    """

    def __init__(
        self,
        credentials: Mapping[str, Credential],
        cancel_token: CancellationToken,
        rate_limit_backoff: float = DEFAULT_RATE_LIMIT_BACKOFF,
        transport_retry_pause: float = DEFAULT_TRANSPORT_RETRY_PAUSE,
        client_factory: Callable[[], httpx.Client] = _default_client_factory,
        show_secrets: bool = False,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            credentials: Mapping of tenant id to credential, from the resolver.
            cancel_token: Shared cancellation signal; interrupts backoff waits.
            rate_limit_backoff: Seconds to wait before retrying a 403.
            transport_retry_pause: Seconds to wait before retrying a transport failure.
            client_factory: Builds the HTTP client, and its replacement after a
                transport failure.
            show_secrets: Whether bearer tokens may appear in debug logs.
        """
        self._credentials = credentials
        self._cancel_token = cancel_token
        self.rate_limit_backoff = rate_limit_backoff
        self.transport_retry_pause = transport_retry_pause
        self._client_factory = client_factory
        self._show_secrets = show_secrets
        # Lazily initialized; replaced after transport failures
        self._client: httpx.Client | None = None

    @property
    def tenants(self) -> list[str]:
        """Tenant ids this dispatcher can send as."""
        return list(self._credentials)

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = self._client_factory()
        return self._client

    def _reset_client(self) -> None:
        """Discard the current HTTP client; the next request builds a new one."""
        if self._client is not None:
            try:
                self._client.close()
            except httpx.HTTPError as e:
                logger.debug("Error closing broken HTTP client: %s", e)
            self._client = None

    def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def _request(self, credential: Credential, method: str, url: str) -> httpx.Response | None:
        """Issue one request with the bounded 403 and transport retries.

        Returns:
            The final response, or None if cancellation interrupted a wait.

        Raises:
            RequestFailedError: If the retry for 403 or for a transport
                failure also fails.
        """
        rate_limit_retried = False
        transport_retried = False

        while True:
            logger.debug(
                "Sending %s %s for tenant %s, app %s, using token %s",
                method,
                url,
                credential.tenant_id,
                credential.app_id,
                redact(credential.token, self._show_secrets),
            )
            headers = {"Authorization": f"Bearer {credential.token}"}

            try:
                response = self._get_client().request(method, url, headers=headers)
            except httpx.TransportError as e:
                if transport_retried:
                    raise RequestFailedError(
                        f"{method} {url} failed again after recreating the HTTP client: {e}"
                    ) from e
                transport_retried = True
                logger.warning(
                    "%s %s failed for tenant %s (%s: %s). Recreating HTTP client, "
                    "retrying in %.1fs",
                    method,
                    url,
                    credential.tenant_id,
                    type(e).__name__,
                    e,
                    self.transport_retry_pause,
                )
                self._reset_client()
                if self._cancel_token.wait(self.transport_retry_pause):
                    return None
                continue
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                # Redirect loops and malformed continuation URLs fail the same way on retry
                raise RequestFailedError(
                    f"{method} {url} could not be sent ({type(e).__name__}: {e})"
                ) from e

            if response.status_code == 403:
                if rate_limit_retried:
                    raise RequestFailedError(
                        f"{method} {url} still returned 403 after waiting "
                        f"{self.rate_limit_backoff:.0f}s",
                        status_code=403,
                    )
                rate_limit_retried = True
                logger.warning(
                    "%s %s returned 403 for tenant %s (likely throttled). Retrying in %.0fs",
                    method,
                    url,
                    credential.tenant_id,
                    self.rate_limit_backoff,
                )
                if self._cancel_token.wait(self.rate_limit_backoff):
                    return None
                continue

            return response

    def _send_for_credential(
        self,
        credential: Credential,
        url: str,
        method: str,
        next_page: NextPage | None,
        subscribe: bool,
        bodies: list[ResponseBody],
    ) -> None:
        page_url: str | None = url.replace(TENANT_PLACEHOLDER, credential.tenant_id)
        pages = 0

        while page_url:
            if credential.expired and not credential.refresh_token():
                logger.warning(
                    "Skipping tenant %s: token expired and could not be refreshed",
                    credential.tenant_id,
                )
                return

            response = self._request(credential, method, page_url)
            if response is None:
                logger.info("Request to %s abandoned: shutdown requested", page_url)
                return

            status = response.status_code
            if status == 200:
                body = ResponseBody(
                    tenant_id=credential.tenant_id,
                    url=page_url,
                    content=response.content,
                    headers=response.headers,
                )
                if body.content:
                    bodies.append(body)
                else:
                    logger.debug("%s %s returned no content", method, page_url)
                pages += 1
                page_url = next_page(body) if next_page is not None else None
                if page_url:
                    logger.debug("Following page %d for tenant %s", pages + 1, credential.tenant_id)
                continue

            if subscribe and status == 400:
                logger.info(
                    "Subscription request for tenant %s returned 400 (already subscribed)",
                    credential.tenant_id,
                )
                return

            raise RequestFailedError(f"{method} {page_url} returned {status}", status_code=status)

    def send(
        self,
        url: str,
        method: str = "GET",
        tenant: str | None = None,
        next_page: NextPage | None = None,
        subscribe: bool = False,
    ) -> list[ResponseBody]:
        """Send a request as every credential, or only as ``tenant``.

        Args:
            url: Request URL; ``{tenant_id}`` is replaced per credential.
            method: HTTP method.
            tenant: Restrict the call to this tenant's credential.
            next_page: Extracts the continuation URL from a page. Pages are
                followed until it returns None.
            subscribe: Treat HTTP 400 as "already subscribed".

        Returns:
            Non-empty response bodies, grouped by credential, in page order.
        """
        if tenant is not None:
            credential = self._credentials.get(tenant)
            if credential is None:
                logger.warning("No credential for tenant %s; skipping %s", tenant, url)
                return []
            targets = [credential]
        else:
            targets = list(self._credentials.values())

        bodies: list[ResponseBody] = []
        for credential in targets:
            if self._cancel_token.cancelled:
                break
            try:
                self._send_for_credential(credential, url, method, next_page, subscribe, bodies)
            except RequestFailedError as e:
                logger.warning("Request failed for tenant %s: %s", credential.tenant_id, e)

        return bodies


__all__ = [
    "DEFAULT_RATE_LIMIT_BACKOFF",
    "DEFAULT_TIMEOUT",
    "DEFAULT_TRANSPORT_RETRY_PAUSE",
    "NextPage",
    "RequestDispatcher",
    "ResponseBody",
    "TENANT_PLACEHOLDER",
]
