"""Test helper functions for relay tests.

Usage
=====

Import and use helpers directly in tests::

    from tests.helpers import FIXED_NOW, make_config, make_pair, make_token

    def test_example():
        config = make_config(poll_interval=5)
        pair = make_pair(source="MicrosoftThreatProtection", operation="Incidents")
        token = make_token(roles=["Incident.Read.All"])
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import jwt

from m365relay.config import Config, CredentialSettings, PairConfig
from m365relay.types import SinkAuthType

# Reference instant used by every fixed clock in the tests
FIXED_NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)

# HS256 key for minting test access tokens; the relay never verifies signatures
TEST_SIGNING_KEY = "m365-relay-test-signing-key-0123456789"

TENANT_A = "11111111-1111-1111-1111-111111111111"
TENANT_B = "22222222-2222-2222-2222-222222222222"
APP_ID = "aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa"


def fixed_clock(now: datetime = FIXED_NOW) -> Callable[[], datetime]:
    """A clock that always returns ``now``."""
    return lambda: now


class MutableClock:
    """A clock tests can move forward."""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def make_token(
    roles: Iterable[str] = ("Incident.Read.All",),
    issued_at: datetime | None = FIXED_NOW,
    expires_at: datetime | None = FIXED_NOW + timedelta(hours=1),
    **claims: Any,
) -> str:
    """Mint an access token carrying the given roles and lifetime.

    Pass ``issued_at=None`` or ``expires_at=None`` to omit ``iat`` or ``exp``.
    """
    payload: dict[str, Any] = {"roles": list(roles), **claims}
    if issued_at is not None:
        payload["iat"] = int(issued_at.timestamp())
    if expires_at is not None:
        payload["exp"] = int(expires_at.timestamp())
    return jwt.encode(payload, TEST_SIGNING_KEY, algorithm="HS256")


def make_credential_settings(
    tenant_ids: Iterable[str] = (TENANT_A,),
    app_ids: Iterable[str] = (APP_ID,),
    certificate_paths: Iterable[str] = (),
    certificate_passwords: Iterable[str] = (),
    app_secrets: Iterable[str] = ("secret-1",),
) -> CredentialSettings:
    return CredentialSettings(
        tenant_ids=tuple(tenant_ids),
        app_ids=tuple(app_ids),
        certificate_paths=tuple(certificate_paths),
        certificate_passwords=tuple(certificate_passwords),
        app_secrets=tuple(app_secrets),
    )


def make_config(**overrides: Any) -> Config:
    """Create a Config with fast test timings, overridable per field."""
    defaults: dict[str, Any] = {
        "credentials": make_credential_settings(),
        "poll_interval": 1,
        "rate_limit_backoff": 0.01,
        "transport_retry_pause": 0.01,
        "watchdog_interval": 0.05,
        "flood_step_ms": 0,
        "flood_cap_ms": 0,
    }
    defaults.update(overrides)
    return Config(**defaults)


def make_pair(**overrides: Any) -> PairConfig:
    defaults: dict[str, Any] = {
        "source": "MicrosoftThreatProtection",
        "operation": "Incidents",
        "sink_address": "https://hooks.example.com/relay",
        "sink": "Plain",
        "sink_auth_type": SinkAuthType.BLANK,
        "sink_auth": "",
    }
    defaults.update(overrides)
    return PairConfig(**defaults)


def json_response(data: Any, status_code: int = 200, **kwargs: Any) -> httpx.Response:
    return httpx.Response(status_code, json=data, **kwargs)


def client_factory_for(handler: Callable[[httpx.Request], httpx.Response]) -> Callable[[], httpx.Client]:
    """A client factory whose clients answer every request with ``handler``."""
    transport = httpx.MockTransport(handler)
    return lambda: httpx.Client(transport=transport)
