"""OAuth2 credentials and access-token lifecycle.

A :class:`Credential` is one identity that has already proven it can
authenticate: a tenant, an application, and either a certificate or a secret.
It owns the live access token for one resource and knows how to refresh it.

Tokens are obtained with the OAuth2 client-credentials grant against the
Azure AD v1 token endpoint (``{authority}/{tenant}/oauth2/token``), which takes
the target API as a ``resource`` parameter. Secret credentials post the secret
directly; certificate credentials post a signed client assertion.
"""

from __future__ import annotations

import base64
import threading
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, TypeAlias

import httpx
import jwt
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes
from cryptography.hazmat.primitives.serialization import pkcs12

from m365relay.config import DEFAULT_AUTHORITY
from m365relay.exceptions import AuthenticationError, CertificateError, ClockSkewError
from m365relay.logging import get_logger, redact

logger = get_logger(__name__)

# Timeout for token endpoint calls (connect, read, write, pool)
DEFAULT_TIMEOUT = httpx.Timeout(10.0, read=30.0)

CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"

# Lifetime of a signed client assertion
ASSERTION_LIFETIME = timedelta(minutes=10)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


@dataclass(frozen=True)
class SecretMaterial:
    """An application secret."""

    secret: str = field(repr=False)

    @property
    def kind(self) -> str:
        return "secret"


@dataclass(frozen=True)
class CertificateMaterial:
    """A certificate with its private key, ready to sign client assertions.

    Attributes:
        path: File the certificate was loaded from.
        thumbprint: Base64url SHA-1 thumbprint, sent as the ``x5t`` header.
        private_key: Key used to sign assertions.
        password: Password the file was opened with, if any.
    """

    path: str
    thumbprint: str
    private_key: PrivateKeyTypes = field(repr=False)
    password: str | None = field(default=None, repr=False)

    @property
    def kind(self) -> str:
        return "certificate"


CredentialMaterial: TypeAlias = SecretMaterial | CertificateMaterial


def _thumbprint(certificate: x509.Certificate) -> str:
    digest = certificate.fingerprint(hashes.SHA1())  # noqa: S303 - x5t is defined as SHA-1
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def load_certificate(path: str, password: str | None = None) -> CertificateMaterial:
    """Load certificate material from a PKCS#12 bundle or a PEM file.

    PKCS#12 (``.pfx``/``.p12``) is tried first. If the file is not a PKCS#12
    bundle it is read as PEM holding both the private key and the certificate.

    Args:
        path: Path to the certificate file.
        password: Optional password protecting the bundle or key.

    Returns:
        CertificateMaterial for signing client assertions.

    Raises:
        CertificateError: If the file cannot be read, the password is wrong,
            or the file does not contain both a key and a certificate.
    """
    try:
        data = Path(path).read_bytes()
    except OSError as e:
        raise CertificateError(f"Cannot read certificate {path}: {e}") from e

    secret = password.encode("utf-8") if password else None

    try:
        private_key, certificate, _ = pkcs12.load_key_and_certificates(data, secret)
    except ValueError:
        # Not PKCS#12 or wrong password; fall back to PEM
        try:
            private_key = serialization.load_pem_private_key(data, password=secret)
            certificate = x509.load_pem_x509_certificate(data)
        except (ValueError, TypeError) as e:
            raise CertificateError(f"Cannot load certificate {path}: {e}") from e

    if private_key is None or certificate is None:
        raise CertificateError(f"Certificate {path} must contain a private key and a certificate")

    return CertificateMaterial(
        path=path,
        thumbprint=_thumbprint(certificate),
        private_key=private_key,
        password=password,
    )


def _claim_time(claims: dict[str, Any], name: str) -> datetime | None:
    value = claims.get(name)
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(float(value), tz=UTC)
    except (TypeError, ValueError, OverflowError):
        return None


@dataclass(frozen=True)
class AccessToken:
    """An encoded access token together with its decoded claims.

    Instances are immutable so a credential can swap token and claims in one
    reference assignment.
    """

    value: str = field(repr=False)
    claims: dict[str, Any]

    @property
    def roles(self) -> tuple[str, ...]:
        """Application roles granted to the bearer (the ``roles`` claim)."""
        roles = self.claims.get("roles", ())
        if isinstance(roles, str):
            return (roles,)
        return tuple(str(role) for role in roles)

    @property
    def issued_at(self) -> datetime | None:
        return _claim_time(self.claims, "iat")

    @property
    def expires_at(self) -> datetime | None:
        return _claim_time(self.claims, "exp")


def decode_token(raw: str) -> AccessToken:
    """Decode an access token's claims without verifying its signature.

    The relay is a token consumer; the API that receives the token verifies it.

    Raises:
        AuthenticationError: If the token is empty or not a JWT.
    """
    if not raw:
        raise AuthenticationError("Token endpoint returned an empty access token")
    try:
        claims = jwt.decode(raw, options={"verify_signature": False})
    except jwt.PyJWTError as e:
        raise AuthenticationError(f"Access token could not be decoded: {e}") from e
    return AccessToken(value=raw, claims=claims)


class TokenClient:
    """Performs OAuth2 client-credentials grants against an Azure AD authority.

    A fresh ``httpx.Client`` is opened for each grant; token requests are rare
    and callers in different workers never share a connection.
    """

    def __init__(
        self,
        authority: str = DEFAULT_AUTHORITY,
        timeout: httpx.Timeout | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the token client.

        Args:
            authority: Authority base URL (e.g. "https://login.microsoftonline.com").
            timeout: Optional custom timeout configuration.
            transport: Optional transport, used to stub the endpoint in tests.
        """
        self.authority = authority.rstrip("/")
        self.timeout = timeout or DEFAULT_TIMEOUT
        self._transport = transport

    def token_endpoint(self, tenant_id: str) -> str:
        return f"{self.authority}/{tenant_id}/oauth2/token"

    def _client_assertion(
        self, app_id: str, material: CertificateMaterial, endpoint: str
    ) -> str:
        now = utcnow()
        claims = {
            "aud": endpoint,
            "iss": app_id,
            "sub": app_id,
            "jti": str(uuid.uuid4()),
            "nbf": int(now.timestamp()),
            "exp": int((now + ASSERTION_LIFETIME).timestamp()),
        }
        try:
            return jwt.encode(
                claims,
                material.private_key,  # type: ignore[arg-type]
                algorithm="RS256",
                headers={"x5t": material.thumbprint},
            )
        except (jwt.PyJWTError, ValueError, TypeError) as e:
            raise AuthenticationError(
                f"Cannot sign client assertion with {material.path}: {e}"
            ) from e

    def acquire(
        self,
        tenant_id: str,
        app_id: str,
        material: CredentialMaterial,
        resource_id: str,
    ) -> str:
        """Request an access token for ``resource_id``.

        Args:
            tenant_id: Tenant the application is registered in.
            app_id: Application (client) id.
            material: Secret or certificate proving the application's identity.
            resource_id: Audience the token is requested for.

        Returns:
            The encoded access token.

        Raises:
            AuthenticationError: If the grant is rejected or the endpoint is
                unreachable.
        """
        endpoint = self.token_endpoint(tenant_id)
        data = {
            "grant_type": "client_credentials",
            "client_id": app_id,
            "resource": resource_id,
        }
        if isinstance(material, SecretMaterial):
            data["client_secret"] = material.secret
        else:
            data["client_assertion_type"] = CLIENT_ASSERTION_TYPE
            data["client_assertion"] = self._client_assertion(app_id, material, endpoint)

        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(endpoint, data=data)
        except httpx.HTTPError as e:
            raise AuthenticationError(f"Token request to {endpoint} failed: {e}") from e

        if response.status_code != 200:
            error_msg = f"Token request for app {app_id} failed with status {response.status_code}"
            try:
                error_data = response.json()
                if "error_description" in error_data:
                    error_msg += f": {error_data['error_description'].splitlines()[0]}"
            except (ValueError, KeyError, TypeError, AttributeError, IndexError):
                pass
            raise AuthenticationError(error_msg)

        try:
            token: str = response.json().get("access_token", "")
        except (ValueError, AttributeError) as e:
            raise AuthenticationError(f"Token response from {endpoint} is not JSON") from e
        if not token:
            raise AuthenticationError(f"Token response from {endpoint} has no access_token")
        return token


class Credential:
    """A resolved identity holding a live access token for one resource.

    Construction performs the first token grant. A credential is never
    replaced during a run; :meth:`refresh_token` only swaps the token.
    """

    def __init__(
        self,
        tenant_id: str,
        app_id: str,
        resource_id: str,
        material: CredentialMaterial,
        token_client: TokenClient,
        expiry_margin_minutes: int = 5,
        clock_skew_minutes: int = 5,
        clock: Callable[[], datetime] = utcnow,
        show_secrets: bool = False,
    ) -> None:
        """Acquire the initial token and validate the local clock.

        Args:
            tenant_id: Tenant the token is scoped to.
            app_id: Application (client) id.
            resource_id: Audience of the token.
            material: Secret or certificate material.
            token_client: Client performing the grant.
            expiry_margin_minutes: Safety window subtracted from the expiry time.
            clock_skew_minutes: Maximum tolerated distance between the token's
                issued-at time and local UTC time.
            clock: Source of the current UTC time.
            show_secrets: Whether tokens may appear in debug logs.

        Raises:
            AuthenticationError: If the grant fails.
            ClockSkewError: If the local clock disagrees with the issuer.
        """
        self.tenant_id = tenant_id
        self.app_id = app_id
        self.resource_id = resource_id
        self.material = material
        self._token_client = token_client
        self._margin = timedelta(minutes=expiry_margin_minutes)
        self._clock_skew = timedelta(minutes=clock_skew_minutes)
        self._clock = clock
        self._show_secrets = show_secrets
        self._lock = threading.Lock()

        token = self._acquire()
        self._check_clock_skew(token)
        self._token = token

    def __repr__(self) -> str:
        return (
            f"Credential(tenant_id={self.tenant_id!r}, app_id={self.app_id!r}, "
            f"resource_id={self.resource_id!r}, material={self.material.kind})"
        )

    def _acquire(self) -> AccessToken:
        logger.debug(
            "Requesting token for tenant %s, app %s (%s)",
            self.tenant_id,
            self.app_id,
            self.material.kind,
        )
        raw = self._token_client.acquire(
            self.tenant_id, self.app_id, self.material, self.resource_id
        )
        token = decode_token(raw)
        logger.debug("Token: %s", redact(token.value, self._show_secrets))
        return token

    def _check_clock_skew(self, token: AccessToken) -> None:
        issued_at = token.issued_at
        if issued_at is None:
            logger.debug("Token for tenant %s carries no iat claim", self.tenant_id)
            return
        now = self._clock()
        if abs(now - issued_at) > self._clock_skew:
            raise ClockSkewError(
                f"Token for tenant {self.tenant_id} was issued at {issued_at.isoformat()} "
                f"but local UTC time is {now.isoformat()}; the difference exceeds "
                f"{self._clock_skew}. Synchronise the system clock."
            )

    @property
    def token(self) -> str:
        """The current encoded access token."""
        return self._token.value

    @property
    def claims(self) -> dict[str, Any]:
        return self._token.claims

    @property
    def roles(self) -> tuple[str, ...]:
        return self._token.roles

    @property
    def expires_at(self) -> datetime | None:
        return self._token.expires_at

    @property
    def expired(self) -> bool:
        """True once ``expires_at - margin`` has passed. Tokens without ``exp`` count as expired."""
        expires_at = self._token.expires_at
        if expires_at is None:
            return True
        return expires_at - self._margin < self._clock()

    def has_roles(self, required: Iterable[str]) -> bool:
        """Check that every required role is present in the token's role claims."""
        return set(required).issubset(self._token.roles)

    def refresh_token(self) -> bool:
        """Replace the access token by repeating the original grant.

        Token and claims are swapped together. On any failure the previous
        token stays in place.

        Returns:
            True if a fresh, unexpired token was installed.
        """
        try:
            token = self._acquire()
        except AuthenticationError as e:
            logger.warning(
                "Token refresh failed for tenant %s, app %s: %s",
                self.tenant_id,
                self.app_id,
                e,
            )
            return False

        # Same test as ``expired``: a token inside the margin would be refreshed again at once
        expires_at = token.expires_at
        if expires_at is None or expires_at - self._margin < self._clock():
            logger.warning(
                "Token refresh for tenant %s returned a token expiring within %s",
                self.tenant_id,
                self._margin,
            )
            return False

        with self._lock:
            self._token = token
        logger.info("Refreshed token for tenant %s, app %s", self.tenant_id, self.app_id)
        return True


__all__ = [
    "AccessToken",
    "CertificateMaterial",
    "Credential",
    "CredentialMaterial",
    "SecretMaterial",
    "TokenClient",
    "decode_token",
    "load_certificate",
    "utcnow",
]
