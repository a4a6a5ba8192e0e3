"""Tests for credentials, certificate loading and the token client."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from urllib.parse import parse_qs

import httpx
import jwt
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from m365relay.credential import (
    CLIENT_ASSERTION_TYPE,
    AccessToken,
    CertificateMaterial,
    Credential,
    SecretMaterial,
    TokenClient,
    decode_token,
    load_certificate,
)
from m365relay.exceptions import AuthenticationError, CertificateError, ClockSkewError
from tests.helpers import APP_ID, FIXED_NOW, TENANT_A, MutableClock, fixed_clock, make_token
from tests.mocks import SequenceTokenClient

RESOURCE = "https://api.security.microsoft.com"


@pytest.fixture(scope="module")
def key_and_certificate() -> tuple[rsa.RSAPrivateKey, x509.Certificate]:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "m365-relay-test")])
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(FIXED_NOW - timedelta(days=1))
        .not_valid_after(FIXED_NOW + timedelta(days=365))
        .sign(key, hashes.SHA256())
    )
    return key, certificate


@pytest.fixture
def pem_file(tmp_path: Path, key_and_certificate: tuple[rsa.RSAPrivateKey, x509.Certificate]) -> Path:
    key, certificate = key_and_certificate
    path = tmp_path / "relay.pem"
    path.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
        + certificate.public_bytes(serialization.Encoding.PEM)
    )
    return path


@pytest.fixture
def pfx_file(tmp_path: Path, key_and_certificate: tuple[rsa.RSAPrivateKey, x509.Certificate]) -> Path:
    key, certificate = key_and_certificate
    path = tmp_path / "relay.pfx"
    path.write_bytes(
        pkcs12.serialize_key_and_certificates(
            b"relay",
            key,
            certificate,
            None,
            serialization.BestAvailableEncryption(b"hunter2"),
        )
    )
    return path


def make_credential(token_client: SequenceTokenClient, **kwargs: object) -> Credential:
    defaults: dict[str, object] = {
        "tenant_id": TENANT_A,
        "app_id": APP_ID,
        "resource_id": RESOURCE,
        "material": SecretMaterial("secret-1"),
        "token_client": token_client,
        "clock": fixed_clock(),
    }
    defaults.update(kwargs)
    return Credential(**defaults)  # type: ignore[arg-type]


class TestLoadCertificate:
    def test_loads_pem(self, pem_file: Path) -> None:
        material = load_certificate(str(pem_file))

        assert isinstance(material, CertificateMaterial)
        assert material.kind == "certificate"
        assert material.path == str(pem_file)
        assert "=" not in material.thumbprint

    def test_loads_pfx_with_password(self, pfx_file: Path) -> None:
        material = load_certificate(str(pfx_file), "hunter2")

        assert material.password == "hunter2"

    def test_pfx_and_pem_share_thumbprint(self, pem_file: Path, pfx_file: Path) -> None:
        assert (
            load_certificate(str(pem_file)).thumbprint
            == load_certificate(str(pfx_file), "hunter2").thumbprint
        )

    def test_wrong_password(self, pfx_file: Path) -> None:
        with pytest.raises(CertificateError):
            load_certificate(str(pfx_file), "wrong")

    def test_missing_password(self, pfx_file: Path) -> None:
        with pytest.raises(CertificateError):
            load_certificate(str(pfx_file))

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(CertificateError, match="Cannot read certificate"):
            load_certificate(str(tmp_path / "nope.pfx"))

    def test_garbage_file(self, tmp_path: Path) -> None:
        path = tmp_path / "garbage.pem"
        path.write_text("not a certificate")

        with pytest.raises(CertificateError):
            load_certificate(str(path))


class TestAccessToken:
    def test_decode_reads_claims(self) -> None:
        token = decode_token(make_token(roles=["Incident.Read.All", "AdvancedHunting.Read.All"]))

        assert token.roles == ("Incident.Read.All", "AdvancedHunting.Read.All")
        assert token.issued_at == FIXED_NOW
        assert token.expires_at == FIXED_NOW + timedelta(hours=1)

    def test_single_role_string(self) -> None:
        token = AccessToken(value="x", claims={"roles": "ActivityFeed.Read"})

        assert token.roles == ("ActivityFeed.Read",)

    def test_no_roles(self) -> None:
        assert AccessToken(value="x", claims={}).roles == ()

    def test_decode_rejects_garbage(self) -> None:
        with pytest.raises(AuthenticationError, match="could not be decoded"):
            decode_token("not-a-jwt")

    def test_decode_rejects_empty(self) -> None:
        with pytest.raises(AuthenticationError, match="empty"):
            decode_token("")


class TestTokenClient:
    def test_token_endpoint(self) -> None:
        client = TokenClient("https://login.microsoftonline.com/")

        assert (
            client.token_endpoint(TENANT_A)
            == f"https://login.microsoftonline.com/{TENANT_A}/oauth2/token"
        )

    def test_secret_grant(self) -> None:
        seen: list[httpx.Request] = []
        issued = make_token()

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"access_token": issued})

        client = TokenClient(transport=httpx.MockTransport(handler))
        token = client.acquire(TENANT_A, APP_ID, SecretMaterial("s3cr3t"), RESOURCE)

        assert token == issued
        form = parse_qs(seen[0].content.decode())
        assert seen[0].method == "POST"
        assert form["grant_type"] == ["client_credentials"]
        assert form["client_id"] == [APP_ID]
        assert form["client_secret"] == ["s3cr3t"]
        assert form["resource"] == [RESOURCE]

    def test_certificate_grant_signs_assertion(self, pem_file: Path) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"access_token": make_token()})

        material = load_certificate(str(pem_file))
        client = TokenClient(transport=httpx.MockTransport(handler))
        client.acquire(TENANT_A, APP_ID, material, RESOURCE)

        form = parse_qs(seen[0].content.decode())
        assert "client_secret" not in form
        assert form["client_assertion_type"] == [CLIENT_ASSERTION_TYPE]
        assertion = form["client_assertion"][0]
        header = jwt.get_unverified_header(assertion)
        assert header["alg"] == "RS256"
        assert header["x5t"] == material.thumbprint
        claims = jwt.decode(assertion, options={"verify_signature": False})
        assert claims["iss"] == APP_ID
        assert claims["sub"] == APP_ID
        assert claims["aud"] == client.token_endpoint(TENANT_A)

    def test_rejected_grant(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                401,
                json={
                    "error": "invalid_client",
                    "error_description": "AADSTS7000215: Invalid client secret.\r\nTrace ID: x",
                },
            )

        client = TokenClient(transport=httpx.MockTransport(handler))

        with pytest.raises(AuthenticationError) as exc_info:
            client.acquire(TENANT_A, APP_ID, SecretMaterial("bad"), RESOURCE)

        assert "status 401" in str(exc_info.value)
        assert "AADSTS7000215" in str(exc_info.value)
        assert "Trace ID" not in str(exc_info.value)

    def test_missing_access_token(self) -> None:
        client = TokenClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={}))
        )

        with pytest.raises(AuthenticationError, match="no access_token"):
            client.acquire(TENANT_A, APP_ID, SecretMaterial("s"), RESOURCE)

    def test_transport_failure(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = TokenClient(transport=httpx.MockTransport(handler))

        with pytest.raises(AuthenticationError, match="failed"):
            client.acquire(TENANT_A, APP_ID, SecretMaterial("s"), RESOURCE)


class TestCredential:
    def test_acquires_token_on_construction(self) -> None:
        issued = make_token(roles=["Incident.Read.All"])
        credential = make_credential(SequenceTokenClient([issued]))

        assert credential.token == issued
        assert credential.roles == ("Incident.Read.All",)
        assert credential.has_roles(["Incident.Read.All"])
        assert not credential.has_roles(["Incident.Read.All", "AdvancedHunting.Read.All"])

    def test_grant_failure_propagates(self) -> None:
        with pytest.raises(AuthenticationError):
            make_credential(SequenceTokenClient([AuthenticationError("denied")]))

    def test_repr_hides_token(self) -> None:
        issued = make_token()
        credential = make_credential(SequenceTokenClient([issued]))

        assert issued not in repr(credential)

    def test_clock_skew_rejected(self) -> None:
        issued = make_token(issued_at=FIXED_NOW - timedelta(minutes=10))

        with pytest.raises(ClockSkewError, match="Synchronise the system clock"):
            make_credential(SequenceTokenClient([issued]), clock_skew_minutes=5)

    def test_clock_skew_within_tolerance(self) -> None:
        issued = make_token(issued_at=FIXED_NOW - timedelta(minutes=4))

        make_credential(SequenceTokenClient([issued]), clock_skew_minutes=5)

    def test_clock_ahead_of_issuer_rejected(self) -> None:
        issued = make_token(issued_at=FIXED_NOW + timedelta(minutes=6))

        with pytest.raises(ClockSkewError):
            make_credential(SequenceTokenClient([issued]), clock_skew_minutes=5)

    def test_missing_iat_skips_skew_check(self) -> None:
        make_credential(SequenceTokenClient([make_token(issued_at=None)]))


class TestCredentialExpiry:
    def test_fresh_token_not_expired(self) -> None:
        issued = make_token(expires_at=FIXED_NOW + timedelta(minutes=6))
        credential = make_credential(SequenceTokenClient([issued]), expiry_margin_minutes=5)

        assert credential.expired is False

    def test_expired_within_margin(self) -> None:
        issued = make_token(expires_at=FIXED_NOW + timedelta(minutes=4))
        credential = make_credential(SequenceTokenClient([issued]), expiry_margin_minutes=5)

        assert credential.expired is True

    def test_expires_as_clock_moves(self) -> None:
        clock = MutableClock()
        issued = make_token(expires_at=FIXED_NOW + timedelta(hours=1))
        credential = make_credential(SequenceTokenClient([issued]), clock=clock)

        clock.advance(minutes=54)
        assert credential.expired is False
        clock.advance(minutes=2)
        assert credential.expired is True

    def test_missing_exp_counts_as_expired(self) -> None:
        credential = make_credential(SequenceTokenClient([make_token(expires_at=None)]))

        assert credential.expired is True


class TestRefreshToken:
    def test_refresh_swaps_token(self) -> None:
        first = make_token(expires_at=FIXED_NOW + timedelta(minutes=1))
        second = make_token(expires_at=FIXED_NOW + timedelta(hours=1), jti="second")
        token_client = SequenceTokenClient([first, second])
        credential = make_credential(token_client)
        assert credential.expired is True

        assert credential.refresh_token() is True

        assert credential.token == second
        assert credential.claims["jti"] == "second"
        assert credential.expired is False
        assert token_client.calls == 2

    def test_failed_refresh_keeps_previous_token(self) -> None:
        first = make_token(expires_at=FIXED_NOW + timedelta(minutes=1))
        credential = make_credential(
            SequenceTokenClient([first, AuthenticationError("AADSTS700027")])
        )

        assert credential.refresh_token() is False

        assert credential.token == first
        assert credential.expires_at == FIXED_NOW + timedelta(minutes=1)

    def test_refresh_returning_expired_token_fails(self) -> None:
        first = make_token(expires_at=FIXED_NOW + timedelta(minutes=1))
        stale = make_token(expires_at=FIXED_NOW - timedelta(minutes=1))
        credential = make_credential(SequenceTokenClient([first, stale]))

        assert credential.refresh_token() is False
        assert credential.token == first

    def test_refresh_returning_token_inside_margin_fails(self) -> None:
        first = make_token(expires_at=FIXED_NOW + timedelta(minutes=1))
        short_lived = make_token(expires_at=FIXED_NOW + timedelta(minutes=2), jti="short")
        credential = make_credential(SequenceTokenClient([first, short_lived]))
        assert credential.expired is True

        assert credential.refresh_token() is False

        assert credential.token == first
        assert credential.expired is True

    def test_refresh_without_exp_fails(self) -> None:
        first = make_token(expires_at=FIXED_NOW + timedelta(minutes=1))
        credential = make_credential(
            SequenceTokenClient([first, make_token(expires_at=None)])
        )

        assert credential.refresh_token() is False
        assert credential.token == first
