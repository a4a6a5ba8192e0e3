"""Exception types shared across the relay.

Most failures in the relay are recovered close to where they happen: a bad
credential is skipped by the resolver, a failed request is skipped by the
dispatcher, a failed delivery is logged by the worker. The exceptions below
mark the seams where that recovery takes place.

Only ``ConfigurationError`` and ``ClockSkewError`` are allowed to reach the
application entry point, where they abort startup.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for all relay errors."""

    pass


class ConfigurationError(RelayError):
    """Raised when required settings are missing or malformed.

    Example:
        >>> raise ConfigurationError("RELAY_TENANT_IDS is empty")
    """

    pass


class CertificateError(RelayError):
    """Raised when certificate material cannot be loaded.

    Typical causes are a missing file, a wrong password, or a file that holds
    neither a PKCS#12 bundle nor a PEM key/certificate pair.
    """

    pass


class AuthenticationError(RelayError):
    """Raised when the token endpoint rejects a credential trial."""

    pass


class ClockSkewError(RelayError):
    """Raised when a token's issued-at time is too far from local UTC time.

    Token expiry math depends on the local clock agreeing with the issuer's
    clock. This error is fatal: the resolver never swallows it.
    """

    pass


class RequestFailedError(RelayError):
    """Raised when a request for one credential is abandoned.

    Attributes:
        status_code: HTTP status of the last response, or None when the
            request never produced a response (transport failure).
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


__all__ = [
    "AuthenticationError",
    "CertificateError",
    "ClockSkewError",
    "ConfigurationError",
    "RelayError",
    "RequestFailedError",
]
