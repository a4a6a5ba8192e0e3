"""Discovery of working credentials for a resource.

The configuration lists tenants, applications, certificates, certificate
passwords and secrets independently. :class:`CredentialResolver` tries every
combination and keeps, per tenant, the first one that both authenticates and
carries the roles the caller needs.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from datetime import datetime

from m365relay.config import CredentialSettings
from m365relay.credential import (
    Credential,
    CredentialMaterial,
    SecretMaterial,
    TokenClient,
    load_certificate,
    utcnow,
)
from m365relay.exceptions import ClockSkewError
from m365relay.logging import get_logger

logger = get_logger(__name__)


class CredentialResolver:
    """Finds the tenant credentials that can call a resource.

    Trial order for every tenant/application pair:

    1. each certificate without a password;
    2. the same certificate with each configured password, in order;
    3. only if no certificate authenticated, each non-empty secret in order.

    The first trial that authenticates ends the search for that pair. Its
    token is then checked for the required roles; a token that lacks them is
    discarded and the pair is not retried with other material.

    Every failure is logged and swallowed except :class:`ClockSkewError`,
    which aborts resolution.
    """

    def __init__(
        self,
        settings: CredentialSettings,
        token_client: TokenClient | None = None,
        expiry_margin_minutes: int = 5,
        clock_skew_minutes: int = 5,
        clock: Callable[[], datetime] = utcnow,
        show_secrets: bool = False,
    ) -> None:
        """Initialize the resolver.

        Args:
            settings: Tenants, applications and credential material to try.
            token_client: Client for token grants. Defaults to one for the
                configured authority.
            expiry_margin_minutes: Expiry safety window given to each credential.
            clock_skew_minutes: Clock skew tolerance given to each credential.
            clock: Source of the current UTC time.
            show_secrets: Whether tokens may appear in debug logs.
        """
        self.settings = settings
        self.token_client = token_client or TokenClient(settings.authority)
        self.expiry_margin_minutes = expiry_margin_minutes
        self.clock_skew_minutes = clock_skew_minutes
        self._clock = clock
        self._show_secrets = show_secrets

    def _certificate_trials(self) -> Iterator[tuple[str, str | None]]:
        for path in self.settings.certificate_paths:
            yield path, None
            for password in self.settings.certificate_passwords:
                yield path, password

    def _authenticate(
        self,
        tenant_id: str,
        app_id: str,
        resource_id: str,
        material: CredentialMaterial,
    ) -> Credential:
        return Credential(
            tenant_id=tenant_id,
            app_id=app_id,
            resource_id=resource_id,
            material=material,
            token_client=self.token_client,
            expiry_margin_minutes=self.expiry_margin_minutes,
            clock_skew_minutes=self.clock_skew_minutes,
            clock=self._clock,
            show_secrets=self._show_secrets,
        )

    def _try_certificates(
        self, tenant_id: str, app_id: str, resource_id: str
    ) -> Credential | None:
        for path, password in self._certificate_trials():
            try:
                material = load_certificate(path, password)
                return self._authenticate(tenant_id, app_id, resource_id, material)
            except ClockSkewError:
                raise
            except Exception as e:
                # INTENTIONAL BROAD CATCH: configuration may list garbage
                # material; every trial failure must leave the search running.
                logger.debug(
                    "Certificate %s (%s) failed for tenant %s, app %s: %s",
                    path,
                    "with password" if password is not None else "no password",
                    tenant_id,
                    app_id,
                    e,
                )
        return None

    def _try_secrets(self, tenant_id: str, app_id: str, resource_id: str) -> Credential | None:
        for index, secret in enumerate(self.settings.app_secrets, start=1):
            if not secret:
                continue
            try:
                return self._authenticate(
                    tenant_id, app_id, resource_id, SecretMaterial(secret)
                )
            except ClockSkewError:
                raise
            except Exception as e:
                # INTENTIONAL BROAD CATCH: see _try_certificates.
                logger.debug(
                    "Secret #%d failed for tenant %s, app %s: %s",
                    index,
                    tenant_id,
                    app_id,
                    e,
                )
        return None

    def resolve(self, resource_id: str, required_roles: Sequence[str]) -> dict[str, Credential]:
        """Resolve one working credential per tenant for ``resource_id``.

        Args:
            resource_id: Audience the tokens must be issued for.
            required_roles: Roles every accepted token must carry.

        Returns:
            Mapping of tenant id to credential. Empty when nothing works.

        Raises:
            ClockSkewError: If a token reveals that the local clock is wrong.
        """
        resolved: dict[str, Credential] = {}

        for tenant_id in self.settings.tenant_ids:
            for app_id in self.settings.app_ids:
                if tenant_id in resolved:
                    break

                credential = self._try_certificates(tenant_id, app_id, resource_id)
                if credential is None:
                    credential = self._try_secrets(tenant_id, app_id, resource_id)

                if credential is None:
                    logger.info(
                        "No working credential for tenant %s, app %s on %s",
                        tenant_id,
                        app_id,
                        resource_id,
                    )
                    continue

                if not credential.has_roles(required_roles):
                    missing = sorted(set(required_roles) - set(credential.roles))
                    logger.warning(
                        "Tenant %s, app %s authenticated to %s but lacks roles: %s",
                        tenant_id,
                        app_id,
                        resource_id,
                        ", ".join(missing),
                    )
                    continue

                logger.info(
                    "Using %s credential for tenant %s, app %s on %s",
                    credential.material.kind,
                    tenant_id,
                    app_id,
                    resource_id,
                )
                resolved[tenant_id] = credential

        if not resolved:
            logger.warning("No credentials resolved for %s; nothing will be polled", resource_id)
        else:
            logger.info("Resolved %d tenant(s) for %s", len(resolved), resource_id)

        return resolved


__all__ = ["CredentialResolver"]
