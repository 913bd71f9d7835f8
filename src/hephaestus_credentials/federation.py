"""Process-wide entry point wiring configuration to persist and verify.

``CredentialFederation`` is built once at controller startup, after which it
is shared by every reconciling worker. The only state it carries between
builds is the frozen provider registry.

Example:
    >>> federation = CredentialFederation.from_config(CredentialsConfig())
    >>> ctx = federation.new_context()
    >>> result = federation.persist(ctx, build.registry_credentials)
    >>> try:
    ...     federation.verify(ctx, result)
    ... finally:
    ...     result.cleanup()
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING, Any

import structlog

from hephaestus_credentials.composer import PersistResult, persist_credentials
from hephaestus_credentials.config import CredentialsConfig
from hephaestus_credentials.context import OperationContext
from hephaestus_credentials.providers import default_providers, load_cloud_providers
from hephaestus_credentials.refreshing import RefreshingCredentialSource
from hephaestus_credentials.registry import ProviderRegistry
from hephaestus_credentials.secrets import KubernetesSecretReader
from hephaestus_credentials.verifier import RegistryAuthClient, verify_credentials

if TYPE_CHECKING:
    from hephaestus_credentials.providers.base import CloudAuthProvider
    from hephaestus_credentials.schemas import RegistryCredentials
    from hephaestus_credentials.secrets import SecretReader

logger = structlog.get_logger(__name__)


class CredentialFederation:
    """Persist and verify registry credentials under one configuration.

    Attributes:
        config: The credentials configuration.
        provider_registry: Frozen cloud provider registry.
    """

    def __init__(
        self,
        config: CredentialsConfig,
        provider_registry: ProviderRegistry,
        secret_reader: SecretReader,
        auth_client: RegistryAuthClient | None = None,
    ) -> None:
        self.config = config
        self.provider_registry = provider_registry
        self._secret_reader = secret_reader
        self._auth_client = auth_client or RegistryAuthClient(
            config.insecure_registries(),
            timeout=config.http_timeout_seconds,
            user_agent=config.user_agent,
        )

    @classmethod
    def from_config(
        cls,
        config: CredentialsConfig,
        *,
        providers: Iterable[CloudAuthProvider] | None = None,
        secret_reader: SecretReader | None = None,
        log: Any | None = None,
    ) -> CredentialFederation:
        """Register cloud providers and build the federation.

        Raises:
            ProviderConfigurationError: If a cloud provider is misconfigured.
        """
        registry = ProviderRegistry()
        registered = load_cloud_providers(
            registry,
            default_providers(config) if providers is None else providers,
            log,
        )
        (log or logger).info("credential_federation_ready", providers=registered)
        return cls(
            config,
            registry,
            secret_reader or KubernetesSecretReader(config.kubernetes),
        )

    def new_context(self, timeout: float | None = None) -> OperationContext:
        """Create a context expiring after ``timeout`` or the configured default."""
        return OperationContext.with_timeout(timeout or self.config.operation_timeout_seconds)

    def persist(
        self,
        ctx: OperationContext,
        credentials: Sequence[RegistryCredentials],
        log: Any | None = None,
    ) -> PersistResult:
        """Compose ``credentials`` into a fresh config directory."""
        return persist_credentials(
            ctx,
            credentials,
            provider_registry=self.provider_registry,
            secret_reader=self._secret_reader,
            log=log,
        )

    def verify(self, ctx: OperationContext, result: PersistResult, log: Any | None = None) -> None:
        """Verify every server in a persisted config."""
        verify_credentials(
            ctx,
            result.config_dir,
            self.config.insecure_registries(),
            result.help_messages,
            auth_client=self._auth_client,
            retry_config=self.config.verification_retry,
            log=log,
        )

    def session_source(
        self, result: PersistResult, log: Any | None = None
    ) -> RefreshingCredentialSource:
        """Create a refreshing credential source for a build session."""
        return RefreshingCredentialSource(
            self.provider_registry,
            result.config_dir,
            log=log,
            retry_config=self.config.cloud_refresh_retry,
        )


__all__ = ["CredentialFederation"]
