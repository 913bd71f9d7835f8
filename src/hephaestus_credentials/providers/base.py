"""Cloud auth provider interface and startup registration.

Each cloud provider exchanges an ambient cloud identity for short-lived
registry credentials. Providers are registered at controller startup; a
provider whose identity is absent is skipped, while one whose identity is
present but malformed fails startup.

Example:
    >>> from hephaestus_credentials.providers import default_providers, load_cloud_providers
    >>> from hephaestus_credentials.registry import ProviderRegistry
    >>>
    >>> registry = ProviderRegistry()
    >>> load_cloud_providers(registry, default_providers(config))
    >>> registry.frozen
    True
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog

from hephaestus_credentials.errors import InvalidRegistryURLError, ProviderConfigurationError

if TYPE_CHECKING:
    from hephaestus_credentials.context import OperationContext
    from hephaestus_credentials.registry import ProviderRegistry
    from hephaestus_credentials.schemas import AuthConfig

logger = structlog.get_logger(__name__)


class AvailabilityState(str, Enum):
    """Outcome of a provider's environment inspection."""

    UNAVAILABLE = "unavailable"
    READY = "ready"
    MISCONFIGURED = "misconfigured"


@dataclass(frozen=True)
class Availability:
    """Tagged availability result.

    Attributes:
        state: Availability state.
        reason: Why the provider is unavailable (UNAVAILABLE only).
        error: The configuration problem (MISCONFIGURED only).
    """

    state: AvailabilityState
    reason: str = ""
    error: Exception | None = None

    @classmethod
    def unavailable(cls, reason: str) -> Availability:
        """No cloud identity for this provider in the environment."""
        return cls(AvailabilityState.UNAVAILABLE, reason=reason)

    @classmethod
    def ready(cls) -> Availability:
        """Cloud identity present and well-formed."""
        return cls(AvailabilityState.READY)

    @classmethod
    def misconfigured(cls, error: Exception) -> Availability:
        """Cloud identity present but unusable."""
        return cls(AvailabilityState.MISCONFIGURED, error=error)


class CloudAuthProvider(ABC):
    """Abstract base class for cloud registry authenticators.

    Subclasses must define ``name`` and ``pattern`` and implement:
        - detect_availability(): inspect the environment, no network calls
        - authenticate(): exchange cloud identity for registry credentials

    ``initialize()`` runs once for READY providers before registration.
    """

    name: str
    pattern: re.Pattern[str]

    @abstractmethod
    def detect_availability(self) -> Availability:
        """Inspect the environment for this provider's cloud identity."""
        ...

    def initialize(self) -> None:  # noqa: B027
        """Prepare SDK clients. Called once before registration."""

    @abstractmethod
    def authenticate(self, ctx: OperationContext, log: Any, server: str) -> AuthConfig:
        """Return registry credentials for ``server``.

        Args:
            ctx: Operation context bounding every network call.
            log: structlog logger for this reconciliation.
            server: Registry hostname.

        Raises:
            InvalidRegistryURLError: If ``server`` does not match ``pattern``.
            ProviderProtocolError: If a protocol step fails.
        """
        ...

    def _bind(self, log: Any | None, server: str) -> Any:
        return (log or logger).bind(provider=self.name, server=server)

    def _login_server(self, log: Any, server: str) -> str:
        """Return the single pattern match in ``server``.

        Raises:
            InvalidRegistryURLError: Unless exactly one match is found.
        """
        matches = [m.group(0) for m in self.pattern.finditer(server)]
        if len(matches) != 1:
            error = InvalidRegistryURLError(self.name, server, self.pattern.pattern)
            log.info("invalid_registry_url", pattern=self.pattern.pattern, matches=len(matches))
            raise error
        return matches[0]


def load_cloud_providers(
    registry: ProviderRegistry,
    providers: Iterable[CloudAuthProvider],
    log: Any | None = None,
) -> list[str]:
    """Register every available provider, then freeze the registry.

    Args:
        registry: Registry to populate.
        providers: Providers in registration order.
        log: structlog logger. Module logger if None.

    Returns:
        Names of the providers that were registered.

    Raises:
        ProviderConfigurationError: If a provider is misconfigured or a READY
            provider fails to initialize.
    """
    log = log or logger
    registered: list[str] = []

    for provider in providers:
        availability = provider.detect_availability()

        if availability.state is AvailabilityState.UNAVAILABLE:
            log.info(
                "cloud_provider_not_registered",
                provider=provider.name,
                reason=availability.reason,
            )
            continue

        if availability.state is AvailabilityState.MISCONFIGURED:
            log.error(
                "cloud_provider_misconfigured",
                provider=provider.name,
                error=str(availability.error),
            )
            raise ProviderConfigurationError(provider.name, str(availability.error)) from (
                availability.error
            )

        try:
            provider.initialize()
        except ProviderConfigurationError:
            log.error("cloud_provider_init_failed", provider=provider.name)
            raise
        except Exception as e:
            log.error("cloud_provider_init_failed", provider=provider.name, error=str(e))
            raise ProviderConfigurationError(provider.name, str(e)) from e

        registry.register(provider.pattern, provider.authenticate)
        registered.append(provider.name)
        log.info("cloud_provider_registered", provider=provider.name)

    registry.freeze()
    return registered


__all__ = [
    "Availability",
    "AvailabilityState",
    "CloudAuthProvider",
    "load_cloud_providers",
]
