"""On-demand credentials for a running build session.

Cloud registry tokens can expire during long builds. The build session asks
``RefreshingCredentialSource.credentials`` each time it needs to talk to a
registry; cloud registries get a freshly minted token, while every other
registry is answered from the static ``config.json`` written for the build.

Example:
    >>> source = RefreshingCredentialSource(registry, result.config_dir)
    >>> creds = source.credentials(ctx, "foo.azurecr.io")
    >>> creds.username
    '00000000-0000-0000-0000-000000000000'
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from hephaestus_credentials.config import CLOUD_REFRESH_RETRY
from hephaestus_credentials.errors import (
    CredentialsError,
    CredentialsTimeoutError,
    NoLoaderFoundError,
    OperationCancelledError,
)
from hephaestus_credentials.resilience import RetryPolicy
from hephaestus_credentials.verifier import load_docker_config

if TYPE_CHECKING:
    from hephaestus_credentials.config import RetryConfig
    from hephaestus_credentials.context import OperationContext
    from hephaestus_credentials.registry import ProviderRegistry
    from hephaestus_credentials.schemas import AuthConfig, DockerConfigJSON

logger = structlog.get_logger(__name__)

DOCKER_HUB_ALIASES = ("docker.io", "index.docker.io", "registry-1.docker.io")
DOCKER_HUB_CONFIG_KEY = "https://index.docker.io/v1/"


@dataclass(frozen=True)
class SessionCredentials:
    """Username and secret handed to the build session. Empty when unknown."""

    username: str = ""
    secret: str = ""

    def __repr__(self) -> str:
        return f"SessionCredentials(username={self.username!r}, secret=***)"


class RefreshingCredentialSource:
    """Fresh cloud credentials per request with a static config fallback.

    Requests are serialized; the provider registry is consulted under a
    three-attempt backoff (1s then 2s) that stops immediately for hosts no
    cloud provider handles.
    """

    def __init__(
        self,
        provider_registry: ProviderRegistry,
        config_dir: str | Path | None,
        log: Any | None = None,
        retry_config: RetryConfig | None = None,
    ) -> None:
        """Initialize the source.

        Args:
            provider_registry: Frozen provider registry.
            config_dir: Directory holding the static ``config.json``. May be None.
            log: structlog logger. Module logger if None.
            retry_config: Backoff for cloud refreshes.
        """
        self._registry = provider_registry
        self._log = (log or logger).bind(component="refreshing_credential_source")
        self._policy = RetryPolicy(
            retry_config or CLOUD_REFRESH_RETRY,
            stop_on=lambda e: isinstance(e, NoLoaderFoundError),
        )
        self._static_config = self._load_static(config_dir)
        self._lock = threading.Lock()

    def _load_static(self, config_dir: str | Path | None) -> DockerConfigJSON | None:
        if config_dir is None:
            return None
        try:
            return load_docker_config(config_dir)
        except CredentialsError as e:
            self._log.debug("static_config_unavailable", error=str(e))
            return None

    def credentials(self, ctx: OperationContext, host: str) -> SessionCredentials:
        """Return credentials for ``host``.

        Raises:
            CredentialsTimeoutError: If the deadline expires during backoff.
            OperationCancelledError: If the context is cancelled.
        """
        with ctx.hold(self._lock, f"refresh {host}"):
            self._log.debug("credentials_requested", host=host)
            try:
                auth = self._policy.call(
                    ctx,
                    f"refresh {host}",
                    lambda: self._registry.retrieve_authorization(ctx, self._log, host),
                )
            except NoLoaderFoundError:
                return self._from_static(host)
            except (CredentialsTimeoutError, OperationCancelledError):
                raise
            except Exception as e:
                self._log.error(
                    "cloud_auth_failed_using_static_config", host=host, error=str(e)
                )
                return self._from_static(host)

            self._log.info("cloud_credentials_refreshed", host=host, username=auth.username)
            return SessionCredentials(auth.username or "", auth.password or "")

    def _from_static(self, host: str) -> SessionCredentials:
        if self._static_config is None:
            self._log.debug("no_static_config", host=host)
            return SessionCredentials()

        auth = self._lookup(self._static_config, host)
        if auth is None:
            self._log.debug("no_static_credentials", host=host)
            return SessionCredentials()

        try:
            username, password = auth.basic_credentials()
        except ValueError as e:
            self._log.error("static_credentials_invalid", host=host, error=str(e))
            return SessionCredentials()

        if not (username or password):
            self._log.debug("no_static_credentials", host=host)
            return SessionCredentials()

        self._log.debug("static_credentials_returned", host=host)
        return SessionCredentials(username, password)

    @staticmethod
    def _lookup(docker_config: DockerConfigJSON, host: str) -> AuthConfig | None:
        auths = docker_config.auths
        if host in auths:
            return auths[host]
        if host in DOCKER_HUB_ALIASES:
            for key in (DOCKER_HUB_CONFIG_KEY, *DOCKER_HUB_ALIASES):
                if key in auths:
                    return auths[key]
        for key in (f"https://{host}", f"http://{host}"):
            if key in auths:
                return auths[key]
        return None


__all__ = ["RefreshingCredentialSource", "SessionCredentials"]
