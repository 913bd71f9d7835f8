"""Compose registry credentials into a Docker ``config.json`` for one build.

Each ``RegistryCredentials`` entry resolves through exactly one branch, in
precedence order Secret, inline basic auth, then cloud identity. The result is
written to a fresh temporary directory that the caller owns and must remove.

Alongside the directory, ``persist_credentials`` returns one provenance
message per entry so a verification failure can point operators at the
credential source that is likely wrong.

Example:
    >>> result = persist_credentials(
    ...     ctx,
    ...     [RegistryCredentials(server="foo.azurecr.io", cloud_provided=True)],
    ...     provider_registry=registry,
    ...     secret_reader=KubernetesSecretReader(),
    ... )
    >>> try:
    ...     verify_credentials(ctx, result.config_dir, [], result.help_messages)
    ... finally:
    ...     result.cleanup()
"""

from __future__ import annotations

import os
import shutil
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from hephaestus_credentials.errors import (
    CredentialConflictError,
    CredentialsPersistError,
    CredentialsTimeoutError,
    NoLoaderFoundError,
    OperationCancelledError,
    ServerNotConfiguredError,
)
from hephaestus_credentials.schemas import (
    AuthConfig,
    DockerConfigJSON,
    RegistryCredentials,
)
from hephaestus_credentials.tracing import ATTR_SERVER_COUNT, credentials_span, get_tracer

if TYPE_CHECKING:
    from opentelemetry import trace

    from hephaestus_credentials.context import OperationContext
    from hephaestus_credentials.registry import ProviderRegistry
    from hephaestus_credentials.secrets import SecretReader

logger = structlog.get_logger(__name__)

CONFIG_FILENAME = "config.json"
TEMP_DIR_PREFIX = "docker-config-"


@dataclass(frozen=True)
class PersistResult:
    """Output of persist_credentials.

    Attributes:
        config_dir: Directory holding ``config.json``. Owned by the caller.
        help_messages: Provenance of each credential entry, in input order.
    """

    config_dir: Path
    help_messages: list[str] = field(default_factory=list)

    @property
    def config_path(self) -> Path:
        """Return the path of the written ``config.json``."""
        return self.config_dir / CONFIG_FILENAME

    def cleanup(self) -> None:
        """Remove the config directory."""
        shutil.rmtree(self.config_dir, ignore_errors=True)


def secret_provenance(name: str, namespace: str, servers: Sequence[str]) -> str:
    """Describe credentials contributed by a Secret."""
    return (
        f'secret "{name}" in namespace "{namespace}" '
        f"(credentials for servers: {', '.join(servers)})"
    )


BASIC_AUTH_PROVENANCE = "basic authentication username and password"


def cloud_provenance(server: str) -> str:
    """Describe credentials obtained through cloud identity."""
    return f"cloud provider access configuration (server: {server})"


def persist_credentials(
    ctx: OperationContext,
    credentials: Sequence[RegistryCredentials],
    *,
    provider_registry: ProviderRegistry,
    secret_reader: SecretReader,
    log: Any | None = None,
    tracer: trace.Tracer | None = None,
) -> PersistResult:
    """Resolve every credential entry and write a Docker ``config.json``.

    Args:
        ctx: Operation context bounding cloud provider calls.
        credentials: Credential entries in request order.
        provider_registry: Registry used for cloud-provided entries.
        secret_reader: Reader used for Secret entries.
        log: structlog logger. Module logger if None.
        tracer: OpenTelemetry tracer.

    Returns:
        PersistResult with the config directory and provenance messages.

    Raises:
        SecretInvalidError: If a referenced Secret cannot be used.
        ServerNotConfiguredError: If no cloud provider handles a server.
        CredentialConflictError: If two entries supply the same server.
        CredentialsPersistError: If a cloud provider fails or the file
            cannot be written.
        CredentialsTimeoutError: If the deadline expires.
        OperationCancelledError: If the operation is cancelled.
    """
    log = log or logger
    config_dir = Path(tempfile.mkdtemp(prefix=TEMP_DIR_PREFIX))

    try:
        with credentials_span(
            tracer or get_tracer(),
            "persist",
            extra_attributes={ATTR_SERVER_COUNT: len(credentials)},
        ):
            auths, help_messages = _compose(
                ctx, credentials, provider_registry, secret_reader, log
            )
            _write_config(config_dir / CONFIG_FILENAME, DockerConfigJSON(auths=auths))
    except BaseException:
        shutil.rmtree(config_dir, ignore_errors=True)
        raise

    log.info("credentials_persisted", servers=sorted(auths), config_dir=str(config_dir))
    return PersistResult(config_dir=config_dir, help_messages=help_messages)


def _compose(
    ctx: OperationContext,
    credentials: Sequence[RegistryCredentials],
    provider_registry: ProviderRegistry,
    secret_reader: SecretReader,
    log: Any,
) -> tuple[dict[str, AuthConfig], list[str]]:
    auths: dict[str, AuthConfig] = {}
    sources: dict[str, str] = {}
    help_messages: list[str] = []

    def add(server: str, auth: AuthConfig, provenance: str) -> None:
        if server in auths:
            log.error("credential_conflict", server=server)
            raise CredentialConflictError(server, [sources[server], provenance])
        auths[server] = auth
        sources[server] = provenance

    for cred in credentials:
        if cred.secret is not None:
            docker_config = secret_reader.read_docker_config(
                ctx, cred.secret.name, cred.secret.namespace
            )
            servers = list(docker_config.auths)
            provenance = secret_provenance(cred.secret.name, cred.secret.namespace, servers)
            for server, auth in docker_config.auths.items():
                add(server, auth, provenance)
            log.debug(
                "secret_credentials_loaded",
                name=cred.secret.name,
                namespace=cred.secret.namespace,
                servers=servers,
            )

        elif cred.basic_auth is not None:
            provenance = BASIC_AUTH_PROVENANCE
            add(
                cred.server,
                AuthConfig(username=cred.basic_auth.username, password=cred.basic_auth.password),
                provenance,
            )

        else:
            provenance = cloud_provenance(cred.server)
            add(cred.server, _authorize(ctx, provider_registry, cred.server, log), provenance)

        help_messages.append(provenance)

    return auths, help_messages


def _authorize(
    ctx: OperationContext,
    provider_registry: ProviderRegistry,
    server: str,
    log: Any,
) -> AuthConfig:
    try:
        return provider_registry.retrieve_authorization(ctx, log, server)
    except NoLoaderFoundError as e:
        log.error("server_not_configured", server=server)
        raise ServerNotConfiguredError(server) from e
    except (CredentialsTimeoutError, OperationCancelledError):
        raise
    except Exception as e:
        raise CredentialsPersistError(f"registry authorization failed: {e}") from e


def _write_config(path: Path, docker_config: DockerConfigJSON) -> None:
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(docker_config.to_json())
    except OSError as e:
        raise CredentialsPersistError(f"cannot write {path}: {e}") from e


__all__ = [
    "BASIC_AUTH_PROVENANCE",
    "CONFIG_FILENAME",
    "PersistResult",
    "cloud_provenance",
    "persist_credentials",
    "secret_provenance",
]
