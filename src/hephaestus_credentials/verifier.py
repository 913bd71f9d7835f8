"""Verify composed registry credentials before a build is dispatched.

For every server in a composed ``config.json`` the verifier performs the
registry login handshake:

1. ``GET /v2/`` without credentials
2. On a ``Bearer`` challenge, fetch a token from the realm with the stored
   credentials (or present the stored registry token directly) and retry
   ``/v2/`` with it
3. On a ``Basic`` challenge, retry ``/v2/`` with basic auth

Config keys may be bare hosts or URLs such as
``https://index.docker.io/v1/``; they are reduced to the host to contact
before the handshake.

A rejection (401/403 from the auth step) and a key that is not a usable
address are terminal. Network failures, timeouts and any other status are
retried with exponential backoff. All per-server failures are collected into
one ``VerificationError`` that lists the provenance of every credential
source.

Example:
    >>> verify_credentials(ctx, result.config_dir, ["registry.local:5000"],
    ...                    result.help_messages)
"""

from __future__ import annotations

from collections.abc import Collection, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx
import structlog
from pydantic import ValidationError

from hephaestus_credentials.challenge import parse_www_authenticate
from hephaestus_credentials.composer import CONFIG_FILENAME
from hephaestus_credentials.config import VERIFICATION_RETRY
from hephaestus_credentials.errors import (
    AuthorizationRejectedError,
    CredentialsError,
    CredentialsTimeoutError,
    InvalidRegistryAddressError,
    OperationCancelledError,
    ServerVerificationFailure,
    TransientVerificationError,
    VerificationError,
)
from hephaestus_credentials.resilience import RetryPolicy
from hephaestus_credentials.schemas import AuthConfig, DockerConfigJSON
from hephaestus_credentials.tracing import ATTR_SERVER_COUNT, credentials_span, get_tracer

if TYPE_CHECKING:
    from opentelemetry import trace

    from hephaestus_credentials.config import RetryConfig
    from hephaestus_credentials.context import OperationContext

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_USER_AGENT = "hephaestus/1.0"
DEFAULT_CLIENT_ID = "hephaestus"

_REJECTED_STATUSES = (httpx.codes.UNAUTHORIZED, httpx.codes.FORBIDDEN)

DOCKER_HUB_HOSTS = ("docker.io", "index.docker.io")
DOCKER_HUB_REGISTRY = "registry-1.docker.io"


def registry_host(server: str) -> str:
    """Return the host[:port] to contact for a config.json key.

    Strips an ``http(s)://`` prefix and any path, and maps the Docker Hub
    index names to the Hub registry endpoint.

    Example:
        >>> registry_host("https://index.docker.io/v1/")
        'registry-1.docker.io'
    """
    host = server.strip()
    for prefix in ("https://", "http://"):
        if host.lower().startswith(prefix):
            host = host[len(prefix) :]
            break
    host = host.split("/", 1)[0]
    if host.lower() in DOCKER_HUB_HOSTS:
        return DOCKER_HUB_REGISTRY
    return host


class RegistryAuthClient:
    """Performs the Docker registry v2 login handshake.

    Registries listed in ``insecure_registries`` are contacted without TLS
    verification and fall back to plain HTTP when the HTTPS connection fails.

    Attributes:
        insecure_registries: Hostnames allowed self-signed certificates or HTTP.
    """

    def __init__(
        self,
        insecure_registries: Collection[str] = (),
        *,
        transport: httpx.BaseTransport | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        user_agent: str = DEFAULT_USER_AGENT,
        client_id: str = DEFAULT_CLIENT_ID,
    ) -> None:
        """Initialize RegistryAuthClient.

        Args:
            insecure_registries: Hostnames to treat as insecure.
            transport: httpx transport override, mainly for tests.
            timeout: Per-request timeout in seconds.
            user_agent: User-Agent header value.
            client_id: ``client_id`` sent with token requests.
        """
        self.insecure_registries = frozenset(insecure_registries)
        self._transport = transport
        self._timeout = timeout
        self._user_agent = user_agent
        self._client_id = client_id

    def login(self, ctx: OperationContext, server: str, auth: AuthConfig) -> None:
        """Authenticate against ``server`` with ``auth``.

        Raises:
            AuthorizationRejectedError: If the registry rejects the credentials.
            InvalidRegistryAddressError: If ``server`` is not a usable address.
            TransientVerificationError: On network failures or any status
                other than 401/403.
            CredentialsTimeoutError: If the context deadline expires.
            OperationCancelledError: If the context is cancelled.
        """
        host = registry_host(server)
        if not host:
            raise InvalidRegistryAddressError(server, "no host")
        insecure = host in self.insecure_registries or server in self.insecure_registries
        schemes = ("https", "http") if insecure else ("https",)

        with httpx.Client(
            verify=not insecure,
            transport=self._transport,
            headers={"User-Agent": self._user_agent},
        ) as client:
            for scheme in schemes:
                base_url = f"{scheme}://{host}"
                try:
                    ping = self._get(ctx, client, server, f"{base_url}/v2/")
                except TransientVerificationError:
                    if scheme == "https" and insecure:
                        logger.debug("registry_https_failed_trying_http", server=server)
                        continue
                    raise
                self._authenticate(ctx, client, server, base_url, ping, auth)
                return

    def _authenticate(
        self,
        ctx: OperationContext,
        client: httpx.Client,
        server: str,
        base_url: str,
        ping: httpx.Response,
        auth: AuthConfig,
    ) -> None:
        if ping.status_code == httpx.codes.OK:
            return
        if ping.status_code != httpx.codes.UNAUTHORIZED:
            self._raise_for_status(server, ping)

        scheme, params = parse_www_authenticate(ping.headers.get("WWW-Authenticate", ""))
        if scheme == "bearer":
            token = auth.registrytoken or self._fetch_token(ctx, client, server, params, auth)
            response = self._get(
                ctx, client, server, f"{base_url}/v2/", headers={"Authorization": f"Bearer {token}"}
            )
        elif scheme == "basic":
            username, password = self._basic(server, auth)
            response = self._get(ctx, client, server, f"{base_url}/v2/", auth=(username, password))
        else:
            raise AuthorizationRejectedError(
                server, ping.status_code, f"unsupported auth scheme {scheme!r}"
            )

        if response.status_code != httpx.codes.OK:
            self._raise_for_status(server, response)

    def _fetch_token(
        self,
        ctx: OperationContext,
        client: httpx.Client,
        server: str,
        params: dict[str, str],
        auth: AuthConfig,
    ) -> str:
        realm = params.get("realm")
        if not realm:
            raise AuthorizationRejectedError(server, detail="bearer challenge has no realm")
        service = params.get("service", "")

        if auth.identitytoken:
            form = {
                "grant_type": "refresh_token",
                "refresh_token": auth.identitytoken,
                "service": service,
                "client_id": self._client_id,
            }
            if params.get("scope"):
                form["scope"] = params["scope"]
            response = self._request(ctx, client, server, "POST", realm, data=form)
        else:
            username, password = self._basic(server, auth)
            query = {"service": service, "client_id": self._client_id}
            if username:
                query["account"] = username
            if params.get("scope"):
                query["scope"] = params["scope"]
            response = self._request(
                ctx,
                client,
                server,
                "GET",
                realm,
                params=query,
                auth=(username, password) if username or password else None,
            )

        if response.status_code != httpx.codes.OK:
            self._raise_for_status(server, response)

        try:
            body = response.json()
        except ValueError as e:
            raise TransientVerificationError(server, f"invalid token response: {e}") from e
        token = (body.get("token") or body.get("access_token")) if isinstance(body, dict) else None
        if not token:
            raise AuthorizationRejectedError(server, response.status_code, "no token in response")
        return str(token)

    def _basic(self, server: str, auth: AuthConfig) -> tuple[str, str]:
        try:
            return auth.basic_credentials()
        except ValueError as e:
            raise AuthorizationRejectedError(server, detail=f"malformed credentials: {e}") from e

    def _get(
        self,
        ctx: OperationContext,
        client: httpx.Client,
        server: str,
        url: str,
        **kwargs: Any,
    ) -> httpx.Response:
        return self._request(ctx, client, server, "GET", url, **kwargs)

    def _request(
        self,
        ctx: OperationContext,
        client: httpx.Client,
        server: str,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> httpx.Response:
        ctx.check(f"verify {server}")
        try:
            return client.request(method, url, timeout=ctx.http_timeout(self._timeout), **kwargs)
        except httpx.HTTPError as e:
            ctx.check(f"verify {server}")
            raise TransientVerificationError(server, f"{type(e).__name__}: {e}") from e
        except (httpx.InvalidURL, ValueError) as e:
            raise InvalidRegistryAddressError(server, str(e)) from e

    @staticmethod
    def _raise_for_status(server: str, response: httpx.Response) -> None:
        status = response.status_code
        if status in _REJECTED_STATUSES:
            raise AuthorizationRejectedError(server, status)
        if status >= 500 or status == httpx.codes.TOO_MANY_REQUESTS:
            raise TransientVerificationError(server, f"status {status}")
        raise TransientVerificationError(
            server, f"unexpected status {status} from {response.request.url}"
        )


def load_docker_config(config_dir: str | Path) -> DockerConfigJSON:
    """Load ``config.json`` from a directory produced by persist_credentials.

    Raises:
        CredentialsError: If the file is missing or malformed.
    """
    path = Path(config_dir) / CONFIG_FILENAME
    try:
        return DockerConfigJSON.from_bytes(path.read_bytes())
    except (OSError, ValidationError) as e:
        raise CredentialsError(f"cannot load docker config {path}: {e}") from e


def verify_credentials(
    ctx: OperationContext,
    config_dir: str | Path,
    insecure_registries: Collection[str],
    help_messages: Sequence[str],
    *,
    auth_client: RegistryAuthClient | None = None,
    retry_config: RetryConfig | None = None,
    log: Any | None = None,
    tracer: trace.Tracer | None = None,
) -> None:
    """Verify every server in a composed Docker config.

    Args:
        ctx: Operation context bounding requests and backoff sleeps.
        config_dir: Directory holding ``config.json``.
        insecure_registries: Hostnames allowed self-signed certificates or HTTP.
        help_messages: Provenance messages from persist_credentials.
        auth_client: Handshake client. Built from ``insecure_registries`` if None.
        retry_config: Backoff policy. Six attempts from 1s, doubling, if None.
        log: structlog logger. Module logger if None.
        tracer: OpenTelemetry tracer.

    Raises:
        VerificationError: If any server fails verification.
        CredentialsTimeoutError: If the deadline expires.
        OperationCancelledError: If the operation is cancelled.
        CredentialsError: If the config file cannot be loaded.
    """
    log = log or logger
    docker_config = load_docker_config(config_dir)
    client = auth_client or RegistryAuthClient(insecure_registries)
    policy = RetryPolicy(
        retry_config or VERIFICATION_RETRY,
        retryable_exceptions=(TransientVerificationError,),
        stop_on=lambda e: isinstance(e, AuthorizationRejectedError),
    )

    failures: list[ServerVerificationFailure] = []
    with credentials_span(
        tracer or get_tracer(),
        "verify",
        extra_attributes={ATTR_SERVER_COUNT: len(docker_config.auths)},
    ):
        for server, auth in docker_config.auths.items():
            try:
                policy.call(
                    ctx,
                    f"verify {server}",
                    lambda server=server, auth=auth: client.login(ctx, server, auth),
                )
            except (CredentialsTimeoutError, OperationCancelledError):
                log.error("credential_verification_interrupted", server=server)
                raise
            except CredentialsError as e:
                log.warning("credential_verification_failed", server=server, error=str(e))
                failures.append(ServerVerificationFailure(server, e, tuple(help_messages)))
            else:
                log.debug("credential_verified", server=server)

        if failures:
            raise VerificationError(failures)

    log.info("credentials_verified", servers=sorted(docker_config.auths))


__all__ = [
    "RegistryAuthClient",
    "load_docker_config",
    "verify_credentials",
]
