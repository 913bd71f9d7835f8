"""Registry login challenge request.

Sends an unauthenticated ``GET /v2/`` to a login server and reads the
``WWW-Authenticate: Bearer realm="...",service="..."`` challenge the registry
answers with. ACR and GCR use the discovered service and realm for their token
exchanges.

A ``LoginChallenger`` is any callable with the signature of
``challenge_login_server``; providers accept one so tests can substitute a
fake that returns a fixed ``AuthDirective``.

Example:
    >>> from hephaestus_credentials.challenge import challenge_login_server
    >>> directive = challenge_login_server(ctx, "https://foo.azurecr.io")
    >>> directive.service
    'foo.azurecr.io'
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

import httpx
import structlog

from hephaestus_credentials.config import CHALLENGE_RETRY
from hephaestus_credentials.errors import LoginChallengeError
from hephaestus_credentials.resilience import RetryPolicy
from hephaestus_credentials.schemas import AuthDirective

if TYPE_CHECKING:
    from hephaestus_credentials.config import RetryConfig
    from hephaestus_credentials.context import OperationContext

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


class LoginChallenger(Protocol):
    """Callable that asks a login server for its bearer challenge."""

    def __call__(self, ctx: OperationContext, login_server_url: str) -> AuthDirective: ...


def parse_www_authenticate(header: str) -> tuple[str, dict[str, str]]:
    """Parse a ``WWW-Authenticate`` header into its scheme and parameters.

    Args:
        header: Raw header value, e.g. ``Bearer realm="https://x/token",service="x"``.

    Returns:
        Tuple of lower-cased scheme and a dict of unquoted parameters.

    Example:
        >>> parse_www_authenticate('Bearer realm="https://r/token",service="r"')
        ('bearer', {'realm': 'https://r/token', 'service': 'r'})
    """
    scheme, _, rest = header.strip().partition(" ")
    params: dict[str, str] = {}
    for part in rest.split(","):
        part = part.strip()
        if "=" not in part:
            continue
        key, value = part.split("=", 1)
        params[key.strip().lower()] = value.strip().strip('"')
    return scheme.lower(), params


def challenge_login_server(
    ctx: OperationContext,
    login_server_url: str,
    *,
    http_client: httpx.Client | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    retry_config: RetryConfig | None = None,
) -> AuthDirective:
    """Probe ``<login_server_url>/v2/`` and return its bearer challenge.

    Network failures are retried only when ``retry_config`` allows more than
    one attempt; a response without a usable bearer challenge is never
    retried.

    Args:
        ctx: Operation context bounding the request and any backoff.
        login_server_url: Scheme and host of the registry, e.g. ``https://foo.azurecr.io``.
        http_client: Client to use. A short-lived client is created if None.
        timeout: Per-request timeout in seconds, bounded by the context deadline.
        retry_config: Retry policy for network failures. Single attempt if None.

    Returns:
        AuthDirective with the challenge service and realm.

    Raises:
        LoginChallengeError: If the registry answers without a bearer challenge.
        httpx.HTTPError: If the request cannot reach the registry.
    """
    url = login_server_url.rstrip("/") + "/v2/"
    policy = RetryPolicy(
        retry_config or CHALLENGE_RETRY,
        retryable_exceptions=(httpx.TransportError,),
    )

    def request() -> httpx.Response:
        if http_client is not None:
            return http_client.get(url, timeout=ctx.http_timeout(timeout))
        with httpx.Client() as client:
            return client.get(url, timeout=ctx.http_timeout(timeout))

    response = policy.call(ctx, "login_server_challenge", request)

    header = response.headers.get("WWW-Authenticate", "")
    if response.status_code != httpx.codes.UNAUTHORIZED or not header:
        raise LoginChallengeError(
            login_server_url,
            f"expected 401 with WWW-Authenticate header, got status {response.status_code}",
        )

    scheme, params = parse_www_authenticate(header)
    if scheme != "bearer":
        raise LoginChallengeError(login_server_url, f"unsupported auth scheme {scheme!r}")

    realm = params.get("realm", "")
    service = params.get("service", "")
    if not realm or not service:
        raise LoginChallengeError(login_server_url, "challenge is missing realm or service")

    logger.debug("login_server_challenged", url=login_server_url, service=service, realm=realm)
    return AuthDirective(service=service, realm=realm)


__all__ = [
    "DEFAULT_TIMEOUT_SECONDS",
    "LoginChallenger",
    "challenge_login_server",
    "parse_www_authenticate",
]
