"""Google Container Registry and Artifact Registry authentication.

Uses Application Default Credentials to obtain an OAuth2 access token, then
trades it at the registry's token realm for a registry bearer token.

Example:
    >>> provider = GCRProvider()
    >>> provider.initialize()
    >>> auth = provider.authenticate(ctx, log, "us-docker.pkg.dev")
    >>> auth.username
    'oauth2accesstoken'
"""

from __future__ import annotations

import os
import re
import threading
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from hephaestus_credentials.challenge import DEFAULT_TIMEOUT_SECONDS, challenge_login_server
from hephaestus_credentials.errors import LoginChallengeError, ProviderProtocolError
from hephaestus_credentials.providers.base import Availability, CloudAuthProvider
from hephaestus_credentials.schemas import AuthConfig, AuthDirective
from hephaestus_credentials.tracing import credentials_span, get_tracer

if TYPE_CHECKING:
    import google.auth.credentials
    from opentelemetry import trace

    from hephaestus_credentials.challenge import LoginChallenger
    from hephaestus_credentials.config import RetryConfig
    from hephaestus_credentials.context import OperationContext

logger = structlog.get_logger(__name__)

GCR_PATTERN = re.compile(r".*-docker\.pkg\.dev|(?:.*\.)?gcr\.io")

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"
GCR_USERNAME = "oauth2accesstoken"
DEFAULT_CLIENT_ID = "hephaestus"

ENV_APPLICATION_CREDENTIALS = "GOOGLE_APPLICATION_CREDENTIALS"


def select_registry_token(body: Mapping[str, Any]) -> str | None:
    """Pick the bearer token out of a token endpoint response.

    ``token`` wins over ``access_token``; ``refresh_token`` is never used.

    Example:
        >>> select_registry_token({"token": "a", "access_token": "b"})
        'a'
    """
    for field in ("token", "access_token"):
        value = body.get(field)
        if value:
            return str(value)
    return None


class _DeadlineRequest:
    """google-auth transport whose timeout is bounded by the operation deadline."""

    def __init__(self, ctx: OperationContext, timeout: float) -> None:
        from google.auth.transport.requests import Request

        self._ctx = ctx
        self._timeout = timeout
        self._request = Request()

    def __call__(
        self,
        url: str,
        method: str = "GET",
        body: Any = None,
        headers: Mapping[str, str] | None = None,
        timeout: float | None = None,  # noqa: ARG002
        **kwargs: Any,
    ) -> Any:
        self._ctx.check("gcr access token refresh")
        return self._request(
            url,
            method=method,
            body=body,
            headers=headers,
            timeout=self._ctx.http_timeout(self._timeout),
            **kwargs,
        )


class GCRProvider(CloudAuthProvider):
    """Authentication provider for GCR and Artifact Registry."""

    name = "gcr"
    pattern = GCR_PATTERN

    def __init__(
        self,
        *,
        environ: Mapping[str, str] | None = None,
        credentials: google.auth.credentials.Credentials | None = None,
        http_client: httpx.Client | None = None,
        challenger: LoginChallenger | None = None,
        challenge_retry: RetryConfig | None = None,
        client_id: str = DEFAULT_CLIENT_ID,
        http_timeout: float = DEFAULT_TIMEOUT_SECONDS,
        tracer: trace.Tracer | None = None,
    ) -> None:
        """Initialize GCRProvider.

        Args:
            environ: Environment used to classify ADC failures. Defaults to os.environ.
            credentials: Pre-built Google credentials. Found via ADC if None.
            http_client: Client for realm requests. Short-lived clients if None.
            challenger: Login server challenge function.
            challenge_retry: Retry policy for the challenge request.
            client_id: ``client_id`` query parameter sent to the realm.
            http_timeout: Per-request timeout in seconds.
            tracer: OpenTelemetry tracer.
        """
        self._environ = environ if environ is not None else os.environ
        self._credentials = credentials
        self._http_client = http_client
        self._challenger = challenger
        self._challenge_retry = challenge_retry
        self._client_id = client_id
        self._http_timeout = http_timeout
        self._tracer = tracer
        self._lock = threading.Lock()

    def detect_availability(self) -> Availability:
        """Look for Application Default Credentials.

        Returns:
            UNAVAILABLE when ADC finds nothing and
            ``GOOGLE_APPLICATION_CREDENTIALS`` is unset, MISCONFIGURED when it
            is set but unusable, else READY.
        """
        if self._credentials is not None:
            return Availability.ready()

        import google.auth
        from google.auth.exceptions import DefaultCredentialsError

        try:
            self._credentials, _ = google.auth.default(scopes=[CLOUD_PLATFORM_SCOPE])
        except DefaultCredentialsError as e:
            if self._environ.get(ENV_APPLICATION_CREDENTIALS):
                return Availability.misconfigured(e)
            return Availability.unavailable(f"could not find default credentials: {e}")
        return Availability.ready()

    def authenticate(self, ctx: OperationContext, log: Any, server: str) -> AuthConfig:
        """Obtain a registry bearer token for ``server``.

        Raises:
            InvalidRegistryURLError: If ``server`` is not a GCR/GAR hostname.
            ProviderProtocolError: If any protocol step fails.
        """
        log = self._bind(log, server)
        login_server = self._login_server(log, server)

        with credentials_span(
            self._tracer or get_tracer(), "authenticate", provider=self.name, server=server
        ):
            try:
                access_token = self._access_token(ctx)
            except Exception as e:
                log.error("gcr_access_token_failed", error=str(e))
                ctx.check("gcr access token refresh")
                raise ProviderProtocolError(
                    self.name, server, "unable to access gcr token", str(e)
                ) from e

            login_server_url = f"https://{login_server}"
            try:
                directive = self._challenge(ctx, login_server_url)
            except (httpx.HTTPError, LoginChallengeError) as e:
                log.error("login_server_challenge_failed", url=login_server_url, error=str(e))
                ctx.check("gcr login server challenge")
                raise ProviderProtocolError(
                    self.name, server, "login server challenge failed", str(e)
                ) from e

            try:
                response = self._request_token(ctx, directive, access_token)
            except httpx.HTTPError as e:
                log.error("gcr_token_request_failed", realm=directive.realm, error=str(e))
                ctx.check("gcr token request")
                raise ProviderProtocolError(
                    self.name, server, f"unable to make a request to {directive.realm}", str(e)
                ) from e

            if response.status_code != httpx.codes.OK:
                log.error("gcr_token_request_rejected", status_code=response.status_code)
                raise ProviderProtocolError(
                    self.name,
                    server,
                    "failed to obtain token",
                    f"status {response.status_code}:\n{response.text}",
                )

            try:
                body = response.json()
            except ValueError as e:
                log.error("gcr_token_response_invalid", error=str(e))
                raise ProviderProtocolError(
                    self.name, server, "failed to unmarshal token response", str(e)
                ) from e

            token = select_registry_token(body) if isinstance(body, dict) else None
            if not token:
                log.error("gcr_token_missing")
                raise ProviderProtocolError(
                    self.name, server, "no token in response", response.text
                )

        log.info("gcr_authenticated")
        return AuthConfig(username=GCR_USERNAME, password=token, registrytoken=token)

    def _access_token(self, ctx: OperationContext) -> str:
        """Return a valid ADC access token, refreshing it when needed."""
        if self._credentials is None:
            raise RuntimeError("GCRProvider.detect_availability() found no credentials")
        ctx.check("gcr access token refresh")

        with ctx.hold(self._lock, "gcr access token refresh"):
            if not self._credentials.valid:
                self._credentials.refresh(_DeadlineRequest(ctx, self._http_timeout))
                logger.debug("gcr_access_token_refreshed")
            return str(self._credentials.token)

    def _challenge(self, ctx: OperationContext, login_server_url: str) -> AuthDirective:
        if self._challenger is not None:
            return self._challenger(ctx, login_server_url)
        return challenge_login_server(
            ctx,
            login_server_url,
            http_client=self._http_client,
            timeout=self._http_timeout,
            retry_config=self._challenge_retry,
        )

    def _request_token(
        self,
        ctx: OperationContext,
        directive: AuthDirective,
        access_token: str,
    ) -> httpx.Response:
        params = {"service": directive.service, "client_id": self._client_id}
        auth = (GCR_USERNAME, access_token)
        timeout = ctx.http_timeout(self._http_timeout)

        if self._http_client is not None:
            return self._http_client.get(
                directive.realm, params=params, auth=auth, timeout=timeout
            )
        with httpx.Client() as client:
            return client.get(directive.realm, params=params, auth=auth, timeout=timeout)


__all__ = [
    "CLOUD_PLATFORM_SCOPE",
    "GCR_PATTERN",
    "GCR_USERNAME",
    "GCRProvider",
    "select_registry_token",
]
