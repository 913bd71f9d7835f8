"""Azure Container Registry authentication.

Exchanges an Azure AD access token for an ACR refresh token following the
ACR AAD-OAuth flow:

1. Validate the server against the ACR hostname pattern
2. Ensure a fresh AAD token for the ARM scope (retried, fixed backoff)
3. Probe the login server for its bearer challenge
4. POST the AAD token to ``/oauth2/exchange`` for a refresh token
5. Return the refresh token under the fixed ACR token username

Identity comes from the standard ``AZURE_*`` environment variables: a client
secret or certificate when present, otherwise the managed identity for
``AZURE_CLIENT_ID``.

Example:
    >>> provider = ACRProvider()
    >>> provider.detect_availability().state
    <AvailabilityState.READY: 'ready'>
    >>> provider.initialize()
    >>> auth = provider.authenticate(ctx, log, "myregistry.azurecr.io")
"""

from __future__ import annotations

import os
import re
import threading
import time
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from hephaestus_credentials.challenge import DEFAULT_TIMEOUT_SECONDS, challenge_login_server
from hephaestus_credentials.config import TOKEN_REFRESH_RETRY
from hephaestus_credentials.errors import (
    CredentialsTimeoutError,
    LoginChallengeError,
    OperationCancelledError,
    ProviderProtocolError,
)
from hephaestus_credentials.providers.base import Availability, CloudAuthProvider
from hephaestus_credentials.resilience import RetryPolicy
from hephaestus_credentials.schemas import AuthConfig, AuthDirective
from hephaestus_credentials.tracing import credentials_span, get_tracer

if TYPE_CHECKING:
    from azure.core.credentials import AccessToken, TokenCredential
    from opentelemetry import trace

    from hephaestus_credentials.challenge import LoginChallenger
    from hephaestus_credentials.config import RetryConfig
    from hephaestus_credentials.context import OperationContext

logger = structlog.get_logger(__name__)

ACR_PATTERN = re.compile(r".*\.azurecr\.io|.*\.azurecr\.cn|.*\.azurecr\.de|.*\.azurecr\.us")

# ACR accepts refresh tokens only under this username
ACR_REFRESH_TOKEN_USERNAME = "00000000-0000-0000-0000-000000000000"

ARM_SCOPE = "https://management.azure.com/.default"

ENV_TENANT_ID = "AZURE_TENANT_ID"
ENV_CLIENT_ID = "AZURE_CLIENT_ID"
ENV_CLIENT_SECRET = "AZURE_CLIENT_SECRET"
ENV_CLIENT_CERTIFICATE_PATH = "AZURE_CLIENT_CERTIFICATE_PATH"


class ACRProvider(CloudAuthProvider):
    """Authentication provider for Azure Container Registry.

    The AAD token is cached and refreshed when it expires within
    ``REFRESH_BUFFER_SECONDS``. Only the token refresh is retried.
    """

    name = "acr"
    pattern = ACR_PATTERN

    REFRESH_BUFFER_SECONDS = 5 * 60

    def __init__(
        self,
        *,
        environ: Mapping[str, str] | None = None,
        credential: TokenCredential | None = None,
        tenant_id: str | None = None,
        http_client: httpx.Client | None = None,
        challenger: LoginChallenger | None = None,
        token_refresh_retry: RetryConfig | None = None,
        challenge_retry: RetryConfig | None = None,
        http_timeout: float = DEFAULT_TIMEOUT_SECONDS,
        tracer: trace.Tracer | None = None,
    ) -> None:
        """Initialize ACRProvider.

        Args:
            environ: Environment to read ``AZURE_*`` settings from. Defaults to os.environ.
            credential: Pre-built Azure credential. Built in initialize() if None.
            tenant_id: Tenant ID for the token exchange. Read from environ if None.
            http_client: Client for the token exchange. Short-lived clients if None.
            challenger: Login server challenge function.
            token_refresh_retry: Retry policy for AAD token refresh.
            challenge_retry: Retry policy for the challenge request.
            http_timeout: Per-request timeout in seconds.
            tracer: OpenTelemetry tracer.
        """
        self._environ = environ if environ is not None else os.environ
        self._credential = credential
        self._tenant_id = tenant_id
        self._http_client = http_client
        self._challenger = challenger
        self._challenge_retry = challenge_retry
        self._http_timeout = http_timeout
        self._tracer = tracer
        self._retry_policy = RetryPolicy(token_refresh_retry or TOKEN_REFRESH_RETRY)
        self._token: AccessToken | None = None
        self._lock = threading.Lock()

    def detect_availability(self) -> Availability:
        """Check the ``AZURE_*`` environment variables.

        Returns:
            UNAVAILABLE when tenant or client ID is absent, MISCONFIGURED when
            either is blank or the certificate path does not exist, else READY.
        """
        tenant_id = self._environ.get(ENV_TENANT_ID)
        client_id = self._environ.get(ENV_CLIENT_ID)
        if tenant_id is None or client_id is None:
            return Availability.unavailable(f"{ENV_TENANT_ID} or {ENV_CLIENT_ID} is absent")

        if not tenant_id.strip() or not client_id.strip():
            return Availability.misconfigured(
                ValueError(f"{ENV_TENANT_ID} and {ENV_CLIENT_ID} must not be blank")
            )

        cert_path = self._environ.get(ENV_CLIENT_CERTIFICATE_PATH)
        if cert_path is not None and not os.path.isfile(cert_path):
            return Availability.misconfigured(
                FileNotFoundError(f"{ENV_CLIENT_CERTIFICATE_PATH} {cert_path!r} does not exist")
            )

        return Availability.ready()

    def initialize(self) -> None:
        """Build the Azure credential from the environment."""
        if self._tenant_id is None:
            self._tenant_id = self._environ.get(ENV_TENANT_ID, "")
        if self._credential is not None:
            return

        from azure.identity import (
            CertificateCredential,
            ClientSecretCredential,
            ManagedIdentityCredential,
        )

        client_id = self._environ[ENV_CLIENT_ID]
        client_secret = self._environ.get(ENV_CLIENT_SECRET)
        cert_path = self._environ.get(ENV_CLIENT_CERTIFICATE_PATH)

        if client_secret:
            self._credential = ClientSecretCredential(self._tenant_id, client_id, client_secret)
            kind = "client_secret"
        elif cert_path:
            self._credential = CertificateCredential(
                self._tenant_id, client_id, certificate_path=cert_path
            )
            kind = "certificate"
        else:
            self._credential = ManagedIdentityCredential(client_id=client_id)
            kind = "managed_identity"

        logger.debug("acr_credential_initialized", credential_type=kind)

    def authenticate(self, ctx: OperationContext, log: Any, server: str) -> AuthConfig:
        """Exchange the AAD identity for ACR credentials.

        Raises:
            InvalidRegistryURLError: Before any network call, if ``server`` is
                not an ACR hostname.
            ProviderProtocolError: If token refresh, challenge or exchange fails.
        """
        log = self._bind(log, server)
        login_server = self._login_server(log, server)

        with credentials_span(
            self._tracer or get_tracer(), "authenticate", provider=self.name, server=server
        ):
            try:
                access_token = self._ensure_fresh_token(ctx)
            except (CredentialsTimeoutError, OperationCancelledError) as e:
                log.error("aad_token_refresh_failed", error=str(e))
                raise
            except Exception as e:
                log.error("aad_token_refresh_failed", error=str(e))
                raise ProviderProtocolError(
                    self.name, server, "AAD token refresh failed", str(e)
                ) from e

            login_server_url = f"https://{login_server}"
            try:
                directive = self._challenge(ctx, login_server_url)
            except (httpx.HTTPError, LoginChallengeError) as e:
                log.error("login_server_challenge_failed", url=login_server_url, error=str(e))
                ctx.check("acr login server challenge")
                raise ProviderProtocolError(
                    self.name, server, "login server challenge failed", str(e)
                ) from e

            try:
                refresh_token = self._exchange(
                    ctx, login_server_url, directive.service, access_token
                )
            except ProviderProtocolError as e:
                log.error("acr_token_exchange_failed", error=e.detail)
                raise ProviderProtocolError(
                    self.name, server, "failed to generate ACR refresh token", e.detail
                ) from e
            except httpx.HTTPError as e:
                log.error("acr_token_exchange_failed", error=str(e))
                ctx.check("acr token exchange")
                raise ProviderProtocolError(
                    self.name, server, "failed to generate ACR refresh token", str(e)
                ) from e

        log.info("acr_authenticated")
        return AuthConfig(username=ACR_REFRESH_TOKEN_USERNAME, password=refresh_token)

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

    def _ensure_fresh_token(self, ctx: OperationContext) -> str:
        """Return a cached AAD token, refreshing it when close to expiry."""
        if self._credential is None:
            raise RuntimeError("ACRProvider.initialize() was not called")
        credential = self._credential

        with ctx.hold(self._lock, "aad_token_refresh"):
            if self._token is not None and not self._should_refresh(self._token):
                return self._token.token

            self._token = self._retry_policy.call(
                ctx, "aad_token_refresh", lambda: credential.get_token(ARM_SCOPE)
            )
            logger.debug("aad_token_refreshed", expires_on=self._token.expires_on)
            return self._token.token

    def _should_refresh(self, token: AccessToken) -> bool:
        return token.expires_on - time.time() < self.REFRESH_BUFFER_SECONDS

    def _exchange(
        self,
        ctx: OperationContext,
        login_server_url: str,
        service: str,
        access_token: str,
    ) -> str:
        """Trade the AAD access token for an ACR refresh token.

        Raises:
            ProviderProtocolError: On a non-200 response or a missing token.
            httpx.HTTPError: If the registry cannot be reached.
        """
        url = f"{login_server_url}/oauth2/exchange"
        data = {
            "grant_type": "access_token",
            "service": service,
            "tenant": self._tenant_id or "",
            "access_token": access_token,
        }
        timeout = ctx.http_timeout(self._http_timeout)

        if self._http_client is not None:
            response = self._http_client.post(url, data=data, timeout=timeout)
        else:
            with httpx.Client() as client:
                response = client.post(url, data=data, timeout=timeout)

        if response.status_code != httpx.codes.OK:
            raise ProviderProtocolError(
                self.name,
                login_server_url,
                "token exchange failed",
                f"status {response.status_code}: {response.text}",
            )

        try:
            refresh_token = response.json().get("refresh_token")
        except ValueError as e:
            raise ProviderProtocolError(
                self.name, login_server_url, "token exchange failed", f"invalid JSON: {e}"
            ) from e
        if not refresh_token:
            raise ProviderProtocolError(
                self.name, login_server_url, "token exchange failed", "no refresh_token in response"
            )
        return str(refresh_token)


__all__ = ["ACR_PATTERN", "ACR_REFRESH_TOKEN_USERNAME", "ARM_SCOPE", "ACRProvider"]
