"""Amazon Elastic Container Registry authentication.

Calls ``ecr:GetAuthorizationToken`` with the ambient AWS identity (IRSA,
instance profile or configured credentials) in the region named by the
registry hostname, and decodes the returned ``user:password`` token.

botocore owns retries for the SDK call; this provider does not retry.

Example:
    >>> provider = ECRProvider()
    >>> auth = provider.authenticate(ctx, log, "123456789012.dkr.ecr.us-east-1.amazonaws.com")
    >>> auth.username
    'AWS'
"""

from __future__ import annotations

import base64
import binascii
import re
import threading
from typing import TYPE_CHECKING, Any

import structlog
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from hephaestus_credentials.errors import InvalidRegistryURLError, ProviderProtocolError
from hephaestus_credentials.providers.base import Availability, CloudAuthProvider
from hephaestus_credentials.schemas import AuthConfig
from hephaestus_credentials.tracing import credentials_span, get_tracer

if TYPE_CHECKING:
    import boto3
    from opentelemetry import trace

    from hephaestus_credentials.context import OperationContext

logger = structlog.get_logger(__name__)

ECR_PATTERN = re.compile(
    r"^(?P<aws_account_id>[a-zA-Z\d][a-zA-Z\d_-]*)\.dkr\.ecr(?P<fips>-fips)?"
    r"\.(?P<region>[a-zA-Z\d][a-zA-Z\d_-]*)\.amazonaws\.com(\.cn)?"
)


class ECRTokenError(ValueError):
    """Raised when an ECR authorization token cannot be decoded."""


def decode_authorization_token(token: str) -> tuple[str, str]:
    """Decode a base64 ``user:password`` ECR authorization token.

    Args:
        token: Base64-encoded token from GetAuthorizationToken.

    Returns:
        Tuple of username and password, split on the first ``:``.

    Raises:
        ECRTokenError: If the token is blank, not base64, or has no ``:``.

    Example:
        >>> decode_authorization_token("YWJjOmhp")
        ('abc', 'hi')
    """
    if not token:
        raise ECRTokenError("docker auth token cannot be blank")

    try:
        decoded = base64.b64decode(token, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise ECRTokenError(f"failed to decode docker auth token: {e}") from e

    username, sep, password = decoded.partition(":")
    if not sep:
        raise ECRTokenError("invalid docker auth token format: expected user:password")
    return username, password


class ECRProvider(CloudAuthProvider):
    """Authentication provider for Amazon ECR.

    ECR clients are created lazily and cached per ``(region, fips)``.
    """

    name = "ecr"
    pattern = ECR_PATTERN

    def __init__(
        self,
        *,
        session: boto3.Session | None = None,
        http_timeout: float = 30.0,
        tracer: trace.Tracer | None = None,
    ) -> None:
        """Initialize ECRProvider.

        Args:
            session: boto3 session to create clients from. Default session if None.
            http_timeout: Connect and read timeout for ECR calls in seconds.
            tracer: OpenTelemetry tracer.
        """
        self._session = session
        self._http_timeout = http_timeout
        self._tracer = tracer
        self._clients: dict[tuple[str, bool], Any] = {}
        self._lock = threading.Lock()

    def _get_session(self) -> boto3.Session:
        if self._session is None:
            import boto3

            self._session = boto3.Session()
        return self._session

    def detect_availability(self) -> Availability:
        """Look for AWS credentials through the default provider chain.

        Returns:
            UNAVAILABLE when the chain finds nothing, MISCONFIGURED for partial
            static credentials or a broken profile, else READY.
        """
        try:
            credentials = self._get_session().get_credentials()
        except BotoCoreError as e:
            # includes PartialCredentialsError and ProfileNotFound
            return Availability.misconfigured(e)

        if credentials is None:
            return Availability.unavailable("no AWS credentials found")
        return Availability.ready()

    def authenticate(self, ctx: OperationContext, log: Any, server: str) -> AuthConfig:
        """Fetch and decode an ECR authorization token for ``server``.

        Raises:
            InvalidRegistryURLError: If ``server`` is not an ECR hostname.
            ProviderProtocolError: If the SDK call fails or returns a bad token.
        """
        log = self._bind(log, server)

        match = self.pattern.search(server)
        if match is None:
            log.info("invalid_registry_url", pattern=self.pattern.pattern)
            raise InvalidRegistryURLError(self.name, server, self.pattern.pattern)
        region = match.group("region")
        fips = match.group("fips") is not None

        with credentials_span(
            self._tracer or get_tracer(),
            "authenticate",
            provider=self.name,
            server=server,
            extra_attributes={"aws.region": region, "aws.fips": fips},
        ):
            ctx.check("ecr get authorization token")
            try:
                response = self._client(region, fips).get_authorization_token()
            except (BotoCoreError, ClientError) as e:
                log.error("ecr_auth_token_request_failed", region=region, error=str(e))
                raise ProviderProtocolError(
                    self.name, server, "failed to access ECR auth token", str(e)
                ) from e

            auth_data = response.get("authorizationData") or []
            if len(auth_data) != 1:
                log.error("ecr_unexpected_auth_data", entries=len(auth_data))
                raise ProviderProtocolError(
                    self.name,
                    server,
                    "expected a single ECR authorization token",
                    f"got {len(auth_data)}",
                )

            try:
                username, password = decode_authorization_token(
                    auth_data[0].get("authorizationToken", "")
                )
            except ECRTokenError as e:
                log.error("ecr_auth_token_invalid", error=str(e))
                raise ProviderProtocolError(
                    self.name, server, "invalid ECR authorization token", str(e)
                ) from e

        log.info("ecr_authenticated", region=region)
        return AuthConfig(username=username, password=password)

    def _client(self, region: str, fips: bool) -> Any:
        key = (region, fips)
        with self._lock:
            client = self._clients.get(key)
            if client is None:
                config = Config(
                    connect_timeout=self._http_timeout,
                    read_timeout=self._http_timeout,
                    use_fips_endpoint=fips,
                )
                client = self._get_session().client("ecr", region_name=region, config=config)
                self._clients[key] = client
            return client


__all__ = ["ECR_PATTERN", "ECRProvider", "ECRTokenError", "decode_authorization_token"]
