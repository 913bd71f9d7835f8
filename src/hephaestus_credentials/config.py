"""Configuration models for credential federation.

These models are supplied by the controller that embeds this package; loading
them from files or the environment is the controller's concern.

Example:
    >>> from hephaestus_credentials.config import CredentialsConfig, RegistryOptions
    >>> config = CredentialsConfig(
    ...     registries={"registry.local:5000": RegistryOptions(http=True)},
    ... )
    >>> config.insecure_registries()
    ['registry.local:5000']
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RetryConfig(BaseModel):
    """Retry policy configuration for transient failures.

    Delay before retry ``n`` (0-indexed) is
    ``initial_delay_ms * backoff_multiplier ** n``, capped at ``max_delay_ms``.

    Examples:
        >>> config = RetryConfig(max_attempts=6, jitter=False)
        >>> config.initial_delay_ms
        1000
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum number of attempts, including the first",
    )
    initial_delay_ms: int = Field(
        default=1000,
        ge=0,
        description="Initial delay between attempts in milliseconds",
    )
    backoff_multiplier: float = Field(
        default=2.0,
        ge=1.0,
        le=5.0,
        description="Multiplier for exponential backoff (1.0 gives a fixed delay)",
    )
    max_delay_ms: int = Field(
        default=30000,
        ge=0,
        description="Maximum delay cap in milliseconds",
    )
    jitter: bool = Field(
        default=False,
        description="Add random jitter to delays to prevent thundering herd",
    )


# retries after 1s 2s 4s 8s 16s
VERIFICATION_RETRY = RetryConfig(max_attempts=6, initial_delay_ms=1000, backoff_multiplier=2.0)
TOKEN_REFRESH_RETRY = RetryConfig(max_attempts=3, initial_delay_ms=1000, backoff_multiplier=1.0)
# retries after 1s 2s
CLOUD_REFRESH_RETRY = RetryConfig(max_attempts=3, initial_delay_ms=1000, backoff_multiplier=2.0)
CHALLENGE_RETRY = RetryConfig(max_attempts=1)


class RegistryOptions(BaseModel):
    """Options used to relax push/pull restrictions for one registry."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    insecure: bool = Field(default=False, description="Allow self-signed certificates")
    http: bool = Field(default=False, description="Allow plain HTTP")


class KubernetesConfig(BaseModel):
    """How to reach the Kubernetes API for Secret lookups.

    Attributes:
        kubeconfig_path: Path to kubeconfig file. None uses in-cluster config.
        context: Kubeconfig context to use. None uses current context.
        request_timeout_seconds: Per-request timeout for Secret reads.

    Example:
        >>> KubernetesConfig().kubeconfig_path is None
        True
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    kubeconfig_path: str | None = Field(
        default=None,
        description="Path to kubeconfig file. None uses in-cluster config.",
        examples=["~/.kube/config"],
    )
    context: str | None = Field(
        default=None,
        description="Kubeconfig context to use. None uses current context.",
        examples=["minikube", "prod-cluster"],
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Per-request timeout for Secret reads in seconds",
    )

    @field_validator("kubeconfig_path")
    @classmethod
    def expand_kubeconfig_path(cls, v: str | None) -> str | None:
        """Expand ~ in kubeconfig path."""
        if v is None:
            return None
        return str(Path(v).expanduser())


class CredentialsConfig(BaseModel):
    """Top-level configuration for credential federation.

    Attributes:
        registries: Per-registry transport options keyed by hostname.
        kubernetes: Kubernetes API access for Secret lookups.
        verification_retry: Backoff for verifying each composed server.
        token_refresh_retry: Backoff for refreshing cloud identity tokens.
        challenge_retry: Backoff for the registry login challenge request.
        cloud_refresh_retry: Backoff for on-demand refreshing credentials.
        http_timeout_seconds: Upper bound for a single HTTP request.
        operation_timeout_seconds: Default deadline for one persist/verify run.
        user_agent: User-Agent header sent to registries.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    registries: dict[str, RegistryOptions] = Field(default_factory=dict)
    kubernetes: KubernetesConfig = Field(default_factory=KubernetesConfig)
    verification_retry: RetryConfig = Field(default=VERIFICATION_RETRY)
    token_refresh_retry: RetryConfig = Field(default=TOKEN_REFRESH_RETRY)
    challenge_retry: RetryConfig = Field(default=CHALLENGE_RETRY)
    cloud_refresh_retry: RetryConfig = Field(default=CLOUD_REFRESH_RETRY)
    http_timeout_seconds: float = Field(default=30.0, gt=0)
    operation_timeout_seconds: float = Field(default=300.0, gt=0)
    user_agent: str = Field(default="hephaestus/1.0", min_length=1)

    def insecure_registries(self) -> list[str]:
        """Return registries that allow self-signed certificates or plain HTTP."""
        return [name for name, opts in self.registries.items() if opts.insecure or opts.http]


__all__ = [
    "CHALLENGE_RETRY",
    "CLOUD_REFRESH_RETRY",
    "TOKEN_REFRESH_RETRY",
    "VERIFICATION_RETRY",
    "CredentialsConfig",
    "KubernetesConfig",
    "RegistryOptions",
    "RetryConfig",
]
