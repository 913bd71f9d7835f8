"""Exception hierarchy for registry credential resolution and verification.

All exceptions inherit from CredentialsError, so callers can catch every
failure of this package with a single except clause while still being able to
special-case the ones that drive different operator behaviour.

Exception Hierarchy:
    CredentialsError (base)
    ├── NoLoaderFoundError             # No cloud provider matches the server
    ├── ProviderConfigurationError     # Cloud identity configured but malformed
    ├── ProviderProtocolError          # A provider network step failed
    │   └── InvalidRegistryURLError    # Server does not match provider pattern
    ├── LoginChallengeError            # Registry gave no bearer challenge
    ├── SecretInvalidError             # Secret missing, wrong type or malformed
    ├── SecretBackendUnavailableError  # Kubernetes API not reachable
    ├── CredentialsPersistError        # Composition of config.json failed
    │   ├── ServerNotConfiguredError   # Cloud auth requested, no provider
    │   └── CredentialConflictError    # Same server supplied twice
    ├── AuthorizationRejectedError     # Registry rejected the credentials
    ├── TransientVerificationError     # Network failure during verification
    ├── InvalidRegistryAddressError    # Config key is not a usable registry address
    ├── CredentialsTimeoutError        # Operation deadline expired
    ├── OperationCancelledError        # Caller cancelled the operation
    └── VerificationError              # Aggregate of per-server failures

Example:
    >>> from hephaestus_credentials.errors import NoLoaderFoundError
    >>> try:
    ...     registry.retrieve_authorization(ctx, log, "quay.io")
    ... except NoLoaderFoundError:
    ...     print("cloud auth not available for quay.io")
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass


class CredentialsError(Exception):
    """Base exception for all credential errors."""


class NoLoaderFoundError(CredentialsError):
    """Raised when no registered cloud provider pattern matches a server.

    Always propagated verbatim by the provider registry so callers can tell
    "cloud auth is not supported here" apart from "cloud auth failed".

    Attributes:
        server: The registry hostname that had no matching provider.
    """

    def __init__(self, server: str) -> None:
        self.server = server
        super().__init__(f"no loader found for server {server!r}")


class ProviderConfigurationError(CredentialsError):
    """Raised at startup when a cloud provider's identity is malformed.

    Absent cloud identity is not an error (the provider simply does not
    register); this exception is reserved for environment configuration the
    provider was told to use but cannot.

    Attributes:
        provider: Provider name (acr, ecr, gcr).
        reason: Description of the configuration problem.
    """

    def __init__(self, provider: str, reason: str) -> None:
        self.provider = provider
        self.reason = reason
        super().__init__(f"{provider.upper()} registration failed: {reason}")


class ProviderProtocolError(CredentialsError):
    """Raised when a step of a provider's authentication protocol fails.

    Attributes:
        provider: Provider name (acr, ecr, gcr).
        server: The registry hostname being authenticated.
        step: Human-readable name of the failing step.
        detail: Optional underlying error text.

    Example:
        >>> raise ProviderProtocolError("acr", "foo.azurecr.io", "AAD token refresh failed")
        Traceback (most recent call last):
            ...
        ProviderProtocolError: acr authentication for foo.azurecr.io: AAD token refresh failed
    """

    def __init__(
        self,
        provider: str,
        server: str,
        step: str,
        detail: str | None = None,
    ) -> None:
        self.provider = provider
        self.server = server
        self.step = step
        self.detail = detail
        msg = f"{provider} authentication for {server}: {step}"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class InvalidRegistryURLError(ProviderProtocolError):
    """Raised when a server does not match the provider's hostname pattern.

    Raised before any network call is made.

    Attributes:
        pattern: The regular expression the server was checked against.
    """

    def __init__(self, provider: str, server: str, pattern: str) -> None:
        self.pattern = pattern
        super().__init__(
            provider,
            server,
            f"invalid {provider.upper()} URL",
            f"{server!r} should match pattern {pattern}",
        )


class LoginChallengeError(CredentialsError):
    """Raised when a registry's unauthenticated request yields no usable challenge.

    Attributes:
        url: The login server URL that was challenged.
        reason: Why the challenge failed.
    """

    def __init__(self, url: str, reason: str) -> None:
        self.url = url
        self.reason = reason
        super().__init__(f"login server challenge for {url} failed: {reason}")


class SecretInvalidError(CredentialsError):
    """Raised when a referenced registry Secret cannot be used.

    Covers a missing Secret, a Secret of the wrong type, and a malformed
    payload. Fatal for the build; never retried.

    Attributes:
        name: Secret name.
        namespace: Secret namespace.
        reason: Why the Secret is unusable.
    """

    def __init__(self, name: str, namespace: str, reason: str) -> None:
        self.name = name
        self.namespace = namespace
        self.reason = reason
        super().__init__(f"invalid secret {name!r} in namespace {namespace!r}: {reason}")


class SecretBackendUnavailableError(CredentialsError, ConnectionError):
    """Raised when the Kubernetes API server cannot be reached.

    Inherits from ConnectionError so generic network handlers also catch it.

    Attributes:
        reason: Additional context about the connection failure.
    """

    def __init__(self, reason: str = "") -> None:
        self.reason = reason
        message = "Kubernetes API server unavailable"
        if reason:
            message = f"{message}: {reason}"
        CredentialsError.__init__(self, message)


class CredentialsPersistError(CredentialsError):
    """Raised when the credential file for a build cannot be composed."""


class ServerNotConfiguredError(CredentialsPersistError):
    """Raised when cloud auth is requested for a server no provider handles.

    Attributes:
        server: The registry hostname.
    """

    def __init__(self, server: str) -> None:
        self.server = server
        super().__init__(
            f"failed to authorize server {server}: server not configured for auth, "
            "credentials may be misconfigured"
        )


class CredentialConflictError(CredentialsPersistError):
    """Raised when two credential entries supply the same server.

    Attributes:
        server: The duplicated registry hostname.
        sources: Provenance of the conflicting entries.
    """

    def __init__(self, server: str, sources: Sequence[str]) -> None:
        self.server = server
        self.sources = list(sources)
        super().__init__(
            f"credentials for server {server!r} supplied more than once: "
            + "; ".join(self.sources)
        )


class AuthorizationRejectedError(CredentialsError):
    """Raised when a registry definitively rejects the supplied credentials.

    Terminal: verification does not retry after this error.

    Attributes:
        server: The registry hostname.
        status_code: HTTP status returned by the registry, if any.
    """

    def __init__(self, server: str, status_code: int | None = None, detail: str = "") -> None:
        self.server = server
        self.status_code = status_code
        msg = f"unauthorized: registry {server} rejected the credentials"
        if status_code is not None:
            msg += f" (status {status_code})"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class TransientVerificationError(CredentialsError):
    """Raised when verification fails for a reason that may be temporary.

    Attributes:
        server: The registry hostname.
        reason: Description of the failure.
    """

    def __init__(self, server: str, reason: str) -> None:
        self.server = server
        self.reason = reason
        super().__init__(f"registry {server} unavailable: {reason}")


class InvalidRegistryAddressError(CredentialsError):
    """Raised when a config.json key cannot be turned into a registry URL.

    Terminal: the key is wrong, not the registry.

    Attributes:
        server: The config.json key as written.
        reason: Why no URL could be built from it.
    """

    def __init__(self, server: str, reason: str) -> None:
        self.server = server
        self.reason = reason
        super().__init__(f"invalid registry address {server!r}: {reason}")


class CredentialsTimeoutError(CredentialsError, TimeoutError):
    """Raised when an operation's deadline expires.

    Kept distinct from AuthorizationRejectedError so a slow network is never
    reported as bad credentials.

    Attributes:
        operation: The operation that ran out of time.
    """

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"deadline exceeded during {operation}")


class OperationCancelledError(CredentialsError):
    """Raised when the caller cancels an in-flight operation."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"operation cancelled during {operation}")


@dataclass(frozen=True)
class ServerVerificationFailure:
    """One server's verification failure inside a VerificationError."""

    server: str
    error: Exception
    help_messages: tuple[str, ...]

    def describe(self) -> str:
        """Render the operator-facing message for this failure."""
        return (
            f"client credentials are invalid for registry {self.server!r}.\n"
            "Make sure the following sources of credentials are correct: "
            f"{', '.join(self.help_messages)}.\n"
            f"Underlying error: {self.error}"
        )


class VerificationError(CredentialsError):
    """Aggregate error for every server whose credentials failed verification.

    Attributes:
        failures: One entry per failing server, in verification order.
    """

    def __init__(self, failures: Sequence[ServerVerificationFailure]) -> None:
        self.failures = list(failures)
        super().__init__("; ".join(f.describe() for f in self.failures))

    @property
    def servers(self) -> list[str]:
        """Return the servers that failed verification."""
        return [f.server for f in self.failures]


__all__ = [
    "AuthorizationRejectedError",
    "CredentialConflictError",
    "CredentialsError",
    "CredentialsPersistError",
    "CredentialsTimeoutError",
    "InvalidRegistryAddressError",
    "InvalidRegistryURLError",
    "LoginChallengeError",
    "NoLoaderFoundError",
    "OperationCancelledError",
    "ProviderConfigurationError",
    "ProviderProtocolError",
    "SecretBackendUnavailableError",
    "SecretInvalidError",
    "ServerNotConfiguredError",
    "ServerVerificationFailure",
    "TransientVerificationError",
    "VerificationError",
]
