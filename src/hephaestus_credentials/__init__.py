"""Registry credential federation and verification for Kubernetes image builds.

Resolves push/pull credentials for container registries from inline basic
auth, Docker config Secrets, or cloud identity (Azure AD, AWS IAM, GCP ADC),
composes them into a Docker ``config.json`` per build, and verifies every
entry against its registry before the build runs.

Example:
    >>> from hephaestus_credentials import CredentialFederation, CredentialsConfig
    >>> federation = CredentialFederation.from_config(CredentialsConfig())
"""

from __future__ import annotations

from hephaestus_credentials.composer import PersistResult, persist_credentials
from hephaestus_credentials.config import CredentialsConfig, RegistryOptions, RetryConfig
from hephaestus_credentials.context import OperationContext
from hephaestus_credentials.federation import CredentialFederation
from hephaestus_credentials.registry import ProviderRegistry
from hephaestus_credentials.schemas import (
    AuthConfig,
    AuthDirective,
    BasicAuthCredentials,
    DockerConfigJSON,
    RegistryCredentials,
    SecretCredentials,
)
from hephaestus_credentials.verifier import RegistryAuthClient, verify_credentials

__version__ = "0.1.0"

__all__ = [
    "AuthConfig",
    "AuthDirective",
    "BasicAuthCredentials",
    "CredentialFederation",
    "CredentialsConfig",
    "DockerConfigJSON",
    "OperationContext",
    "PersistResult",
    "ProviderRegistry",
    "RegistryAuthClient",
    "RegistryCredentials",
    "RegistryOptions",
    "RetryConfig",
    "SecretCredentials",
    "__version__",
    "persist_credentials",
    "verify_credentials",
]
