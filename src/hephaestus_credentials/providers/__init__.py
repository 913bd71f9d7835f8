"""Cloud registry authentication providers.

Providers are registered in a fixed order: ACR, then ECR, then GCR.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from hephaestus_credentials.providers.acr import ACRProvider
from hephaestus_credentials.providers.base import (
    Availability,
    AvailabilityState,
    CloudAuthProvider,
    load_cloud_providers,
)
from hephaestus_credentials.providers.ecr import ECRProvider
from hephaestus_credentials.providers.gcr import GCRProvider

if TYPE_CHECKING:
    from hephaestus_credentials.config import CredentialsConfig


def default_providers(config: CredentialsConfig) -> list[CloudAuthProvider]:
    """Build the ACR, ECR and GCR providers from configuration."""
    return [
        ACRProvider(
            token_refresh_retry=config.token_refresh_retry,
            challenge_retry=config.challenge_retry,
            http_timeout=config.http_timeout_seconds,
        ),
        ECRProvider(http_timeout=config.http_timeout_seconds),
        GCRProvider(
            challenge_retry=config.challenge_retry,
            http_timeout=config.http_timeout_seconds,
        ),
    ]


__all__ = [
    "ACRProvider",
    "Availability",
    "AvailabilityState",
    "CloudAuthProvider",
    "ECRProvider",
    "GCRProvider",
    "default_providers",
    "load_cloud_providers",
]
