"""Shared fixtures for unit tests.

Provides Kubernetes Secret mocks, an in-memory Secret reader and a stub
cloud provider.
"""

from __future__ import annotations

import base64
import json
import re
from collections.abc import Callable
from typing import Any
from unittest.mock import MagicMock

import pytest

from hephaestus_credentials.context import OperationContext
from hephaestus_credentials.errors import SecretInvalidError
from hephaestus_credentials.providers.base import Availability, CloudAuthProvider
from hephaestus_credentials.schemas import (
    DOCKER_CONFIG_JSON_KEY,
    DOCKER_CONFIG_JSON_SECRET_TYPE,
    AuthConfig,
    DockerConfigJSON,
)


def encode_docker_config(auths: dict[str, dict[str, str]]) -> str:
    """Base64-encode a Docker config document the way the API returns it."""
    return base64.b64encode(json.dumps({"auths": auths}).encode()).decode()


@pytest.fixture
def make_secret() -> Callable[..., MagicMock]:
    """Factory for V1Secret-like mocks."""

    def _factory(
        auths: dict[str, dict[str, str]] | None = None,
        secret_type: str = DOCKER_CONFIG_JSON_SECRET_TYPE,
        data: dict[str, str] | None = None,
    ) -> MagicMock:
        secret = MagicMock(name="V1Secret")
        secret.type = secret_type
        if data is None:
            data = {DOCKER_CONFIG_JSON_KEY: encode_docker_config(auths or {})}
        secret.data = data
        return secret

    return _factory


@pytest.fixture
def mock_core_api() -> MagicMock:
    """CoreV1Api mock."""
    return MagicMock(name="CoreV1Api")


class InMemorySecretReader:
    """Secret reader backed by a dict of ``(namespace, name)`` to auths."""

    def __init__(self, secrets: dict[tuple[str, str], dict[str, dict[str, str]]]) -> None:
        self.secrets = secrets
        self.reads: list[tuple[str, str]] = []

    def read_docker_config(
        self, ctx: OperationContext, name: str, namespace: str
    ) -> DockerConfigJSON:
        ctx.check(f"read secret {namespace}/{name}")
        self.reads.append((namespace, name))
        auths = self.secrets.get((namespace, name))
        if auths is None:
            raise SecretInvalidError(name, namespace, "secret not found")
        return DockerConfigJSON.model_validate({"auths": auths})


@pytest.fixture
def secret_reader() -> Callable[..., Any]:
    """Factory for InMemorySecretReader."""

    def _factory(
        secrets: dict[tuple[str, str], dict[str, dict[str, str]]] | None = None,
    ) -> InMemorySecretReader:
        return InMemorySecretReader(secrets or {})

    return _factory


class StubProvider(CloudAuthProvider):
    """Cloud provider with a fixed availability result."""

    def __init__(
        self,
        name: str,
        pattern: str,
        availability: Availability,
        init_error: Exception | None = None,
    ) -> None:
        self.name = name
        self.pattern = re.compile(pattern)
        self._availability = availability
        self._init_error = init_error
        self.initialized = False

    def detect_availability(self) -> Availability:
        return self._availability

    def initialize(self) -> None:
        if self._init_error is not None:
            raise self._init_error
        self.initialized = True

    def authenticate(self, ctx: OperationContext, log: Any, server: str) -> AuthConfig:
        self._login_server(self._bind(log, server), server)
        return AuthConfig(username=self.name, password="token")


@pytest.fixture
def stub_provider() -> type[StubProvider]:
    """StubProvider class for registration tests."""
    return StubProvider
