"""Root-level test configuration for hephaestus-credentials.

Registers custom markers and provides fixtures shared by every test module.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from typing import Any
from unittest.mock import MagicMock

import httpx
import pytest
import structlog
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from hephaestus_credentials.context import OperationContext
from hephaestus_credentials.schemas import AuthDirective


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers",
        "requirement(id): Mark test as covering a specific requirement",
    )


@pytest.fixture(autouse=True)
def reset_structlog() -> Iterator[None]:
    """Restore structlog defaults around every test."""
    structlog.reset_defaults()
    yield
    structlog.reset_defaults()


@pytest.fixture
def ctx() -> OperationContext:
    """Operation context without a deadline."""
    return OperationContext.background()


@pytest.fixture
def log() -> Any:
    """structlog logger passed to providers and the composer."""
    return structlog.get_logger("tests")


@pytest.fixture
def tracer_with_exporter() -> tuple[TracerProvider, InMemorySpanExporter]:
    """Create a TracerProvider with an InMemorySpanExporter for testing.

    Returns:
        Tuple of (TracerProvider, InMemorySpanExporter) for span verification.
    """
    exporter = InMemorySpanExporter()
    provider = TracerProvider(resource=Resource.create({}))
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    return provider, exporter


@pytest.fixture
def fake_challenger() -> Callable[..., Any]:
    """Factory for login challengers returning a fixed directive or error.

    Example:
        >>> challenger = fake_challenger("registry.io", "https://registry.io/token")
    """

    def _factory(
        service: str = "fake-service",
        realm: str = "https://fake-realm/token",
        error: Exception | None = None,
    ) -> MagicMock:
        challenger = MagicMock(name="challenger")
        if error is not None:
            challenger.side_effect = error
        else:
            challenger.return_value = AuthDirective(service=service, realm=realm)
        return challenger

    return _factory


@pytest.fixture
def mock_http() -> Callable[[Callable[[httpx.Request], httpx.Response]], httpx.Client]:
    """Factory wrapping a request handler in an httpx.Client with MockTransport."""

    def _factory(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(handler))

    return _factory
