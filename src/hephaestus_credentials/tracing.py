"""OpenTelemetry tracing helpers for credential operations.

Provider authentication, credential composition and verification each run
inside a ``credentials.<operation>`` span.

Security:
    - Spans never include usernames, passwords or tokens
    - Only registry hostnames, provider names and Secret names are recorded
    - Error messages are sanitized before recording

Example:
    >>> from hephaestus_credentials.tracing import credentials_span, get_tracer
    >>> with credentials_span(get_tracer(), "authenticate", provider="acr",
    ...                       server="foo.azurecr.io"):
    ...     pass
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from hephaestus_credentials.sanitization import sanitize_error_message

if TYPE_CHECKING:
    from collections.abc import Iterator

TRACER_NAME = "hephaestus.credentials"

ATTR_OPERATION = "credentials.operation"
ATTR_PROVIDER = "credentials.provider"
ATTR_SERVER = "credentials.server"
ATTR_SERVER_COUNT = "credentials.server_count"


def get_tracer() -> trace.Tracer:
    """Return the tracer for credential operations.

    Uses the globally configured tracer provider; a no-op tracer when none
    is configured.
    """
    return trace.get_tracer(TRACER_NAME)


@contextmanager
def credentials_span(
    tracer: trace.Tracer,
    operation: str,
    *,
    provider: str | None = None,
    server: str | None = None,
    extra_attributes: dict[str, Any] | None = None,
) -> Iterator[trace.Span]:
    """Context manager for creating credential operation spans.

    Args:
        tracer: OpenTelemetry tracer instance.
        operation: Operation name (e.g., "authenticate", "persist", "verify").
        provider: Cloud provider name (acr, ecr, gcr).
        server: Registry hostname.
        extra_attributes: Additional span attributes.

    Yields:
        The active span for adding custom attributes.
    """
    attributes: dict[str, Any] = {ATTR_OPERATION: operation}

    if provider is not None:
        attributes[ATTR_PROVIDER] = provider
    if server is not None:
        attributes[ATTR_SERVER] = server
    if extra_attributes:
        attributes.update(extra_attributes)

    with tracer.start_as_current_span(
        f"credentials.{operation}",
        attributes=attributes,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        try:
            yield span
            span.set_status(Status(StatusCode.OK))
        except Exception as e:
            sanitized = sanitize_error_message(str(e))
            span.set_status(Status(StatusCode.ERROR, type(e).__name__))
            span.set_attribute("exception.type", type(e).__name__)
            span.set_attribute("exception.message", sanitized)
            raise


__all__ = [
    "ATTR_OPERATION",
    "ATTR_PROVIDER",
    "ATTR_SERVER",
    "ATTR_SERVER_COUNT",
    "TRACER_NAME",
    "credentials_span",
    "get_tracer",
]
