"""Retry policy for credential operations.

Implements exponential backoff for transient failures in token refresh and
registry verification. Delays are slept through ``OperationContext.sleep`` so
cancellation and deadlines interrupt pending backoff.

Retry Timeline (verification defaults):
    - Attempt 1: Immediate
    - Attempts 2-6: after 1s, 2s, 4s, 8s, 16s
    - Final attempt is not followed by a delay

Example:
    >>> from hephaestus_credentials.config import RetryConfig
    >>> from hephaestus_credentials.resilience import RetryPolicy
    >>>
    >>> policy = RetryPolicy(
    ...     RetryConfig(max_attempts=6),
    ...     stop_on=lambda e: isinstance(e, AuthorizationRejectedError),
    ... )
    >>> policy.call(ctx, "verify", lambda: client.login(ctx, server, auth))
"""

from __future__ import annotations

import random
from collections.abc import Callable
from typing import TYPE_CHECKING, TypeVar

import structlog

from hephaestus_credentials.config import RetryConfig
from hephaestus_credentials.errors import CredentialsTimeoutError, OperationCancelledError

if TYPE_CHECKING:
    from hephaestus_credentials.context import OperationContext

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def _never(_: BaseException) -> bool:
    return False


class RetryPolicy:
    """Retry policy with exponential backoff and an early-stop predicate.

    An exception is retried when it is an instance of ``retryable_exceptions``
    and ``stop_on`` returns False for it. Timeouts and cancellation always stop.

    Attributes:
        config: RetryConfig with max_attempts, delays, and jitter settings.
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        retryable_exceptions: tuple[type[Exception], ...] = (Exception,),
        stop_on: Callable[[BaseException], bool] | None = None,
    ) -> None:
        """Initialize RetryPolicy.

        Args:
            config: Retry configuration. Uses defaults if None.
            retryable_exceptions: Exception types to retry on.
            stop_on: Predicate that ends retries for an exception immediately.
        """
        self._config = config or RetryConfig()
        self._retryable_exceptions = retryable_exceptions
        self._stop_on = stop_on or _never

    @property
    def config(self) -> RetryConfig:
        """Return the retry configuration."""
        return self._config

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay before next retry attempt.

        Uses exponential backoff: delay = initial * (multiplier ^ attempt)
        Optionally adds jitter (±25%) to prevent thundering herd.

        Args:
            attempt: Current attempt number (0-indexed).

        Returns:
            Delay in seconds.
        """
        base_delay_ms = min(
            self._config.initial_delay_ms * (self._config.backoff_multiplier**attempt),
            self._config.max_delay_ms,
        )

        if self._config.jitter:
            jitter_range = base_delay_ms * 0.25
            base_delay_ms += random.uniform(-jitter_range, jitter_range)

        return base_delay_ms / 1000.0

    def should_retry(self, exception: Exception) -> bool:
        """Check if exception is retryable.

        Args:
            exception: The exception that was raised.

        Returns:
            True if the exception is retryable and not a stop condition.
        """
        if isinstance(exception, (CredentialsTimeoutError, OperationCancelledError)):
            return False
        if self._stop_on(exception):
            return False
        return isinstance(exception, self._retryable_exceptions)

    def call(self, ctx: OperationContext, operation: str, func: Callable[[], T]) -> T:
        """Run ``func`` under this policy.

        Args:
            ctx: Operation context whose deadline and cancellation bound sleeps.
            operation: Name used in log events and timeout errors.
            func: Zero-argument callable to attempt.

        Returns:
            The first successful result of ``func``.

        Raises:
            Exception: The last exception from ``func`` once retries end.
            OperationCancelledError: If cancelled during backoff.
            CredentialsTimeoutError: If the deadline expires during backoff.
        """
        max_attempts = self._config.max_attempts
        for attempt in range(max_attempts):
            ctx.check(operation)
            try:
                return func()
            except Exception as e:
                if not self.should_retry(e):
                    raise

                remaining = max_attempts - attempt - 1
                if remaining == 0:
                    logger.debug(
                        "retry_exhausted",
                        operation=operation,
                        attempts=max_attempts,
                        error=str(e),
                    )
                    raise

                delay = self.calculate_delay(attempt)
                logger.debug(
                    "retry_attempt",
                    operation=operation,
                    attempt=attempt + 1,
                    max_attempts=max_attempts,
                    delay_seconds=delay,
                    error=str(e),
                )
                ctx.sleep(delay, operation)

        raise RuntimeError("Retry exhausted without exception")


__all__ = ["RetryPolicy"]
