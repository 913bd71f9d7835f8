"""Deadline and cancellation for blocking credential operations.

Every network call and backoff sleep made on behalf of one build takes an
``OperationContext``. HTTP timeouts are bounded by the remaining deadline and
sleeps wake as soon as the context is cancelled, so a stuck registry cannot
stall a reconciling worker indefinitely.

Example:
    >>> from hephaestus_credentials.context import OperationContext
    >>> ctx = OperationContext.with_timeout(30.0)
    >>> with httpx.Client(timeout=ctx.http_timeout(10.0)) as client:
    ...     ctx.check("challenge")
    ...     client.get("https://registry.example.com/v2/")
"""

from __future__ import annotations

import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager

from hephaestus_credentials.errors import CredentialsTimeoutError, OperationCancelledError

LOCK_POLL_SECONDS = 0.1


class OperationContext:
    """Monotonic deadline plus a cancellation flag.

    Attributes:
        deadline: ``time.monotonic()`` value after which operations time out,
            or None for no deadline.
    """

    def __init__(self, deadline: float | None = None) -> None:
        self.deadline = deadline
        self._cancelled = threading.Event()

    @classmethod
    def with_timeout(cls, seconds: float) -> OperationContext:
        """Create a context that expires ``seconds`` from now."""
        return cls(deadline=time.monotonic() + seconds)

    @classmethod
    def background(cls) -> OperationContext:
        """Create a context with no deadline."""
        return cls()

    @property
    def cancelled(self) -> bool:
        """Return True once cancel() has been called."""
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Cancel the operation. Pending sleeps wake immediately."""
        self._cancelled.set()

    def remaining(self) -> float | None:
        """Return seconds until the deadline, or None without a deadline."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def check(self, operation: str) -> None:
        """Raise if the context is cancelled or past its deadline.

        Raises:
            OperationCancelledError: If cancel() was called.
            CredentialsTimeoutError: If the deadline has passed.
        """
        if self._cancelled.is_set():
            raise OperationCancelledError(operation)
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise CredentialsTimeoutError(operation)

    def http_timeout(self, default: float) -> float:
        """Return a per-request timeout bounded by the remaining deadline."""
        remaining = self.remaining()
        if remaining is None:
            return default
        return max(0.001, min(default, remaining))

    def sleep(self, seconds: float, operation: str = "backoff") -> None:
        """Sleep for ``seconds``, waking early on cancellation.

        Raises:
            OperationCancelledError: If cancelled before or during the sleep.
            CredentialsTimeoutError: If the deadline falls inside the sleep.
        """
        self.check(operation)
        remaining = self.remaining()
        if remaining is not None and seconds >= remaining:
            self._cancelled.wait(remaining)
            self.check(operation)
            raise CredentialsTimeoutError(operation)
        if self._cancelled.wait(seconds):
            raise OperationCancelledError(operation)

    @contextmanager
    def hold(self, lock: threading.Lock, operation: str) -> Iterator[None]:
        """Hold ``lock``, giving up when the context expires or is cancelled.

        Raises:
            OperationCancelledError: If cancelled while waiting for the lock.
            CredentialsTimeoutError: If the deadline passes while waiting.
        """
        self.check(operation)
        while True:
            remaining = self.remaining()
            wait = LOCK_POLL_SECONDS if remaining is None else min(LOCK_POLL_SECONDS, remaining)
            if lock.acquire(timeout=wait):
                break
            self.check(operation)
        try:
            yield
        finally:
            lock.release()


__all__ = ["OperationContext"]
