"""Provider registry: dispatches a registry hostname to a cloud auth loader.

Loaders are registered at startup against hostname patterns and tried in
registration order. Once ``freeze()`` is called the registry is read-only and
safe to share between concurrent reconciliations without locking.

Example:
    >>> registry = ProviderRegistry()
    >>> registry.register(r".*\\.azurecr\\.io", acr.authenticate)
    >>> registry.freeze()
    >>> auth = registry.retrieve_authorization(ctx, log, "foo.azurecr.io")
"""

from __future__ import annotations

import re
import threading
from collections.abc import Callable
from typing import Any

import structlog

from hephaestus_credentials.context import OperationContext
from hephaestus_credentials.errors import NoLoaderFoundError
from hephaestus_credentials.schemas import AuthConfig

logger = structlog.get_logger(__name__)

AuthLoader = Callable[[OperationContext, Any, str], AuthConfig]
"""Signature of a cloud auth loader: ``(ctx, log, server) -> AuthConfig``."""


class RegistryFrozenError(RuntimeError):
    """Raised when registering a loader after the registry was frozen."""


class ProviderRegistry:
    """Ordered ``(pattern, loader)`` pairs searched in registration order.

    Patterns are matched with ``re.search`` semantics, so an unanchored
    pattern matches anywhere in the server string.
    """

    def __init__(self) -> None:
        self._loaders: tuple[tuple[re.Pattern[str], AuthLoader], ...] = ()
        self._frozen = False
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        """Return True once registration has ended."""
        return self._frozen

    @property
    def patterns(self) -> list[str]:
        """Return registered patterns in lookup order."""
        return [pattern.pattern for pattern, _ in self._loaders]

    def __len__(self) -> int:
        return len(self._loaders)

    def register(self, pattern: str | re.Pattern[str], loader: AuthLoader) -> None:
        """Associate a hostname pattern with an auth loader.

        Args:
            pattern: Regex string or compiled pattern.
            loader: Callable invoked for servers matching ``pattern``.

        Raises:
            RegistryFrozenError: If called after freeze().
        """
        compiled = re.compile(pattern) if isinstance(pattern, str) else pattern
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError(
                    f"cannot register {compiled.pattern!r}: provider registry is frozen"
                )
            self._loaders = (*self._loaders, (compiled, loader))
        logger.debug("auth_loader_registered", pattern=compiled.pattern)

    def freeze(self) -> None:
        """End the registration phase."""
        with self._lock:
            self._frozen = True

    def retrieve_authorization(
        self,
        ctx: OperationContext,
        log: Any,
        server: str,
    ) -> AuthConfig:
        """Authenticate ``server`` with the first matching loader.

        The loader's result or exception is passed through unchanged.

        Raises:
            NoLoaderFoundError: If no registered pattern matches ``server``.
        """
        for pattern, loader in self._loaders:
            if pattern.search(server):
                return loader(ctx, log, server)
        raise NoLoaderFoundError(server)


__all__ = ["AuthLoader", "ProviderRegistry", "RegistryFrozenError"]
