"""Read Docker config Secrets from the Kubernetes API.

Example:
    >>> from hephaestus_credentials.secrets import KubernetesSecretReader
    >>> reader = KubernetesSecretReader()
    >>> docker_config = reader.read_docker_config(ctx, "registry-creds", "builds")
    >>> sorted(docker_config.auths)
    ['registry1.com']
"""

from __future__ import annotations

import base64
import binascii
import threading
from typing import TYPE_CHECKING, Any, Protocol

import structlog
from kubernetes.client.rest import ApiException
from pydantic import ValidationError

from hephaestus_credentials.config import KubernetesConfig
from hephaestus_credentials.errors import SecretBackendUnavailableError, SecretInvalidError
from hephaestus_credentials.schemas import (
    DOCKER_CONFIG_JSON_KEY,
    DOCKER_CONFIG_JSON_SECRET_TYPE,
    DockerConfigJSON,
)

if TYPE_CHECKING:
    from hephaestus_credentials.context import OperationContext

logger = structlog.get_logger(__name__)


class SecretReader(Protocol):
    """Anything that can load a Docker config Secret."""

    def read_docker_config(
        self, ctx: OperationContext, name: str, namespace: str
    ) -> DockerConfigJSON: ...


class KubernetesSecretReader:
    """Loads ``kubernetes.io/dockerconfigjson`` Secrets via ``CoreV1Api``.

    The Kubernetes client is created on first use, trying in-cluster
    configuration before the default kubeconfig.

    Attributes:
        config: Kubernetes access configuration.
    """

    def __init__(self, config: KubernetesConfig | None = None, api: Any | None = None) -> None:
        """Initialize the reader.

        Args:
            config: Kubernetes access configuration. Uses defaults if None.
            api: Pre-built CoreV1Api. Created lazily if None.
        """
        self.config = config or KubernetesConfig()
        self._api = api
        self._lock = threading.Lock()

    def _core_api(self) -> Any:
        """Return the CoreV1Api, loading client configuration on first use.

        Raises:
            SecretBackendUnavailableError: If no configuration can be loaded.
        """
        with self._lock:
            if self._api is not None:
                return self._api

            from kubernetes import client
            from kubernetes import config as k8s_config

            try:
                if self.config.kubeconfig_path:
                    k8s_config.load_kube_config(
                        config_file=self.config.kubeconfig_path,
                        context=self.config.context,
                    )
                    logger.info(
                        "kubeconfig_loaded",
                        kubeconfig_path=self.config.kubeconfig_path,
                        context=self.config.context,
                    )
                else:
                    try:
                        k8s_config.load_incluster_config()
                        logger.info("incluster_config_loaded")
                    except k8s_config.ConfigException:
                        k8s_config.load_kube_config(context=self.config.context)
                        logger.info("default_kubeconfig_loaded", context=self.config.context)
            except Exception as e:
                logger.error("kubernetes_client_init_failed", error=str(e))
                raise SecretBackendUnavailableError(reason=str(e)) from e

            self._api = client.CoreV1Api()
            return self._api

    def read_docker_config(
        self, ctx: OperationContext, name: str, namespace: str
    ) -> DockerConfigJSON:
        """Read and parse a Docker config Secret.

        Args:
            ctx: Operation context bounding the API request.
            name: Secret name.
            namespace: Secret namespace.

        Returns:
            The parsed Docker config document.

        Raises:
            SecretInvalidError: If the Secret is missing, forbidden, of the
                wrong type, or carries a malformed payload.
            SecretBackendUnavailableError: If the Kubernetes API cannot be reached.
            CredentialsTimeoutError: If the deadline expires before or during the read.
            OperationCancelledError: If the context is cancelled.
        """
        operation = f"read secret {namespace}/{name}"
        ctx.check(operation)
        api = self._core_api()
        try:
            secret = api.read_namespaced_secret(
                name=name,
                namespace=namespace,
                _request_timeout=ctx.http_timeout(self.config.request_timeout_seconds),
            )
        except ApiException as e:
            if e.status == 404:
                raise SecretInvalidError(name, namespace, "secret not found") from e
            if e.status == 403:
                raise SecretInvalidError(name, namespace, f"access denied: {e.reason}") from e
            logger.error("secret_read_failed", name=name, namespace=namespace, status=e.status)
            raise SecretBackendUnavailableError(reason=str(e)) from e
        except Exception as e:
            ctx.check(operation)
            logger.error("secret_read_failed", name=name, namespace=namespace, error=str(e))
            raise SecretBackendUnavailableError(reason=str(e)) from e

        if secret.type != DOCKER_CONFIG_JSON_SECRET_TYPE:
            raise SecretInvalidError(
                name,
                namespace,
                f"type is {secret.type!r}, expected {DOCKER_CONFIG_JSON_SECRET_TYPE!r}",
            )

        encoded = (secret.data or {}).get(DOCKER_CONFIG_JSON_KEY)
        if not encoded:
            raise SecretInvalidError(
                name, namespace, f"missing data key {DOCKER_CONFIG_JSON_KEY!r}"
            )

        # Secret data values are base64 encoded by the API
        try:
            payload = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise SecretInvalidError(name, namespace, f"cannot decode payload: {e}") from e

        try:
            return DockerConfigJSON.from_bytes(payload)
        except ValidationError as e:
            raise SecretInvalidError(
                name, namespace, f"malformed docker config: {e.error_count()} errors"
            ) from e


__all__ = ["KubernetesSecretReader", "SecretReader"]
