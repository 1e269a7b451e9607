from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable
import base64
import binascii
import threading

from kubernetes import client, config
from kubernetes.client import ApiException

from .logs import get_logger
from .models import DeploymentIntent, MonitoringResource

DEPLOYMENT_GROUP = "database.arangodb.com"
DEPLOYMENT_VERSION = "v1"
DEPLOYMENT_PLURAL = "arangodeployments"
SERVICE_MONITOR_GROUP = "monitoring.coreos.com"
SERVICE_MONITOR_VERSION = "v1"
SERVICE_MONITOR_PLURAL = "servicemonitors"
CA_CERT_KEY = "ca.crt"
# Setting the CA secret name to this literal disables TLS for a deployment.
TLS_DISABLED_SECRET_NAME = "None"
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30

logger = get_logger(__name__)


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api
    custom_api: client.CustomObjectsApi


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


class CACertificateError(RuntimeError):
    """Raised when a deployment CA certificate cannot be read."""


class DeploymentLookupError(RuntimeError):
    """Raised when the owning ArangoDeployment cannot be read."""


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
) -> KubernetesClients:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=expanded, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _format_authentication_error(
                in_cluster=in_cluster,
                kubeconfig_path=expanded,
                context=context,
                error=error,
            )
        ) from error

    api_client = client.ApiClient()
    return KubernetesClients(
        api_client=api_client,
        core_api=client.CoreV1Api(api_client),
        custom_api=client.CustomObjectsApi(api_client),
    )


class ServiceMonitorClient:
    def __init__(
        self,
        *,
        custom_api: client.CustomObjectsApi,
        request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.custom_api = custom_api
        self.request_timeout_seconds = request_timeout_seconds

    def get(self, namespace: str, name: str) -> dict[str, Any]:
        return self.custom_api.get_namespaced_custom_object(
            group=SERVICE_MONITOR_GROUP,
            version=SERVICE_MONITOR_VERSION,
            namespace=namespace,
            plural=SERVICE_MONITOR_PLURAL,
            name=name,
            _request_timeout=self.request_timeout_seconds,
        )

    def create(self, resource: MonitoringResource) -> dict[str, Any]:
        return self.custom_api.create_namespaced_custom_object(
            group=SERVICE_MONITOR_GROUP,
            version=SERVICE_MONITOR_VERSION,
            namespace=resource.namespace,
            plural=SERVICE_MONITOR_PLURAL,
            body=resource.to_manifest(),
            _request_timeout=self.request_timeout_seconds,
        )

    def delete(self, namespace: str, name: str) -> None:
        self.custom_api.delete_namespaced_custom_object(
            group=SERVICE_MONITOR_GROUP,
            version=SERVICE_MONITOR_VERSION,
            namespace=namespace,
            plural=SERVICE_MONITOR_PLURAL,
            name=name,
            body=client.V1DeleteOptions(),
            _request_timeout=self.request_timeout_seconds,
        )


class MonitoringClientCache:
    """Process-wide lazily built monitoring client.

    Construction is single-flight: concurrent callers wait for the first
    builder instead of constructing their own. The cached handle lives until
    `invalidate()` is called.
    """

    def __init__(self, factory: Callable[[], ServiceMonitorClient]) -> None:
        self._factory = factory
        self._lock = threading.Lock()
        self._client: ServiceMonitorClient | None = None

    def get(self) -> ServiceMonitorClient:
        cached = self._client
        if cached is not None:
            return cached
        with self._lock:
            if self._client is None:
                self._client = self._factory()
                logger.debug("monitoring_client_created")
            return self._client

    def invalidate(self) -> None:
        with self._lock:
            if self._client is not None:
                logger.info("monitoring_client_invalidated")
            self._client = None


class SecretCACertificateReader:
    def __init__(
        self,
        *,
        core_api: client.CoreV1Api,
        request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.core_api = core_api
        self.request_timeout_seconds = request_timeout_seconds

    def get_ca_certificate(self, namespace: str, secret_name: str) -> bytes:
        try:
            secret = self.core_api.read_namespaced_secret(
                name=secret_name,
                namespace=namespace,
                _request_timeout=self.request_timeout_seconds,
            )
        except ApiException as error:
            raise CACertificateError(
                _format_api_exception_message(
                    operation=f"read CA secret '{namespace}/{secret_name}'",
                    error=error,
                )
            ) from error

        encoded = (getattr(secret, "data", None) or {}).get(CA_CERT_KEY)
        if not encoded:
            raise CACertificateError(f"CA secret '{namespace}/{secret_name}' has no '{CA_CERT_KEY}' entry")
        try:
            certificate = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as error:
            raise CACertificateError(
                f"CA secret '{namespace}/{secret_name}' holds invalid base64 in '{CA_CERT_KEY}'"
            ) from error
        if not certificate.strip():
            raise CACertificateError(f"CA secret '{namespace}/{secret_name}' holds an empty certificate")
        return certificate


def read_deployment_intent(
    custom_api: client.CustomObjectsApi,
    *,
    namespace: str,
    name: str,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> DeploymentIntent:
    try:
        deployment = custom_api.get_namespaced_custom_object(
            group=DEPLOYMENT_GROUP,
            version=DEPLOYMENT_VERSION,
            namespace=namespace,
            plural=DEPLOYMENT_PLURAL,
            name=name,
            _request_timeout=request_timeout_seconds,
        )
    except ApiException as error:
        raise DeploymentLookupError(
            _format_api_exception_message(
                operation=f"read ArangoDeployment '{namespace}/{name}'",
                error=error,
            )
        ) from error
    return parse_deployment_intent(deployment)


def parse_deployment_intent(deployment: dict[str, Any]) -> DeploymentIntent:
    metadata = deployment.get("metadata") or {}
    spec = deployment.get("spec") or {}
    name = metadata.get("name") or ""
    if not name:
        raise DeploymentLookupError("ArangoDeployment object has no metadata.name")

    metrics = spec.get("metrics") or {}
    tls = spec.get("tls") or {}
    ca_secret_name = tls.get("caSecretName") or f"{name}-ca"
    secure = ca_secret_name != TLS_DISABLED_SECRET_NAME

    return DeploymentIntent(
        name=name,
        namespace=metadata.get("namespace") or "",
        uid=metadata.get("uid") or "",
        metrics_enabled=bool(metrics.get("enabled", False)),
        secure=secure,
        ca_secret_name=ca_secret_name if secure else None,
    )


def _format_api_exception_message(*, operation: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return f"Kubernetes request failed while trying to {operation}: API status {status} ({reason})."


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())


def _format_authentication_error(
    *,
    in_cluster: bool,
    kubeconfig_path: str | None,
    context: str | None,
    error: Exception,
) -> str:
    reason = str(error).strip() or error.__class__.__name__
    if in_cluster:
        return (
            "Kubernetes authentication setup failed while loading in-cluster service account credentials: "
            f"{reason}. Ensure the operator pod has a mounted service account token."
        )

    kubeconfig_source = kubeconfig_path or "default kubeconfig search path"
    context_message = f" with context '{context}'" if context else ""
    return (
        "Kubernetes authentication setup failed while loading kubeconfig "
        f"from '{kubeconfig_source}'{context_message}: {reason}. "
        "Verify the kubeconfig path and context are valid."
    )
