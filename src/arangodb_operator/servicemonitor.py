from __future__ import annotations

from typing import Protocol

from kubernetes.client import ApiException
from structlog.stdlib import BoundLogger

from .errors import (
    TemporaryError,
    classify_rejected_request,
    error_message,
    is_not_found,
    new_temporary_error,
)
from .k8s import CA_CERT_KEY, MonitoringClientCache, ServiceMonitorClient
from .locks import KeyedLocks
from .logs import get_logger
from .models import DeploymentIntent, Endpoint, MonitoringResource, TLSConfig

LABEL_KEY_ARANGO_DEPLOYMENT = "arango_deployment"
LABEL_KEY_APP = "app"
APP_NAME = "arangodb"
EXPORTER_PORT_NAME = "exporter"
EXPORTER_SCRAPE_INTERVAL = "10s"
SERVICE_MONITOR_JOB_LABEL = "k8s-app"

logger = get_logger(__name__)


class CACertificateReader(Protocol):
    def get_ca_certificate(self, namespace: str, secret_name: str) -> bytes: ...


def service_monitor_name(deployment_name: str) -> str:
    return f"{deployment_name}-exporter"


def labels_for_exporter_service_monitor(deployment_name: str) -> dict[str, str]:
    return {
        LABEL_KEY_ARANGO_DEPLOYMENT: deployment_name,
        LABEL_KEY_APP: APP_NAME,
        "context": "metrics",
    }


def labels_for_exporter_service_monitor_selector(deployment_name: str) -> dict[str, str]:
    return {
        LABEL_KEY_ARANGO_DEPLOYMENT: deployment_name,
        LABEL_KEY_APP: APP_NAME,
    }


class ServiceMonitorReconciler:
    """Keeps the exporter ServiceMonitor of a deployment in line with its metrics flag."""

    def __init__(
        self,
        *,
        client_cache: MonitoringClientCache,
        ca_reader: CACertificateReader,
        locks: KeyedLocks | None = None,
    ) -> None:
        self.client_cache = client_cache
        self.ca_reader = ca_reader
        self.locks = locks or KeyedLocks()

    def ensure(self, intent: DeploymentIntent) -> None:
        with self.locks.hold(("ServiceMonitor", intent.namespace, intent.name)):
            self._ensure(intent)

    def _ensure(self, intent: DeploymentIntent) -> None:
        name = service_monitor_name(intent.name)
        log = logger.bind(deployment=intent.name, namespace=intent.namespace, service_monitor=name)

        try:
            monitoring_client = self.client_cache.get()
        except Exception as error:  # pylint: disable=broad-except
            log.error("monitoring_client_unavailable", error=error_message(error))
            raise new_temporary_error(error) from error

        try:
            monitoring_client.get(intent.namespace, name)
        except Exception as error:  # pylint: disable=broad-except
            if not is_not_found(error):
                log.error("servicemonitor_get_failed", error=error_message(error))
                raise self._temporary(error) from error
            if not intent.metrics_enabled:
                return
            self._create(monitoring_client, intent, log)
            return

        if intent.metrics_enabled:
            log.debug("servicemonitor_already_present")
            return
        self._delete(monitoring_client, intent.namespace, name, log)

    def build_service_monitor(self, intent: DeploymentIntent) -> MonitoringResource:
        return MonitoringResource(
            name=service_monitor_name(intent.name),
            namespace=intent.namespace,
            labels=labels_for_exporter_service_monitor(intent.name),
            selector=labels_for_exporter_service_monitor_selector(intent.name),
            endpoints=(self.make_endpoint(intent),),
            owner_references=(intent.owner_reference(),),
            job_label=SERVICE_MONITOR_JOB_LABEL,
        )

    def make_endpoint(self, intent: DeploymentIntent) -> Endpoint:
        if not intent.secure:
            return Endpoint(port=EXPORTER_PORT_NAME, interval=EXPORTER_SCRAPE_INTERVAL, scheme="http")

        try:
            if not intent.ca_secret_name:
                raise ValueError("deployment has no CA secret configured")
            self.ca_reader.get_ca_certificate(intent.namespace, intent.ca_secret_name)
            tls_config = TLSConfig(ca_secret_name=intent.ca_secret_name, ca_secret_key=CA_CERT_KEY)
        except Exception as error:  # pylint: disable=broad-except
            logger.warning(
                "servicemonitor_tls_verification_disabled",
                deployment=intent.name,
                namespace=intent.namespace,
                ca_secret=intent.ca_secret_name,
                error=error_message(error),
            )
            tls_config = TLSConfig(insecure_skip_verify=True)

        return Endpoint(
            port=EXPORTER_PORT_NAME,
            interval=EXPORTER_SCRAPE_INTERVAL,
            scheme="https",
            tls_config=tls_config,
        )

    def _create(self, monitoring_client: ServiceMonitorClient, intent: DeploymentIntent, log: BoundLogger) -> None:
        resource = self.build_service_monitor(intent)
        try:
            monitoring_client.create(resource)
        except Exception as error:  # pylint: disable=broad-except
            log.error("servicemonitor_create_failed", error=error_message(error))
            if _is_unauthorized(error):
                raise self._temporary(error) from error
            raise classify_rejected_request(error) from error
        log.debug("servicemonitor_created")

    def _delete(self, monitoring_client: ServiceMonitorClient, namespace: str, name: str, log: BoundLogger) -> None:
        try:
            monitoring_client.delete(namespace, name)
        except Exception as error:  # pylint: disable=broad-except
            if is_not_found(error):
                log.debug("servicemonitor_already_deleted")
                return
            log.error("servicemonitor_delete_failed", error=error_message(error))
            raise self._temporary(error) from error
        log.debug("servicemonitor_deleted")

    def _temporary(self, error: Exception) -> TemporaryError:
        if _is_unauthorized(error):
            self.client_cache.invalidate()
        return new_temporary_error(error)


def _is_unauthorized(error: Exception) -> bool:
    return isinstance(error, ApiException) and error.status == 401
