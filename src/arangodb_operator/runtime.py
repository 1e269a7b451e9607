from __future__ import annotations

from dataclasses import dataclass
from functools import partial

from .backup import BackupReconciler, BackupStateMachine, DeploymentLookup, StatusSourceFactory
from .config import OperatorConfig, validate_config
from .errors import new_temporary_error
from .k8s import (
    KubernetesClients,
    MonitoringClientCache,
    SecretCACertificateReader,
    ServiceMonitorClient,
    load_kubernetes_clients,
    read_deployment_intent,
)
from .locks import KeyedLocks
from .logs import configure_logging, get_logger
from .models import BackupRecord, DeploymentIntent
from .servicemonitor import ServiceMonitorReconciler
from .store import ArangoBackupStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class OperatorRuntime:
    config: OperatorConfig
    clients: KubernetesClients
    monitoring_clients: MonitoringClientCache
    service_monitors: ServiceMonitorReconciler
    backups: BackupReconciler
    deployment_lookup: DeploymentLookup

    def ensure_service_monitor(self, namespace: str, name: str) -> None:
        try:
            intent = self.deployment_lookup(namespace, name)
        except Exception as error:  # pylint: disable=broad-except
            raise new_temporary_error(error) from error
        self.service_monitors.ensure(intent)

    def reconcile_backup(self, namespace: str, name: str) -> BackupRecord:
        return self.backups.reconcile(namespace, name)


def build_runtime(
    config: OperatorConfig,
    *,
    status_source_factory: StatusSourceFactory,
    clients: KubernetesClients | None = None,
) -> OperatorRuntime:
    validate_config(config)
    configure_logging(level=config.log_level, json_output=config.log_json)

    load_clients = partial(
        load_kubernetes_clients,
        kubeconfig_path=config.kubeconfig_path,
        context=config.context,
        in_cluster=config.in_cluster,
    )
    clients = clients or load_clients()

    def monitoring_client_factory() -> ServiceMonitorClient:
        # Reload credentials so an invalidated handle picks up rotated tokens.
        return ServiceMonitorClient(
            custom_api=load_clients().custom_api,
            request_timeout_seconds=config.request_timeout_seconds,
        )

    def deployment_lookup(namespace: str, name: str) -> DeploymentIntent:
        return read_deployment_intent(
            clients.custom_api,
            namespace=namespace,
            name=name,
            request_timeout_seconds=config.request_timeout_seconds,
        )

    locks = KeyedLocks()
    monitoring_clients = MonitoringClientCache(monitoring_client_factory)
    service_monitors = ServiceMonitorReconciler(
        client_cache=monitoring_clients,
        ca_reader=SecretCACertificateReader(
            core_api=clients.core_api,
            request_timeout_seconds=config.request_timeout_seconds,
        ),
        locks=locks,
    )
    state_machine = BackupStateMachine(
        deployment_lookup=deployment_lookup,
        status_source_factory=status_source_factory,
    )
    backups = BackupReconciler(
        store=ArangoBackupStore(
            custom_api=clients.custom_api,
            request_timeout_seconds=config.request_timeout_seconds,
        ),
        state_machine=state_machine,
        locks=locks,
    )
    logger.info("operator_runtime_ready", namespace=config.namespace, in_cluster=config.in_cluster)
    return OperatorRuntime(
        config=config,
        clients=clients,
        monitoring_clients=monitoring_clients,
        service_monitors=service_monitors,
        backups=backups,
        deployment_lookup=deployment_lookup,
    )

