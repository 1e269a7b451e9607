from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

DEPLOYMENT_API_VERSION = "database.arangodb.com/v1"
DEPLOYMENT_KIND = "ArangoDeployment"
SERVICE_MONITOR_API_VERSION = "monitoring.coreos.com/v1"
SERVICE_MONITOR_KIND = "ServiceMonitor"


@dataclass(frozen=True)
class DeploymentIntent:
    name: str
    namespace: str
    uid: str
    metrics_enabled: bool
    secure: bool
    ca_secret_name: str | None

    def owner_reference(self) -> dict[str, Any]:
        return {
            "apiVersion": DEPLOYMENT_API_VERSION,
            "kind": DEPLOYMENT_KIND,
            "name": self.name,
            "uid": self.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }


@dataclass(frozen=True)
class TLSConfig:
    ca_secret_name: str | None = None
    ca_secret_key: str | None = None
    insecure_skip_verify: bool = False

    def to_manifest(self) -> dict[str, Any]:
        manifest: dict[str, Any] = {"insecureSkipVerify": self.insecure_skip_verify}
        if self.ca_secret_name and self.ca_secret_key:
            manifest["ca"] = {"secret": {"name": self.ca_secret_name, "key": self.ca_secret_key}}
        return manifest


@dataclass(frozen=True)
class Endpoint:
    port: str
    interval: str
    scheme: str
    tls_config: TLSConfig | None = None

    def to_manifest(self) -> dict[str, Any]:
        manifest: dict[str, Any] = {
            "port": self.port,
            "interval": self.interval,
            "scheme": self.scheme,
        }
        if self.tls_config is not None:
            manifest["tlsConfig"] = self.tls_config.to_manifest()
        return manifest


@dataclass(frozen=True)
class MonitoringResource:
    name: str
    namespace: str
    labels: dict[str, str]
    selector: dict[str, str]
    endpoints: tuple[Endpoint, ...]
    owner_references: tuple[dict[str, Any], ...] = ()
    job_label: str = "k8s-app"

    def to_manifest(self) -> dict[str, Any]:
        return {
            "apiVersion": SERVICE_MONITOR_API_VERSION,
            "kind": SERVICE_MONITOR_KIND,
            "metadata": {
                "name": self.name,
                "namespace": self.namespace,
                "labels": dict(self.labels),
                "ownerReferences": [dict(reference) for reference in self.owner_references],
            },
            "spec": {
                "jobLabel": self.job_label,
                "endpoints": [endpoint.to_manifest() for endpoint in self.endpoints],
                "selector": {"matchLabels": dict(self.selector)},
            },
        }


class BackupState(str, Enum):
    NEW = "New"
    PENDING = "Pending"
    UNAVAILABLE = "Unavailable"
    READY = "Ready"
    DELETED = "Deleted"
    FAILED = "Failed"

    @classmethod
    def parse(cls, value: str | None) -> BackupState:
        # Freshly created backups carry no state at all.
        if not value:
            return cls.NEW
        return cls(value)


@dataclass(frozen=True)
class BackupMeta:
    id: str
    available: bool
    number_of_db_servers: int
    number_of_pieces_present: int

    def is_complete(self) -> bool:
        return self.available and self.number_of_db_servers == self.number_of_pieces_present


@dataclass(frozen=True)
class BackupRecord:
    name: str
    namespace: str
    deployment_name: str
    state: BackupState = BackupState.NEW
    backup_id: str | None = None
    available: bool = False
    backup_meta: BackupMeta | None = None
    message: str = ""
    state_time: datetime | None = None
    resource_version: str | None = field(default=None, compare=False)
