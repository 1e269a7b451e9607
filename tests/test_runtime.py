from __future__ import annotations

from unittest.mock import Mock

import pytest
from kubernetes.client import ApiException

from arangodb_operator.config import OperatorConfig
from arangodb_operator.errors import TemporaryError
from arangodb_operator.k8s import KubernetesClients
from arangodb_operator.models import BackupMeta, BackupState
from arangodb_operator.runtime import build_runtime


def _deployment_object(*, metrics_enabled: bool) -> dict:
    return {
        "metadata": {"name": "cluster", "namespace": "db", "uid": "uid-1"},
        "spec": {"metrics": {"enabled": metrics_enabled}, "tls": {"caSecretName": "None"}},
    }


def _backup_object() -> dict:
    return {
        "metadata": {"name": "nightly", "namespace": "db", "resourceVersion": "7"},
        "spec": {"deployment": {"name": "cluster"}},
        "status": {"state": "Unavailable", "backup": {"id": "backup-1"}},
    }


def _clients(custom_api: Mock) -> KubernetesClients:
    return KubernetesClients(api_client=Mock(), core_api=Mock(), custom_api=custom_api)


def _custom_objects(*, metrics_enabled: bool, service_monitor_exists: bool) -> Mock:
    custom_api = Mock()

    def get_namespaced_custom_object(*, group: str, plural: str, **_: object) -> dict:
        if plural == "arangodeployments":
            return _deployment_object(metrics_enabled=metrics_enabled)
        if plural == "arangobackups":
            return _backup_object()
        if service_monitor_exists:
            return {"metadata": {"name": "cluster-exporter"}}
        raise ApiException(status=404, reason="Not Found")

    custom_api.get_namespaced_custom_object.side_effect = get_namespaced_custom_object
    custom_api.patch_namespaced_custom_object_status.side_effect = lambda **kwargs: {
        **_backup_object(),
        "status": kwargs["body"]["status"],
    }
    return custom_api


def test_ensure_service_monitor_reads_deployment_and_creates_monitor(monkeypatch: pytest.MonkeyPatch) -> None:
    custom_api = _custom_objects(metrics_enabled=True, service_monitor_exists=False)
    monkeypatch.setattr("arangodb_operator.runtime.load_kubernetes_clients", Mock(return_value=_clients(custom_api)))
    runtime = build_runtime(OperatorConfig(namespace="db", request_timeout_seconds=9), status_source_factory=Mock())

    runtime.ensure_service_monitor("db", "cluster")

    custom_api.create_namespaced_custom_object.assert_called_once()
    body = custom_api.create_namespaced_custom_object.call_args.kwargs["body"]
    assert body["metadata"]["name"] == "cluster-exporter"
    assert body["spec"]["endpoints"][0]["scheme"] == "http"


def test_ensure_service_monitor_with_metrics_disabled_deletes_monitor(monkeypatch: pytest.MonkeyPatch) -> None:
    custom_api = _custom_objects(metrics_enabled=False, service_monitor_exists=True)
    monkeypatch.setattr("arangodb_operator.runtime.load_kubernetes_clients", Mock(return_value=_clients(custom_api)))
    runtime = build_runtime(OperatorConfig(namespace="db"), status_source_factory=Mock())

    runtime.ensure_service_monitor("db", "cluster")

    custom_api.delete_namespaced_custom_object.assert_called_once()
    custom_api.create_namespaced_custom_object.assert_not_called()


def test_ensure_service_monitor_with_unreadable_deployment_raises_temporary_error() -> None:
    custom_api = Mock()
    custom_api.get_namespaced_custom_object.side_effect = ApiException(status=500, reason="boom")
    runtime = build_runtime(
        OperatorConfig(namespace="db"),
        status_source_factory=Mock(),
        clients=_clients(custom_api),
    )

    with pytest.raises(TemporaryError, match="ArangoDeployment 'db/cluster'"):
        runtime.ensure_service_monitor("db", "cluster")


def test_reconcile_backup_uses_status_source_for_owning_deployment() -> None:
    custom_api = _custom_objects(metrics_enabled=False, service_monitor_exists=False)
    source = Mock()
    source.get.return_value = BackupMeta(
        id="backup-1",
        available=True,
        number_of_db_servers=3,
        number_of_pieces_present=3,
    )
    status_source_factory = Mock(return_value=source)
    runtime = build_runtime(
        OperatorConfig(namespace="db"),
        status_source_factory=status_source_factory,
        clients=_clients(custom_api),
    )

    record = runtime.reconcile_backup("db", "nightly")

    deployment, backup_record = status_source_factory.call_args.args
    assert deployment.name == "cluster"
    assert backup_record.backup_id == "backup-1"
    assert record.state is BackupState.READY
    assert record.available is True


@pytest.mark.parametrize(
    "status,match",
    [
        ({"state": "Bogus"}, "unknown state 'Bogus'"),
        ({"state": "Unavailable", "backup": {"id": "x", "numberOfDBServers": "three"}}, "numberOfDBServers"),
    ],
)
def test_reconcile_backup_with_malformed_record_persists_failed_status_once(status: dict, match: str) -> None:
    custom_api = Mock()
    custom_api.get_namespaced_custom_object.return_value = {**_backup_object(), "status": status}
    custom_api.patch_namespaced_custom_object_status.side_effect = lambda **kwargs: {
        **_backup_object(),
        "status": kwargs["body"]["status"],
    }
    status_source_factory = Mock()
    runtime = build_runtime(
        OperatorConfig(namespace="db"),
        status_source_factory=status_source_factory,
        clients=_clients(custom_api),
    )

    record = runtime.reconcile_backup("db", "nightly")

    custom_api.patch_namespaced_custom_object_status.assert_called_once()
    written = custom_api.patch_namespaced_custom_object_status.call_args.kwargs["body"]["status"]
    assert written["state"] == "Failed"
    assert written["available"] is False
    assert match in written["message"]
    assert record.state is BackupState.FAILED
    status_source_factory.assert_not_called()
