from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from kubernetes import client

from .errors import FatalError, TemporaryError, error_message
from .k8s import DEFAULT_REQUEST_TIMEOUT_SECONDS
from .models import BackupMeta, BackupRecord, BackupState
from .status import StatusUpdate

BACKUP_GROUP = "backup.arangodb.com"
BACKUP_VERSION = "v1"
BACKUP_PLURAL = "arangobackups"


class ArangoBackupStore:
    """Reads backup records from ArangoBackup objects and writes their status."""

    def __init__(
        self,
        *,
        custom_api: client.CustomObjectsApi,
        request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.custom_api = custom_api
        self.request_timeout_seconds = request_timeout_seconds

    def get(self, namespace: str, name: str) -> BackupRecord:
        try:
            backup = self.custom_api.get_namespaced_custom_object(
                group=BACKUP_GROUP,
                version=BACKUP_VERSION,
                namespace=namespace,
                plural=BACKUP_PLURAL,
                name=name,
                _request_timeout=self.request_timeout_seconds,
            )
        except Exception as error:  # pylint: disable=broad-except
            raise TemporaryError(
                f"unable to read ArangoBackup '{namespace}/{name}': {error_message(error)}",
                cause=error,
            ) from error
        return parse_backup_record(backup)

    def apply(self, record: BackupRecord, update: StatusUpdate) -> BackupRecord:
        if update.is_empty:
            return record

        updated = update.apply(record)
        # The resourceVersion turns the merge patch into a compare-and-swap.
        body = {
            "metadata": {"resourceVersion": record.resource_version},
            "status": render_backup_status(updated),
        }
        try:
            patched = self.custom_api.patch_namespaced_custom_object_status(
                group=BACKUP_GROUP,
                version=BACKUP_VERSION,
                namespace=record.namespace,
                plural=BACKUP_PLURAL,
                name=record.name,
                body=body,
                _request_timeout=self.request_timeout_seconds,
            )
        except Exception as error:  # pylint: disable=broad-except
            raise TemporaryError(
                f"unable to update status of ArangoBackup '{record.namespace}/{record.name}': "
                f"{error_message(error)}",
                cause=error,
            ) from error
        return parse_backup_record(patched) if isinstance(patched, dict) else updated

    def mark_failed(self, namespace: str, name: str, message: str) -> BackupRecord:
        """Persist `Failed` for an object that cannot be read as a backup record."""
        body = {
            "status": {
                "state": BackupState.FAILED.value,
                "message": message,
                "available": False,
                "time": datetime.now(tz=UTC).replace(microsecond=0).isoformat(),
            }
        }
        try:
            patched = self.custom_api.patch_namespaced_custom_object_status(
                group=BACKUP_GROUP,
                version=BACKUP_VERSION,
                namespace=namespace,
                plural=BACKUP_PLURAL,
                name=name,
                body=body,
                _request_timeout=self.request_timeout_seconds,
            )
        except Exception as error:  # pylint: disable=broad-except
            raise TemporaryError(
                f"unable to mark ArangoBackup '{namespace}/{name}' as failed: {error_message(error)}",
                cause=error,
            ) from error
        if isinstance(patched, dict):
            return parse_backup_record(patched)
        return BackupRecord(
            name=name,
            namespace=namespace,
            deployment_name="",
            state=BackupState.FAILED,
            message=message,
        )


def parse_backup_record(backup: dict[str, Any]) -> BackupRecord:
    metadata = backup.get("metadata") or {}
    spec = backup.get("spec") or {}
    status = backup.get("status") or {}
    name = metadata.get("name") or ""

    try:
        state = BackupState.parse(status.get("state"))
    except (TypeError, ValueError) as error:
        raise FatalError(f"ArangoBackup '{name}' has unknown state '{status.get('state')}'") from error

    details = status.get("backup") or {}
    try:
        backup_meta = _parse_backup_meta(name, details)
    except FatalError:
        # A failed record keeps its malformed snapshot for the operator to inspect.
        if state is not BackupState.FAILED:
            raise
        backup_meta = None

    return BackupRecord(
        name=name,
        namespace=metadata.get("namespace") or "",
        deployment_name=(spec.get("deployment") or {}).get("name") or "",
        state=state,
        backup_id=details.get("id") or None,
        available=bool(status.get("available", False)),
        backup_meta=backup_meta,
        message=status.get("message") or "",
        state_time=_parse_time(status.get("time")),
        resource_version=metadata.get("resourceVersion"),
    )


def render_backup_status(record: BackupRecord) -> dict[str, Any]:
    status: dict[str, Any] = {
        "state": record.state.value,
        "message": record.message,
        "available": record.available,
        "time": record.state_time.isoformat() if record.state_time else None,
    }
    details: dict[str, Any] = {}
    if record.backup_id:
        details["id"] = record.backup_id
    if record.backup_meta is not None:
        details["available"] = record.backup_meta.available
        details["numberOfDBServers"] = record.backup_meta.number_of_db_servers
        details["numberOfPiecesPresent"] = record.backup_meta.number_of_pieces_present
    status["backup"] = details or None
    return status


def _parse_time(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


def _parse_backup_meta(name: str, details: dict[str, Any]) -> BackupMeta | None:
    if "numberOfDBServers" not in details and "numberOfPiecesPresent" not in details:
        return None
    return BackupMeta(
        id=details.get("id") or "",
        available=_parse_flag(name, "available", details.get("available", False)),
        number_of_db_servers=_parse_count(name, "numberOfDBServers", details.get("numberOfDBServers")),
        number_of_pieces_present=_parse_count(name, "numberOfPiecesPresent", details.get("numberOfPiecesPresent")),
    )


def _parse_count(name: str, field_name: str, value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, bool):
        raise FatalError(f"ArangoBackup '{name}' has invalid status.backup.{field_name}: {value!r}")
    try:
        count = int(value)
    except (TypeError, ValueError) as error:
        raise FatalError(f"ArangoBackup '{name}' has invalid status.backup.{field_name}: {value!r}") from error
    if count < 0:
        raise FatalError(f"ArangoBackup '{name}' has invalid status.backup.{field_name}: {value!r}")
    return count


def _parse_flag(name: str, field_name: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise FatalError(f"ArangoBackup '{name}' has invalid status.backup.{field_name}: {value!r}")
    return value
