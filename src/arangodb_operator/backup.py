from __future__ import annotations

from typing import Callable, Protocol

from .errors import (
    FatalError,
    OperatorError,
    TemporaryError,
    error_message,
    is_not_found,
    new_fatal_error,
    new_temporary_error,
)
from .locks import KeyedLocks
from .logs import get_logger
from .models import BackupMeta, BackupRecord, BackupState, DeploymentIntent
from .status import (
    StatusUpdate,
    update_available,
    update_backup_meta,
    update_state,
    wrap_update_status,
)

logger = get_logger(__name__)


class BackupStatusSource(Protocol):
    """Per-deployment view of the database's hot backups.

    `get` raises `errors.NotFoundError` when the backup is gone.
    """

    def get(self, backup_id: str) -> BackupMeta: ...


class BackupRecordStore(Protocol):
    def get(self, namespace: str, name: str) -> BackupRecord: ...

    def apply(self, record: BackupRecord, update: StatusUpdate) -> BackupRecord: ...

    def mark_failed(self, namespace: str, name: str, message: str) -> BackupRecord: ...


DeploymentLookup = Callable[[str, str], DeploymentIntent]
StatusSourceFactory = Callable[[DeploymentIntent, BackupRecord], BackupStatusSource]
StateHandler = Callable[["BackupStateMachine", BackupRecord], StatusUpdate]


class BackupStateMachine:
    def __init__(
        self,
        *,
        deployment_lookup: DeploymentLookup,
        status_source_factory: StatusSourceFactory,
    ) -> None:
        self.deployment_lookup = deployment_lookup
        self.status_source_factory = status_source_factory

    def advance(self, record: BackupRecord) -> StatusUpdate:
        handler = STATE_HANDLERS[record.state]
        try:
            return handler(self, record)
        except OperatorError:
            raise
        except Exception as error:  # pylint: disable=broad-except
            raise new_temporary_error(error) from error

    def status_source_for(self, record: BackupRecord) -> BackupStatusSource:
        try:
            deployment = self.deployment_lookup(record.namespace, record.deployment_name)
            return self.status_source_factory(deployment, record)
        except Exception as error:  # pylint: disable=broad-except
            raise new_temporary_error(error) from error


def _state_new_handler(machine: BackupStateMachine, record: BackupRecord) -> StatusUpdate:
    return wrap_update_status(
        update_state(BackupState.PENDING),
        update_available(False),
    )


def _state_pending_handler(machine: BackupStateMachine, record: BackupRecord) -> StatusUpdate:
    if not record.backup_id:
        return StatusUpdate()
    # Availability is only granted by a verified lookup in the unavailable state.
    return wrap_update_status(
        update_state(BackupState.UNAVAILABLE),
        update_available(False),
    )


def _state_unavailable_handler(machine: BackupStateMachine, record: BackupRecord) -> StatusUpdate:
    return _verify_backup(machine, record)


def _state_ready_handler(machine: BackupStateMachine, record: BackupRecord) -> StatusUpdate:
    return _verify_backup(machine, record)


def _state_terminal_handler(machine: BackupStateMachine, record: BackupRecord) -> StatusUpdate:
    return StatusUpdate()


def _verify_backup(machine: BackupStateMachine, record: BackupRecord) -> StatusUpdate:
    source = machine.status_source_for(record)

    if not record.backup_id:
        raise new_fatal_error("missing field .status.backup")

    try:
        backup_meta = source.get(record.backup_id)
    except Exception as error:  # pylint: disable=broad-except
        if is_not_found(error):
            return wrap_update_status(
                update_state(BackupState.DELETED),
                update_available(False),
            )
        logger.warning(
            "backup_lookup_failed",
            backup=record.name,
            namespace=record.namespace,
            backup_id=record.backup_id,
            error=error_message(error),
        )
        return wrap_update_status(update_available(False))

    if not backup_meta.is_complete():
        return wrap_update_status(
            update_state(BackupState.UNAVAILABLE),
            update_backup_meta(backup_meta),
            update_available(False),
        )

    return wrap_update_status(
        update_backup_meta(backup_meta),
        update_state(BackupState.READY),
        update_available(True),
    )


STATE_HANDLERS: dict[BackupState, StateHandler] = {
    BackupState.NEW: _state_new_handler,
    BackupState.PENDING: _state_pending_handler,
    BackupState.UNAVAILABLE: _state_unavailable_handler,
    BackupState.READY: _state_ready_handler,
    BackupState.DELETED: _state_terminal_handler,
    BackupState.FAILED: _state_terminal_handler,
}

_unhandled_states = sorted(state.value for state in BackupState if state not in STATE_HANDLERS)
if _unhandled_states:
    raise RuntimeError(f"backup states without a handler: {', '.join(_unhandled_states)}")


class BackupReconciler:
    def __init__(
        self,
        *,
        store: BackupRecordStore,
        state_machine: BackupStateMachine,
        locks: KeyedLocks | None = None,
    ) -> None:
        self.store = store
        self.state_machine = state_machine
        self.locks = locks or KeyedLocks()

    def reconcile(self, namespace: str, name: str) -> BackupRecord:
        """Advance one backup by a single step and persist the result.

        Fatal failures are persisted as the `Failed` state so they stay visible
        and are not retried. Temporary failures persist nothing and are raised
        for the caller to retry on its next tick.
        """
        with self.locks.hold(("ArangoBackup", namespace, name)):
            log = logger.bind(backup=name, namespace=namespace)
            try:
                record = self.store.get(namespace, name)
            except FatalError as error:
                log.error("backup_record_malformed", error=str(error))
                return self.store.mark_failed(namespace, name, str(error))
            except OperatorError:
                raise
            except Exception as error:  # pylint: disable=broad-except
                raise new_temporary_error(error) from error

            try:
                update = self.state_machine.advance(record)
            except FatalError as error:
                log.error("backup_failed", state=record.state.value, error=str(error))
                update = wrap_update_status(
                    update_state(BackupState.FAILED, str(error)),
                    update_available(False),
                )
            except TemporaryError as error:
                log.info("backup_reconcile_deferred", state=record.state.value, error=str(error))
                raise

            if update.is_empty:
                return record

            next_state = update.get("state", record.state)
            if next_state != record.state:
                log.info("backup_state_changed", previous=record.state.value, state=next_state.value)
            return self.store.apply(record, update)
