"""Composition of backup status mutations into a single atomic write."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any

from .models import BackupMeta, BackupRecord, BackupState


@dataclass(frozen=True)
class StatusMutation:
    """Assignment of one or more status fields."""

    fields: tuple[tuple[str, Any], ...]


@dataclass(frozen=True)
class StatusUpdate:
    changes: tuple[tuple[str, Any], ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.changes

    def as_dict(self) -> dict[str, Any]:
        return dict(self.changes)

    def get(self, field_name: str, default: Any = None) -> Any:
        return self.as_dict().get(field_name, default)

    def apply(self, record: BackupRecord) -> BackupRecord:
        if self.is_empty:
            return record
        return replace(record, **self.as_dict())


def update_state(state: BackupState, message: str = "") -> StatusMutation:
    return StatusMutation(
        fields=(
            ("state", state),
            ("message", message),
            ("state_time", _utc_now()),
        )
    )


def update_available(available: bool) -> StatusMutation:
    return StatusMutation(fields=(("available", available),))


def update_backup_meta(meta: BackupMeta) -> StatusMutation:
    fields: list[tuple[str, Any]] = [("backup_meta", meta)]
    if meta.id:
        fields.append(("backup_id", meta.id))
    return StatusMutation(fields=tuple(fields))


def wrap_update_status(*mutations: StatusMutation) -> StatusUpdate:
    """Merge mutations in order; a later mutation of the same field wins.

    Changes are kept sorted by field name, so composing disjoint mutations in
    any order yields an equal update.
    """
    merged: dict[str, Any] = {}
    for mutation in mutations:
        for field_name, value in mutation.fields:
            merged[field_name] = value
    return StatusUpdate(changes=tuple(sorted(merged.items(), key=lambda item: item[0])))


def _utc_now() -> datetime:
    return datetime.now(tz=UTC).replace(microsecond=0)
