"""
Three-way conflict detection and the pending-conflict store.

A conflict needs three snapshots of the same record:

    base      what both sides agreed on at the last sync
    local     the record as it is in our database now
    external  the record as the ledger has it now

A field is a conflict only when BOTH sides moved away from base and landed
on different values. If only one side changed, that side wins and no
conflict is raised; if both changed different fields, the changes merge.

Detection never applies anything. Resolution is always an explicit user
action (see resolver.py).
"""
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from sqlalchemy import func
from sqlmodel import Session, select

from ledgersync.models.sync import ConflictStatus, ConflictType, SyncConflict


@dataclass
class ThreeWayDiff:
    local_changed: List[str] = field(default_factory=list)
    external_changed: List[str] = field(default_factory=list)
    overlapping: List[str] = field(default_factory=list)
    merged: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_conflict(self) -> bool:
        return bool(self.overlapping)


@dataclass
class ConflictDraft:
    """A detected conflict, not yet persisted."""

    entity: str
    entity_id: int
    entity_name: str
    local_data: Dict[str, Any]
    xero_data: Dict[str, Any]
    fields: List[str]
    suggested_action: str
    conflict_type: ConflictType = ConflictType.DATA_MISMATCH
    base_data: Optional[Dict[str, Any]] = None
    external_id: Optional[str] = None


def three_way_diff(
    local: Dict[str, Any],
    external: Dict[str, Any],
    base: Optional[Dict[str, Any]],
) -> ThreeWayDiff:
    """
    Compare two snapshots against their common base, field by field.

    With no base (the records were never synced together) every field on
    which local and external disagree counts as changed on both sides.
    """
    keys = list(local.keys()) + [k for k in external.keys() if k not in local]
    diff = ThreeWayDiff()

    for key in keys:
        l_val, e_val = local.get(key), external.get(key)
        if base is None:
            if l_val != e_val:
                diff.local_changed.append(key)
                diff.external_changed.append(key)
                diff.overlapping.append(key)
            diff.merged[key] = e_val
            continue

        b_val = base.get(key)
        local_moved = l_val != b_val
        external_moved = e_val != b_val
        if local_moved:
            diff.local_changed.append(key)
        if external_moved:
            diff.external_changed.append(key)
        if local_moved and external_moved and l_val != e_val:
            diff.overlapping.append(key)
        diff.merged[key] = e_val if external_moved else l_val

    return diff


def suggest_action(
    fields: List[str],
    local_modified_at: Optional[datetime] = None,
    external_modified_at: Optional[datetime] = None,
) -> str:
    """Advisory text only: the more recently modified side is suggested."""
    listed = ", ".join(fields)
    if local_modified_at and external_modified_at:
        if external_modified_at > local_modified_at:
            return f"use_xero: Xero copy was modified more recently ({listed})"
        if local_modified_at > external_modified_at:
            return f"use_local: local copy was modified more recently ({listed})"
    return f"manual: review {listed} in both systems"


def detect(
    entity: str,
    entity_id: int,
    entity_name: str,
    local: Dict[str, Any],
    external: Dict[str, Any],
    base: Optional[Dict[str, Any]],
    *,
    external_id: Optional[str] = None,
    local_modified_at: Optional[datetime] = None,
    external_modified_at: Optional[datetime] = None,
    conflict_type: ConflictType = ConflictType.DATA_MISMATCH,
) -> Optional[ConflictDraft]:
    """Return a ConflictDraft when both sides changed the same field differently."""
    diff = three_way_diff(local, external, base)
    if not diff.has_conflict:
        return None
    return ConflictDraft(
        entity=entity,
        entity_id=entity_id,
        entity_name=entity_name,
        local_data=local,
        xero_data=external,
        base_data=base,
        fields=diff.overlapping,
        suggested_action=suggest_action(
            diff.overlapping, local_modified_at, external_modified_at
        ),
        conflict_type=conflict_type,
        external_id=external_id,
    )


class ConflictStore:
    """Persistence for SyncConflict rows."""

    def __init__(self, engine):
        self.engine = engine

    def create(self, draft: ConflictDraft, sync_log_id: Optional[int] = None) -> SyncConflict:
        conflict = SyncConflict(
            entity=draft.entity,
            entity_id=draft.entity_id,
            entity_name=draft.entity_name,
            external_id=draft.external_id,
            conflict_type=draft.conflict_type.value,
            local_data_json=json.dumps(draft.local_data, sort_keys=True),
            xero_data_json=json.dumps(draft.xero_data, sort_keys=True),
            base_data_json=(
                json.dumps(draft.base_data, sort_keys=True)
                if draft.base_data is not None else None
            ),
            fields_json=json.dumps(draft.fields),
            suggested_action=draft.suggested_action,
            status=ConflictStatus.PENDING.value,
            sync_log_id=sync_log_id,
        )
        with Session(self.engine) as s:
            s.add(conflict)
            s.commit()
            s.refresh(conflict)
        return conflict

    def get(self, conflict_id: int) -> Optional[SyncConflict]:
        with Session(self.engine) as s:
            return s.get(SyncConflict, conflict_id)

    def pending_entity_ids(self, entity: str) -> Set[int]:
        """Local ids of records that already wait on a decision."""
        with Session(self.engine) as s:
            rows = s.exec(
                select(SyncConflict.entity_id).where(
                    SyncConflict.entity == entity,
                    SyncConflict.status == ConflictStatus.PENDING.value,
                )
            ).all()
        return set(rows)

    def list_pending(self, limit: Optional[int] = None) -> List[SyncConflict]:
        with Session(self.engine) as s:
            query = (
                select(SyncConflict)
                .where(SyncConflict.status == ConflictStatus.PENDING.value)
                .order_by(SyncConflict.created_at.desc(), SyncConflict.id.desc())
            )
            if limit is not None:
                query = query.limit(limit)
            return list(s.exec(query).all())

    def count_pending(self) -> int:
        with Session(self.engine) as s:
            return s.exec(
                select(func.count())
                .select_from(SyncConflict)
                .where(SyncConflict.status == ConflictStatus.PENDING.value)
            ).one()
