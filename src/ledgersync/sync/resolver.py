"""
Applies a user's decision to a pending conflict.

    use_local  push the current local record to the ledger
    use_xero   overwrite the local record with the ledger's current copy, or
               the snapshot stored on the conflict when offline
    manual     apply nothing; the user fixed both sides by hand

In every case the conflict ends RESOLVED with who, when and any notes, and
the record becomes eligible for normal sync again. A failed push leaves the
conflict PENDING.
"""
import json
import logging
from typing import Optional

from sqlmodel import Session

from ledgersync.ledger.auth import NoConnectionError
from ledgersync.ledger.mappers import dump_extensions, fingerprint
from ledgersync.models.base import utcnow
from ledgersync.models.sync import ConflictStatus, Resolution, SyncConflict
from ledgersync.sync.conflicts import ConflictStore
from ledgersync.sync.errors import (
    ConflictAlreadyResolvedError,
    ConflictNotFoundError,
    UnsupportedDirectionError,
)
from ledgersync.sync.executor import SyncExecutor, get_mapper
from ledgersync.sync.locks import SyncLockRegistry, default_locks

logger = logging.getLogger(__name__)


class ConflictResolver:
    def __init__(self, engine, client=None, *, locks: Optional[SyncLockRegistry] = None):
        """
        Args:
            engine: SQLAlchemy engine.
            client: LedgerClient. Required for use_local; use_xero reads the
                ledger's current copy through it when present.
            locks: Lock registry shared with the executor.
        """
        self.engine = engine
        self.client = client
        self.locks = locks or default_locks
        self.store = ConflictStore(engine)

    async def resolve(
        self,
        conflict_id: int,
        resolution: Resolution,
        *,
        user_id: str,
        notes: Optional[str] = None,
    ) -> SyncConflict:
        """
        Resolve one conflict.

        Raises:
            ConflictNotFoundError: unknown conflict id.
            ConflictAlreadyResolvedError: conflict is not PENDING.
            RecordSyncError, LedgerError: use_local push failed; conflict stays PENDING.
        """
        resolution = Resolution(resolution)
        conflict = self.store.get(conflict_id)
        if conflict is None:
            raise ConflictNotFoundError(f"Conflict {conflict_id} not found")

        # Same lock as the executor: a sync of this entity type never sees a
        # half-applied resolution
        async with self.locks.hold(conflict.entity):
            conflict = self.store.get(conflict_id)
            if conflict.status != ConflictStatus.PENDING.value:
                raise ConflictAlreadyResolvedError(
                    f"Conflict {conflict_id} was already resolved "
                    f"({conflict.resolution}) by {conflict.resolved_by}"
                )

            if resolution == Resolution.USE_LOCAL:
                await self._use_local(conflict)
            elif resolution == Resolution.USE_XERO:
                await self._use_xero(conflict)

            resolved = self._mark_resolved(conflict_id, resolution, user_id, notes)

        logger.info(
            "Conflict %s on %s %s resolved with %s by %s",
            conflict_id, conflict.entity, conflict.entity_id, resolution.value, user_id,
        )
        return resolved

    async def _use_local(self, conflict: SyncConflict) -> None:
        if conflict.entity == "payments":
            raise UnsupportedDirectionError(
                "Ledger payments cannot be edited; resolve with use_xero or manual"
            )
        if self.client is None:
            raise NoConnectionError("A ledger connection is required to push the local copy")
        executor = SyncExecutor(self.client, self.engine, locks=self.locks)
        await executor.push_record(
            conflict.entity, conflict.entity_id, external_id=conflict.external_id
        )

    async def _current_ledger_values(self, conflict: SyncConflict):
        """The ledger copy as it is now; the stored snapshot may be stale."""
        if self.client is None or not conflict.external_id:
            return None
        executor = SyncExecutor(self.client, self.engine, locks=self.locks)
        return await executor.fetch_current(conflict.entity, conflict.external_id)

    async def _use_xero(self, conflict: SyncConflict) -> None:
        mapper = get_mapper(conflict.entity)
        values = await self._current_ledger_values(conflict)
        if values is None:
            values = mapper.from_snapshot(json.loads(conflict.xero_data_json))
        now = utcnow()
        with Session(self.engine) as s:
            record = s.get(mapper.model, conflict.entity_id)
            if record is None:
                raise LookupError(f"{conflict.entity} record {conflict.entity_id} no longer exists")
            mapper.apply(record, values)
            if "extensions" in values:
                record.extensions_json = dump_extensions(values["extensions"])
            if conflict.external_id and not record.external_id:
                record.external_id = conflict.external_id
            snapshot = mapper.record_snapshot(record)
            record.sync_snapshot_json = json.dumps(snapshot, sort_keys=True)
            record.sync_hash = fingerprint(snapshot)
            if record.last_synced_at is None or now > record.last_synced_at:
                record.last_synced_at = now
            record.updated_at = now
            s.add(record)
            s.commit()

    def _mark_resolved(
        self,
        conflict_id: int,
        resolution: Resolution,
        user_id: str,
        notes: Optional[str],
    ) -> SyncConflict:
        with Session(self.engine) as s:
            conflict = s.get(SyncConflict, conflict_id)
            conflict.status = ConflictStatus.RESOLVED.value
            conflict.resolution = resolution.value
            conflict.resolved_by = user_id
            conflict.resolved_at = utcnow()
            conflict.notes = notes
            s.add(conflict)
            s.commit()
            s.refresh(conflict)
        return conflict
