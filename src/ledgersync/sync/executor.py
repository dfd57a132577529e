"""
SyncExecutor: one sync operation for one entity type in one direction.

Flow for sync(entity_type, direction):
  1. Take the entity-type lock (one run per entity type at a time)
  2. Create SyncLog (status=IN_PROGRESS)
  3. PULL phase: fetch ledger records changed since the watermark, then per
     record create / update / skip, or raise a conflict when both sides
     changed the same field
  4. PUSH phase: select local records never pushed or changed since their
     last sync, screen already-linked ones against the ledger's current copy,
     then save them in batches
  5. Finish SyncLog as SUCCESS / WARNING / ERROR and advance the watermark

Per-record problems (validation, missing dependency, ledger rejection) are
counted in records_failed and never stop the siblings. Systemic problems
(auth, network, ledger outage, database) abort the run: the log ends ERROR
with the message and stack, and the exception propagates.

Payments are pull-only here. A payment reaches the ledger through
push_payment(), one at a time, when the finance team records it.
"""
import json
import logging
import time
import traceback
from dataclasses import asdict, dataclass, field
from decimal import InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select

from ledgersync.config import get_settings
from ledgersync.ledger.errors import LedgerSystemicError, classify_error
from ledgersync.ledger.mappers import (
    MAPPERS,
    EntityMapper,
    dump_extensions,
    fingerprint,
)
from ledgersync.models.base import utcnow
from ledgersync.models.business import Bill, Client, Invoice, Payment, Vendor
from ledgersync.models.sync import (
    ConflictType,
    SyncDirection,
    SyncStatus,
    SyncWatermark,
)
from ledgersync.sync.audit import SyncAuditLog
from ledgersync.sync.conflicts import ConflictDraft, ConflictStore, detect, three_way_diff
from ledgersync.sync.errors import (
    RecordSyncError,
    UnknownEntityTypeError,
    UnsupportedDirectionError,
)
from ledgersync.sync.locks import SyncLockRegistry, default_locks

logger = logging.getLogger(__name__)

ENTITY_TYPES = ("clients", "vendors", "invoices", "bills", "payments")

# Contact types whose natural key (name / invoice number) may link an
# unsynced local record to a pulled ledger record
_TWIN_MATCHING = ("clients", "vendors", "invoices", "bills")

PAYMENTS_PUSH_NOTE = (
    "Payments are pulled only during bulk sync; "
    "each payment is pushed individually when recorded"
)


@dataclass
class SyncOptions:
    local_ids: Optional[List[int]] = None  # push scope; None = every candidate
    external_ids: Optional[List[str]] = None  # pull scope; None = watermark window
    full: bool = False  # ignore the pull watermark
    retry_of: Optional[int] = None  # SyncLog id this run retries


@dataclass
class RecordFailure:
    phase: str  # "pull" or "push"
    category: str  # ConflictType value
    error: str
    record_id: Optional[int] = None
    external_id: Optional[str] = None
    name: Optional[str] = None


@dataclass
class SyncResult:
    entity_type: str
    direction: SyncDirection
    status: SyncStatus = SyncStatus.IN_PROGRESS
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    held: int = 0  # records waiting on an earlier, unresolved conflict
    conflict_ids: List[int] = field(default_factory=list)
    failures: List[RecordFailure] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    message: str = ""
    log_id: Optional[int] = None
    duration_ms: int = 0
    error_message: Optional[str] = None

    @property
    def conflicts(self) -> int:
        return len(self.conflict_ids)

    def fail(self, phase: str, category: str, error: str, **ids) -> None:
        self.failed += 1
        self.failures.append(RecordFailure(phase=phase, category=category, error=error, **ids))

    def details(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "held": self.held,
            "conflict_ids": self.conflict_ids,
            "failures": [asdict(f) for f in self.failures],
            "notes": self.notes,
        }


def final_status(result: SyncResult) -> SyncStatus:
    """ERROR when every processed record failed, WARNING on any failure or conflict."""
    if result.processed and result.failed == result.processed:
        return SyncStatus.ERROR
    if result.failed or result.conflict_ids or result.held:
        return SyncStatus.WARNING
    return SyncStatus.SUCCESS


def summarize(result: SyncResult) -> str:
    parts = [
        f"{result.entity_type}: {result.succeeded} of {result.processed} records synced "
        f"({result.created} created, {result.updated} updated, {result.skipped} unchanged)"
    ]
    if result.failed:
        parts.append(f"{result.failed} failed")
    if result.conflict_ids:
        parts.append(f"{result.conflicts} conflicts flagged")
    if result.held:
        parts.append(f"{result.held} awaiting conflict resolution")
    parts.extend(result.notes)
    return ", ".join(parts)


def get_mapper(entity_type: str) -> EntityMapper:
    try:
        return MAPPERS[entity_type]
    except KeyError:
        raise UnknownEntityTypeError(entity_type) from None


class SyncExecutor:
    """Runs single entity-type syncs against the ledger."""

    def __init__(
        self,
        client,
        engine,
        *,
        locks: Optional[SyncLockRegistry] = None,
        batch_size: Optional[int] = None,
    ):
        """
        Args:
            client: LedgerClient instance (or AsyncMock in tests).
            engine: SQLAlchemy engine (SQLModel create_engine result).
            locks: Lock registry; defaults to the process-wide one.
            batch_size: Records per save request; defaults to settings.
        """
        self.client = client
        self.engine = engine
        self.locks = locks or default_locks
        self.batch_size = batch_size or get_settings().push_batch_size
        self.audit = SyncAuditLog(engine)
        self.conflicts = ConflictStore(engine)

    # ── Public API ────────────────────────────────────────────────────────────

    async def sync(
        self,
        entity_type: str,
        direction: SyncDirection,
        *,
        user_id: str,
        options: Optional[SyncOptions] = None,
    ) -> SyncResult:
        """
        Sync one entity type in one direction.

        Raises:
            UnknownEntityTypeError: entity_type is not syncable.
            UnsupportedDirectionError: bulk push of payments.
            LedgerSystemicError, OperationalError: after recording an ERROR log;
                the partial SyncResult rides along as `exc.sync_result`.
        """
        mapper = get_mapper(entity_type)
        direction = SyncDirection(direction)
        if entity_type == "payments" and direction == SyncDirection.PUSH:
            raise UnsupportedDirectionError(PAYMENTS_PUSH_NOTE)
        return await self._execute(mapper, direction, user_id, options or SyncOptions())

    async def push_payment(
        self, payment_id: int, *, user_id: str, retry_of: Optional[int] = None
    ) -> SyncResult:
        """
        Push one recorded payment to the ledger.

        Raises:
            LookupError: no such payment.
        """
        with Session(self.engine) as s:
            if s.get(Payment, payment_id) is None:
                raise LookupError(f"Payment {payment_id} not found")
        return await self._execute(
            MAPPERS["payments"],
            SyncDirection.PUSH,
            user_id,
            SyncOptions(local_ids=[payment_id], retry_of=retry_of),
        )

    async def push_record(self, entity_type: str, record_id: int, *, external_id: Optional[str] = None) -> None:
        """
        Push one record without conflict screening. The caller holds the lock.

        Used when a user has decided the local copy wins. external_id links a
        record that matched a ledger record only by natural key.

        Raises:
            LookupError: record does not exist.
            RecordSyncError: local validation, missing dependency or ledger rejection.
        """
        mapper = get_mapper(entity_type)
        with Session(self.engine) as s:
            record = s.get(mapper.model, record_id)
        if record is None:
            raise LookupError(f"{entity_type} record {record_id} not found")
        if external_id and not record.external_id:
            record.external_id = external_id

        errors = mapper.validate_local(record)
        if errors:
            raise RecordSyncError(ConflictType.VALIDATION_ERROR.value, "; ".join(errors))
        ref = self._push_ref(mapper, record)
        [outcome] = await self._save_external(mapper, [mapper.to_external(record, ref)])
        if not outcome.ok:
            raise RecordSyncError(ConflictType.VALIDATION_ERROR.value, "; ".join(outcome.errors))
        self._record_pushed(mapper, record, outcome.payload or {})

    async def fetch_current(self, entity_type: str, external_id: str) -> Optional[Dict[str, Any]]:
        """
        The ledger's current copy of one record as local field values.

        Returns None when the ledger no longer returns the record.

        Raises:
            RecordSyncError: the ledger copy could not be mapped.
        """
        mapper = get_mapper(entity_type)
        for payload in await self._list_external(mapper, ids=[external_id]):
            if payload.get(mapper.id_key) != external_id:
                continue
            try:
                return mapper.from_external(payload)
            except (ValueError, TypeError, InvalidOperation) as exc:
                raise RecordSyncError(ConflictType.VALIDATION_ERROR.value, str(exc)) from exc
        return None

    # ── Run wrapper ───────────────────────────────────────────────────────────

    async def _execute(
        self,
        mapper: EntityMapper,
        direction: SyncDirection,
        user_id: str,
        options: SyncOptions,
    ) -> SyncResult:
        async with self.locks.hold(mapper.entity_type):
            started = time.monotonic()
            started_at = utcnow()
            result = SyncResult(entity_type=mapper.entity_type, direction=direction)
            log = self.audit.start(
                user_id=user_id,
                direction=direction,
                entity=mapper.log_entity,
                message=f"Starting {direction.value.lower()} sync for {mapper.entity_type}",
                retry_of=options.retry_of,
            )
            result.log_id = log.id
            logger.info(
                "Sync %s %s started (log %s, user %s)",
                mapper.entity_type, direction.value, log.id, user_id,
            )

            try:
                if direction in (SyncDirection.PULL, SyncDirection.BOTH):
                    await self._pull(mapper, options, result)
                    if self._pull_completed_cleanly(result, options):
                        self._advance_watermark(mapper.entity_type, started_at)
                if direction in (SyncDirection.PUSH, SyncDirection.BOTH):
                    if mapper.entity_type == "payments" and options.local_ids is None:
                        result.notes.append(PAYMENTS_PUSH_NOTE)
                    else:
                        await self._push(mapper, options, result)

            except Exception as exc:
                info = classify_error(exc)
                result.status = SyncStatus.ERROR
                result.error_message = str(exc)
                result.message = f"{mapper.entity_type} sync failed: {info.user_message}"
                result.duration_ms = int((time.monotonic() - started) * 1000)
                self.audit.finish(
                    log,
                    status=SyncStatus.ERROR,
                    message=result.message,
                    processed=result.processed,
                    succeeded=result.succeeded,
                    failed=result.failed,
                    details={**result.details(), "error_code": info.code},
                    error_message=str(exc),
                    error_stack=traceback.format_exc(),
                    duration_ms=result.duration_ms,
                )
                logger.error(
                    "Sync %s %s aborted after %d records: %s",
                    mapper.entity_type, direction.value, result.processed, exc,
                )
                # lets callers that isolate failures report the ERROR log entry
                exc.sync_result = result
                raise

            result.status = final_status(result)
            result.message = summarize(result)
            result.duration_ms = int((time.monotonic() - started) * 1000)
            self.audit.finish(
                log,
                status=result.status,
                message=result.message,
                processed=result.processed,
                succeeded=result.succeeded,
                failed=result.failed,
                details=result.details(),
                duration_ms=result.duration_ms,
            )
            logger.info("Sync %s finished %s: %s", mapper.entity_type, result.status.value, result.message)
            return result

    # ── Pull ──────────────────────────────────────────────────────────────────

    async def _pull(self, mapper: EntityMapper, options: SyncOptions, result: SyncResult) -> None:
        since = None
        if not options.full and options.external_ids is None:
            since = self._watermark(mapper.entity_type)

        payloads = await self._list_external(mapper, modified_since=since, ids=options.external_ids)
        logger.info("Pulled %d %s from ledger (since %s)", len(payloads), mapper.entity_type, since)
        pending = self.conflicts.pending_entity_ids(mapper.entity_type)

        for payload in payloads:
            external_id = payload.get(mapper.id_key)
            try:
                values = mapper.from_external(payload)
            except (ValueError, TypeError, InvalidOperation) as exc:
                result.processed += 1
                result.fail("pull", ConflictType.VALIDATION_ERROR.value, str(exc), external_id=external_id)
                continue

            if not self._belongs(mapper, values):
                continue
            result.processed += 1

            try:
                draft = self._apply_pulled(mapper, values, result, pending)
            except (LedgerSystemicError, OperationalError):
                raise
            except RecordSyncError as exc:
                logger.warning("Pull %s %s failed: %s", mapper.entity_type, external_id, exc)
                result.fail(
                    "pull", exc.category, str(exc),
                    external_id=external_id, name=mapper.display_name(values),
                )
                continue
            except Exception as exc:
                logger.exception("Pull %s %s failed unexpectedly", mapper.entity_type, external_id)
                result.fail(
                    "pull", ConflictType.VALIDATION_ERROR.value, str(exc),
                    external_id=external_id, name=mapper.display_name(values),
                )
                continue

            if draft is not None:
                self._raise_conflict(draft, result)

    def _apply_pulled(
        self,
        mapper: EntityMapper,
        values: Dict[str, Any],
        result: SyncResult,
        pending,
    ) -> Optional[ConflictDraft]:
        """Create, update or skip one pulled record. Returns a draft on conflict."""
        errors = mapper.validate_external(values)
        if errors:
            raise RecordSyncError(ConflictType.VALIDATION_ERROR.value, "; ".join(errors))

        external_id = values["external_id"]
        ext_snap = mapper.snapshot(values)
        now = utcnow()
        model = mapper.model

        with Session(self.engine) as s:
            refs = self._resolve_pull_refs(s, mapper, values)
            record = s.exec(select(model).where(model.external_id == external_id)).first()

            if record is None:
                twin = self._natural_twin(s, mapper, values, refs)
                if twin is not None:
                    if twin.id in pending:
                        result.held += 1
                        return None
                    local_snap = mapper.record_snapshot(twin)
                    if local_snap != ext_snap:
                        return detect(
                            mapper.entity_type,
                            twin.id,
                            mapper.display_name(values),
                            local_snap,
                            ext_snap,
                            None,
                            external_id=external_id,
                            local_modified_at=twin.updated_at,
                            external_modified_at=values.get("modified_at"),
                            conflict_type=ConflictType.DUPLICATE_DETECTED,
                        )
                    # Same record entered on both sides: link it
                    self._mark_synced(twin, ext_snap, values, now, external_id)
                    s.add(twin)
                    s.commit()
                    result.updated += 1
                    result.succeeded += 1
                    return None

                record = model(**self._create_kwargs(mapper, values), **refs)
                mapper.apply(record, values)
                self._mark_synced(record, ext_snap, values, now, external_id)
                s.add(record)
                s.commit()
                result.created += 1
                result.succeeded += 1
                return None

            if record.id in pending:
                result.held += 1
                return None

            base = json.loads(record.sync_snapshot_json) if record.sync_snapshot_json else None
            local_snap = mapper.record_snapshot(record)
            diff = three_way_diff(local_snap, ext_snap, base)
            if diff.has_conflict:
                return detect(
                    mapper.entity_type,
                    record.id,
                    mapper.display_name(values),
                    local_snap,
                    ext_snap,
                    base,
                    external_id=external_id,
                    local_modified_at=record.updated_at,
                    external_modified_at=values.get("modified_at"),
                )

            changed_refs = {k: v for k, v in refs.items() if getattr(record, k) != v}
            if not diff.external_changed and not changed_refs:
                result.skipped += 1
                result.succeeded += 1
                return None

            # Only the ledger-side changes are applied; local-only edits stay
            # and go out on the next push
            mapper.apply(record, {f: values[f] for f in diff.external_changed})
            for key, value in changed_refs.items():
                setattr(record, key, value)
            record.updated_at = now
            self._mark_synced(record, ext_snap, values, now, external_id)
            s.add(record)
            s.commit()
            result.updated += 1
            result.succeeded += 1
            return None

    def _belongs(self, mapper: EntityMapper, values: Dict[str, Any]) -> bool:
        """Decide whether a pulled ledger record is handled by this entity type."""
        if mapper.entity_type in ("invoices", "bills"):
            invoice_type = values.get("invoice_type")
            return invoice_type in (None, mapper.invoice_type)
        if mapper.entity_type not in ("clients", "vendors"):
            return True

        external_id = values.get("external_id")
        with Session(self.engine) as s:
            as_client = s.exec(select(Client.id).where(Client.external_id == external_id)).first()
            as_vendor = s.exec(select(Vendor.id).where(Vendor.external_id == external_id)).first()
        if as_client is not None or as_vendor is not None:
            return (as_client is not None) == (mapper.entity_type == "clients")
        supplier_only = values.get("is_supplier") and not values.get("is_customer")
        return bool(supplier_only) == (mapper.entity_type == "vendors")

    def _resolve_pull_refs(self, s: Session, mapper: EntityMapper, values: Dict[str, Any]) -> Dict[str, Any]:
        """Map the ledger reference on a pulled record to a local foreign key."""
        ref = values.get("ref_external_id")
        if mapper.entity_type == "invoices":
            client = s.exec(select(Client).where(Client.external_id == ref)).first()
            if client is None:
                raise RecordSyncError(
                    ConflictType.MISSING_DEPENDENCY.value,
                    f"Client for contact {ref} not found - sync contacts first",
                )
            return {"client_id": client.id}
        if mapper.entity_type == "bills":
            vendor = s.exec(select(Vendor).where(Vendor.external_id == ref)).first()
            if vendor is None:
                raise RecordSyncError(
                    ConflictType.MISSING_DEPENDENCY.value,
                    f"Vendor for contact {ref} not found - sync contacts first",
                )
            return {"vendor_id": vendor.id}
        if mapper.entity_type == "payments":
            target_model = Bill if values.get("is_bill_payment") else Invoice
            target = s.exec(select(target_model).where(target_model.external_id == ref)).first()
            if target is None and values.get("ref_number"):
                target = s.exec(
                    select(target_model).where(target_model.invoice_number == values["ref_number"])
                ).first()
            if target is None:
                kind = "Bill" if target_model is Bill else "Invoice"
                raise RecordSyncError(
                    ConflictType.MISSING_DEPENDENCY.value,
                    f"{kind} {values.get('ref_number') or ref} not found - sync invoices first",
                )
            if target_model is Bill:
                return {"bill_id": target.id, "invoice_id": None}
            return {"invoice_id": target.id, "bill_id": None}
        return {}

    def _natural_twin(self, s: Session, mapper: EntityMapper, values: Dict[str, Any], refs: Dict[str, Any]):
        """An unsynced local record with the same natural key, if any."""
        if mapper.entity_type not in _TWIN_MATCHING:
            return None
        key_value = values.get(mapper.natural_key)
        if not key_value:
            return None
        model = mapper.model
        query = select(model).where(
            getattr(model, mapper.natural_key) == key_value,
            model.external_id == None,  # noqa: E711
        )
        if mapper.reference_field and mapper.reference_field in refs:
            query = query.where(getattr(model, mapper.reference_field) == refs[mapper.reference_field])
        return s.exec(query.order_by(model.id)).first()

    @staticmethod
    def _create_kwargs(mapper: EntityMapper, values: Dict[str, Any]) -> Dict[str, Any]:
        return {f: values[f] for f in mapper.fields if f != "line_items" and f in values}

    # ── Push ──────────────────────────────────────────────────────────────────

    async def _push(self, mapper: EntityMapper, options: SyncOptions, result: SyncResult) -> None:
        pending = self.conflicts.pending_entity_ids(mapper.entity_type)
        ready: List[Tuple[Any, Optional[str]]] = []

        for record in self._push_candidates(mapper, options.local_ids):
            result.processed += 1
            name = mapper.display_name(mapper.local_values(record))
            if record.id in pending:
                result.held += 1
                continue
            errors = mapper.validate_local(record)
            if errors:
                logger.warning("Push %s %s rejected locally: %s", mapper.entity_type, record.id, errors)
                result.fail(
                    "push", ConflictType.VALIDATION_ERROR.value, "; ".join(errors),
                    record_id=record.id, external_id=record.external_id, name=name,
                )
                continue
            try:
                ref = self._push_ref(mapper, record)
            except RecordSyncError as exc:
                result.fail(
                    "push", exc.category, str(exc),
                    record_id=record.id, external_id=record.external_id, name=name,
                )
                continue
            ready.append((record, ref))

        for start in range(0, len(ready), self.batch_size):
            batch = await self._screen_for_conflicts(mapper, ready[start:start + self.batch_size], result)
            if not batch:
                continue
            payloads = [mapper.to_external(record, ref) for record, ref in batch]
            outcomes = await self._save_external(mapper, payloads)

            for (record, _), outcome in zip(batch, outcomes):
                if outcome.ok:
                    created = self._record_pushed(mapper, record, outcome.payload or {})
                    result.succeeded += 1
                    if created:
                        result.created += 1
                    else:
                        result.updated += 1
                else:
                    logger.warning(
                        "Ledger rejected %s %s: %s", mapper.entity_type, record.id, outcome.errors
                    )
                    result.fail(
                        "push", ConflictType.VALIDATION_ERROR.value, "; ".join(outcome.errors),
                        record_id=record.id, external_id=record.external_id,
                        name=mapper.display_name(mapper.local_values(record)),
                    )

    def _push_candidates(self, mapper: EntityMapper, local_ids: Optional[List[int]]) -> List[Any]:
        """Records never pushed, or changed locally since their last sync."""
        model = mapper.model
        query = select(model)
        if hasattr(model, "is_active"):
            query = query.where(model.is_active == True)  # noqa: E712
        if local_ids is not None:
            if not local_ids:
                return []
            query = query.where(model.id.in_(local_ids))
        with Session(self.engine) as s:
            records = s.exec(query.order_by(model.id)).all()

        candidates = []
        for record in records:
            if record.external_id is None:
                candidates.append(record)
            elif mapper.entity_type != "payments":
                # ledger payments cannot be edited, only created
                if fingerprint(mapper.record_snapshot(record)) != record.sync_hash:
                    candidates.append(record)
        return candidates

    def _push_ref(self, mapper: EntityMapper, record) -> Optional[str]:
        """Ledger id of the record this one depends on; it must already be pushed."""
        with Session(self.engine) as s:
            if mapper.entity_type == "invoices":
                dep, label = s.get(Client, record.client_id), "Client"
            elif mapper.entity_type == "bills":
                dep, label = s.get(Vendor, record.vendor_id), "Vendor"
            elif mapper.entity_type == "payments":
                if record.bill_id is not None:
                    dep, label = s.get(Bill, record.bill_id), "Bill"
                else:
                    dep, label = s.get(Invoice, record.invoice_id), "Invoice"
            else:
                return None
        if dep is None or not dep.external_id:
            raise RecordSyncError(
                ConflictType.MISSING_DEPENDENCY.value,
                f"{label} {getattr(dep, 'id', '?')} has not been synced to the ledger yet",
            )
        return dep.external_id

    async def _screen_for_conflicts(
        self,
        mapper: EntityMapper,
        batch: List[Tuple[Any, Optional[str]]],
        result: SyncResult,
    ) -> List[Tuple[Any, Optional[str]]]:
        """
        Compare already-linked records with the ledger's current copy.

        One list call per batch. Records whose ledger copy changed the same
        fields become conflicts and are dropped from the batch; ledger-only
        changes are merged into the local record before it is pushed.
        """
        linked = [record.external_id for record, _ in batch if record.external_id]
        if not linked:
            return batch

        current = {
            p.get(mapper.id_key): p
            for p in await self._list_external(mapper, ids=linked)
        }
        kept = []
        for record, ref in batch:
            payload = current.get(record.external_id) if record.external_id else None
            if payload is None:
                kept.append((record, ref))
                continue

            try:
                values = mapper.from_external(payload)
            except (ValueError, TypeError, InvalidOperation) as exc:
                logger.warning(
                    "Ledger copy of %s %s unreadable: %s", mapper.entity_type, record.id, exc
                )
                result.fail(
                    "push", ConflictType.VALIDATION_ERROR.value,
                    f"Ledger copy could not be read: {exc}",
                    record_id=record.id, external_id=record.external_id,
                    name=mapper.display_name(mapper.local_values(record)),
                )
                continue
            base = json.loads(record.sync_snapshot_json) if record.sync_snapshot_json else None
            local_snap = mapper.record_snapshot(record)
            ext_snap = mapper.snapshot(values)
            diff = three_way_diff(local_snap, ext_snap, base)
            if diff.has_conflict:
                self._raise_conflict(
                    detect(
                        mapper.entity_type,
                        record.id,
                        mapper.display_name(mapper.local_values(record)),
                        local_snap,
                        ext_snap,
                        base,
                        external_id=record.external_id,
                        local_modified_at=record.updated_at,
                        external_modified_at=values.get("modified_at"),
                    ),
                    result,
                )
                continue
            if diff.external_changed:
                record = self._merge_ledger_changes(mapper, record, values, diff.external_changed)
            kept.append((record, ref))
        return kept

    def _merge_ledger_changes(self, mapper: EntityMapper, record, values: Dict[str, Any], fields: List[str]):
        with Session(self.engine) as s:
            db_record = s.get(mapper.model, record.id)
            mapper.apply(db_record, {f: values[f] for f in fields})
            db_record.extensions_json = dump_extensions(values.get("extensions") or {})
            s.add(db_record)
            s.commit()
            s.refresh(db_record)
        return db_record

    def _record_pushed(self, mapper: EntityMapper, record, payload: Dict[str, Any]) -> bool:
        """Store sync metadata after a successful save. Returns True if newly created."""
        with Session(self.engine) as s:
            db_record = s.get(mapper.model, record.id)
            created = db_record.external_id is None
            external_id = payload.get(mapper.id_key) or record.external_id
            values = {}
            if payload:
                try:
                    values = mapper.from_external(payload)
                except (ValueError, TypeError, InvalidOperation) as exc:
                    # the save went through; link it so the next push updates
                    # instead of creating a second copy
                    logger.warning(
                        "Saved %s %s but could not read the ledger reply: %s",
                        mapper.entity_type, record.id, exc,
                    )
            self._mark_synced(
                db_record, mapper.record_snapshot(db_record), values, utcnow(), external_id
            )
            s.add(db_record)
            s.commit()
        return created

    # ── Shared helpers ────────────────────────────────────────────────────────

    @staticmethod
    def _mark_synced(record, snapshot: Dict[str, Any], values: Dict[str, Any], now, external_id: str) -> None:
        record.external_id = external_id
        record.sync_snapshot_json = json.dumps(snapshot, sort_keys=True)
        record.sync_hash = fingerprint(snapshot)
        if "extensions" in values:
            record.extensions_json = dump_extensions(values["extensions"])
        # never move backwards
        if record.last_synced_at is None or now > record.last_synced_at:
            record.last_synced_at = now

    def _raise_conflict(self, draft: ConflictDraft, result: SyncResult) -> None:
        conflict = self.conflicts.create(draft, sync_log_id=result.log_id)
        result.conflict_ids.append(conflict.id)
        logger.warning(
            "Conflict %s on %s %s (%s): %s",
            conflict.id, draft.entity, draft.entity_id, draft.conflict_type.value,
            ", ".join(draft.fields),
        )

    @staticmethod
    def _pull_completed_cleanly(result: SyncResult, options: SyncOptions) -> bool:
        if options.external_ids is not None:
            return False
        # held records were not applied; the next pull must see them again
        if result.held:
            return False
        return not any(f.phase == "pull" for f in result.failures)

    def _watermark(self, entity_type: str):
        with Session(self.engine) as s:
            mark = s.exec(select(SyncWatermark).where(SyncWatermark.entity_type == entity_type)).first()
        return mark.last_pulled_at if mark else None

    def _advance_watermark(self, entity_type: str, pulled_at) -> None:
        with Session(self.engine) as s:
            mark = s.exec(select(SyncWatermark).where(SyncWatermark.entity_type == entity_type)).first()
            if mark is None:
                mark = SyncWatermark(entity_type=entity_type, last_pulled_at=pulled_at)
            elif pulled_at > mark.last_pulled_at:
                mark.last_pulled_at = pulled_at
            mark.updated_at = utcnow()
            s.add(mark)
            s.commit()

    async def _list_external(self, mapper: EntityMapper, **kwargs) -> List[Dict[str, Any]]:
        if mapper.entity_type in ("clients", "vendors"):
            return await self.client.list_contacts(**kwargs)
        if mapper.entity_type in ("invoices", "bills"):
            return await self.client.list_invoices(mapper.invoice_type, **kwargs)
        return await self.client.list_payments(**kwargs)

    async def _save_external(self, mapper: EntityMapper, payloads: List[Dict[str, Any]]):
        if mapper.entity_type in ("clients", "vendors"):
            return await self.client.save_contacts(payloads)
        if mapper.entity_type in ("invoices", "bills"):
            return await self.client.save_invoices(payloads)
        return await self.client.create_payments(payloads)
