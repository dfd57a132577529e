"""Sync trigger, status and conflict routes."""
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session

from ledgersync.api.deps import (
    RESOLVE_ROLES,
    STATUS_ROLES,
    SYNC_ROLES,
    CurrentUser,
    get_db,
    get_ledger_client,
    get_optional_ledger_client,
    require_roles,
)
from ledgersync.api.schemas import (
    BulkSyncRequest,
    BulkSyncResponse,
    ConflictOut,
    EntitySyncRequest,
    EntitySyncResponse,
    ImportRequest,
    ResolveConflictRequest,
    ResolveConflictResponse,
    SyncStatusResponse,
)
from ledgersync.ledger.auth import LedgerAuth
from ledgersync.models.sync import SyncDirection
from ledgersync.sync.conflicts import ConflictStore
from ledgersync.sync.errors import UnknownEntityTypeError
from ledgersync.sync.executor import SyncExecutor, SyncOptions, SyncResult, get_mapper
from ledgersync.sync.health import get_sync_status
from ledgersync.sync.orchestrator import BulkSyncOrchestrator, plan_entity_types
from ledgersync.sync.resolver import ConflictResolver

logger = logging.getLogger(__name__)

router = APIRouter()

DIRECTIONS = {
    "to_xero": SyncDirection.PUSH,
    "from_xero": SyncDirection.PULL,
    "bidirectional": SyncDirection.BOTH,
}


def _conflicts_of(engine, results: List[SyncResult]):
    store = ConflictStore(engine)
    return [store.get(cid) for r in results for cid in r.conflict_ids]


# Fixed paths first; /{entity_type} would otherwise swallow them


@router.get("/bulk", response_model=SyncStatusResponse)
def bulk_status(
    user: CurrentUser = Depends(require_roles(*STATUS_ROLES)),
    engine=Depends(get_db),
):
    """Per entity type: total, synced, unsynced and sync percentage."""
    return get_sync_status(engine)


@router.post("/bulk", response_model=BulkSyncResponse)
async def bulk_sync(
    request: BulkSyncRequest,
    user: CurrentUser = Depends(require_roles(*SYNC_ROLES)),
    engine=Depends(get_db),
    client=Depends(get_ledger_client),
):
    """Sync several entity types in dependency order."""
    orchestrator = BulkSyncOrchestrator(SyncExecutor(client, engine))
    bulk = await orchestrator.sync_all(
        request.types,
        DIRECTIONS[request.direction],
        user_id=user.id,
        stop_on_error=request.stop_on_error,
    )
    LedgerAuth(engine).mark_synced()
    return BulkSyncResponse.from_bulk(bulk)


@router.post("/import-from-xero", response_model=EntitySyncResponse)
async def import_from_xero(
    request: ImportRequest,
    user: CurrentUser = Depends(require_roles(*SYNC_ROLES)),
    engine=Depends(get_db),
    client=Depends(get_ledger_client),
):
    """Pull every bill or payment from the ledger, ignoring the watermark."""
    result = await SyncExecutor(client, engine).sync(
        request.entity, SyncDirection.PULL, user_id=user.id, options=SyncOptions(full=True)
    )
    LedgerAuth(engine).mark_synced()
    return EntitySyncResponse.from_results([result], _conflicts_of(engine, [result]))


@router.get("/conflicts", response_model=List[ConflictOut])
def list_conflicts(
    user: CurrentUser = Depends(require_roles(*RESOLVE_ROLES)),
    engine=Depends(get_db),
):
    """Pending conflicts, newest first."""
    return [ConflictOut.from_row(c) for c in ConflictStore(engine).list_pending()]


@router.post("/conflicts", response_model=ResolveConflictResponse)
async def resolve_conflict(
    request: ResolveConflictRequest,
    user: CurrentUser = Depends(require_roles(*RESOLVE_ROLES)),
    engine=Depends(get_db),
    client=Depends(get_optional_ledger_client),
):
    conflict = await ConflictResolver(engine, client).resolve(
        request.conflict_id, request.resolution, user_id=user.id, notes=request.notes
    )
    return ResolveConflictResponse(
        message=f"Conflict resolved using {request.resolution.value}",
        conflict=ConflictOut.from_row(conflict),
    )


@router.post("/payments/{payment_id}/push", response_model=EntitySyncResponse)
async def push_payment(
    payment_id: int,
    user: CurrentUser = Depends(require_roles(*SYNC_ROLES)),
    engine=Depends(get_db),
    client=Depends(get_ledger_client),
):
    """Send one recorded payment to the ledger."""
    result = await SyncExecutor(client, engine).push_payment(payment_id, user_id=user.id)
    return EntitySyncResponse.from_results([result], _conflicts_of(engine, [result]))


@router.post("/{entity_type}", response_model=EntitySyncResponse)
async def sync_entity(
    entity_type: str,
    request: EntitySyncRequest,
    user: CurrentUser = Depends(require_roles(*SYNC_ROLES)),
    engine=Depends(get_db),
    client=Depends(get_ledger_client),
):
    """
    Sync one entity type ("contacts" covers clients and vendors).

    bulkSync=true syncs every candidate record; recordId limits the run to
    one local record.
    """
    types, unknown = plan_entity_types([entity_type])
    if unknown:
        raise UnknownEntityTypeError(entity_type)
    if not request.bulk_sync and request.record_id is None:
        raise HTTPException(status_code=400, detail="recordId or bulkSync flag required")
    if request.record_id is not None and len(types) > 1:
        raise HTTPException(status_code=400, detail="recordId needs a single entity type")

    direction = DIRECTIONS[request.direction]
    executor = SyncExecutor(client, engine)
    results = []
    for name in types:
        if request.record_id is not None and name == "payments" and direction == SyncDirection.PUSH:
            results.append(await executor.push_payment(request.record_id, user_id=user.id))
            continue
        options = SyncOptions()
        if request.record_id is not None:
            options = _record_scope(engine, name, request.record_id)
        results.append(await executor.sync(name, direction, user_id=user.id, options=options))

    LedgerAuth(engine).mark_synced()
    return EntitySyncResponse.from_results(results, _conflicts_of(engine, results))


def _record_scope(engine, entity_type: str, record_id: int) -> SyncOptions:
    mapper = get_mapper(entity_type)
    with Session(engine) as s:
        record = s.get(mapper.model, record_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"{entity_type} record {record_id} not found")
    return SyncOptions(
        local_ids=[record_id],
        external_ids=[record.external_id] if record.external_id else [],
    )
