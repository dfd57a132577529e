"""Sync audit trail: paginated history with aggregate stats, and retries."""
import math
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from ledgersync.api.deps import (
    STATUS_ROLES,
    SYNC_ROLES,
    CurrentUser,
    get_db,
    get_ledger_client,
    require_roles,
)
from ledgersync.api.schemas import (
    EntityOutcomeOut,
    RetryResponse,
    SyncLogOut,
    SyncLogPage,
    SyncStatsOut,
)
from ledgersync.config import get_settings
from ledgersync.models.sync import SyncDirection, SyncEntity, SyncStatus
from ledgersync.sync.audit import MAX_PAGE_SIZE, LogFilters, SyncAuditLog
from ledgersync.sync.executor import SyncExecutor
from ledgersync.sync.orchestrator import EntityOutcome
from ledgersync.sync.retry import retry_request_for, run_retry

router = APIRouter()


@router.get("", response_model=SyncLogPage)
def list_sync_logs(
    status: Optional[SyncStatus] = None,
    entity: Optional[SyncEntity] = None,
    direction: Optional[SyncDirection] = None,
    user_id: Optional[str] = Query(default=None, alias="userId"),
    date_from: Optional[datetime] = Query(default=None, alias="dateFrom"),
    date_to: Optional[datetime] = Query(default=None, alias="dateTo"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=MAX_PAGE_SIZE),
    user: CurrentUser = Depends(require_roles(*STATUS_ROLES)),
    engine=Depends(get_db),
):
    """Newest first, plus success/failure stats over the trailing window."""
    audit = SyncAuditLog(engine)
    filters = LogFilters(
        status=status,
        entity=entity,
        direction=direction,
        user_id=user_id,
        date_from=date_from,
        date_to=date_to,
    )
    logs, total = audit.list_logs(filters, page=page, limit=limit)
    stats = audit.stats(days=get_settings().stats_window_days)
    return SyncLogPage(
        logs=[SyncLogOut.from_row(log) for log in logs],
        total=total,
        page=page,
        limit=limit,
        total_pages=math.ceil(total / limit) if total else 0,
        stats=SyncStatsOut.from_stats(stats),
    )


@router.post("/{log_id}/retry", response_model=RetryResponse)
async def retry_sync_log(
    log_id: int,
    user: CurrentUser = Depends(require_roles(*SYNC_ROLES)),
    engine=Depends(get_db),
    client=Depends(get_ledger_client),
):
    """Re-run the failed part of a finished sync; appends new log entries."""
    request = retry_request_for(SyncAuditLog(engine).get(log_id))
    results = await run_retry(SyncExecutor(client, engine), request, user_id=user.id)
    scope = "failed records" if request.scoped else "whole entity type"
    return RetryResponse(
        message=f"Retried {request.entity_type} ({scope}) from sync log {log_id}",
        retry_of=log_id,
        results=[EntityOutcomeOut.from_outcome(EntityOutcome.from_result(r)) for r in results],
    )
