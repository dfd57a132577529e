"""Request and response bodies. JSON keys are camelCase for the web UI."""
import json
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ledgersync.models.sync import Resolution, SyncConflict, SyncLog
from ledgersync.sync.audit import SyncStats
from ledgersync.sync.executor import SyncResult
from ledgersync.sync.health import IntegrationHealth
from ledgersync.sync.orchestrator import BulkResult, EntityOutcome

Direction = Literal["to_xero", "from_xero", "bidirectional"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Requests ──────────────────────────────────────────────────────────────────

class EntitySyncRequest(CamelModel):
    bulk_sync: bool = False
    record_id: Optional[int] = None
    direction: Direction = "to_xero"


class BulkSyncRequest(CamelModel):
    types: List[str] = Field(min_length=1)
    direction: Direction = "bidirectional"
    stop_on_error: bool = False


class ImportRequest(CamelModel):
    entity: Literal["bills", "payments"]


class ResolveConflictRequest(CamelModel):
    conflict_id: int
    resolution: Resolution
    notes: Optional[str] = None


# ── Responses ─────────────────────────────────────────────────────────────────

class ConflictOut(CamelModel):
    id: int
    entity: str
    entity_id: int
    entity_name: str
    external_id: Optional[str]
    conflict_type: str
    local_data: Dict[str, Any]
    xero_data: Dict[str, Any]
    base_data: Optional[Dict[str, Any]]
    fields: List[str]
    suggested_action: str
    status: str
    created_at: datetime
    resolved_at: Optional[datetime]
    resolution: Optional[str]
    resolved_by: Optional[str]
    notes: Optional[str]

    @classmethod
    def from_row(cls, c: SyncConflict) -> "ConflictOut":
        return cls(
            id=c.id,
            entity=c.entity,
            entity_id=c.entity_id,
            entity_name=c.entity_name,
            external_id=c.external_id,
            conflict_type=c.conflict_type,
            local_data=json.loads(c.local_data_json),
            xero_data=json.loads(c.xero_data_json),
            base_data=json.loads(c.base_data_json) if c.base_data_json else None,
            fields=json.loads(c.fields_json),
            suggested_action=c.suggested_action,
            status=c.status,
            created_at=c.created_at,
            resolved_at=c.resolved_at,
            resolution=c.resolution,
            resolved_by=c.resolved_by,
            notes=c.notes,
        )


class RecordFailureOut(CamelModel):
    phase: str
    category: str
    error: str
    record_id: Optional[int] = None
    external_id: Optional[str] = None
    name: Optional[str] = None


class EntitySyncResponse(CamelModel):
    message: str
    status: str
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    log_ids: List[int] = []
    failures: List[RecordFailureOut] = []
    conflicts: List[ConflictOut] = []

    @classmethod
    def from_results(cls, results: List[SyncResult], conflicts: List[SyncConflict]) -> "EntitySyncResponse":
        statuses = [r.status.value for r in results]
        status = next((s for s in ("ERROR", "WARNING") if s in statuses), "SUCCESS")
        return cls(
            message="; ".join(r.message for r in results),
            status=status,
            processed=sum(r.processed for r in results),
            succeeded=sum(r.succeeded for r in results),
            failed=sum(r.failed for r in results),
            created=sum(r.created for r in results),
            updated=sum(r.updated for r in results),
            skipped=sum(r.skipped for r in results),
            log_ids=[r.log_id for r in results if r.log_id is not None],
            failures=[RecordFailureOut(**vars(f)) for r in results for f in r.failures],
            conflicts=[ConflictOut.from_row(c) for c in conflicts],
        )


class EntityOutcomeOut(CamelModel):
    entity_type: str
    status: str
    message: str
    processed: int
    succeeded: int
    failed: int
    conflicts: int
    log_id: Optional[int]
    error: Optional[str]

    @classmethod
    def from_outcome(cls, outcome: EntityOutcome) -> "EntityOutcomeOut":
        return cls(**vars(outcome))


class BulkSyncResponse(CamelModel):
    success: bool
    message: str
    total_conflicts: int
    duration_ms: int
    results: List[EntityOutcomeOut]

    @classmethod
    def from_bulk(cls, bulk: BulkResult) -> "BulkSyncResponse":
        return cls(
            success=bulk.success,
            message=bulk.message,
            total_conflicts=bulk.total_conflicts,
            duration_ms=bulk.duration_ms,
            results=[EntityOutcomeOut.from_outcome(o) for o in bulk.results],
        )


class EntityStatusOut(CamelModel):
    total: int
    synced: int
    unsynced: int
    sync_percentage: int


class SyncStatusResponse(CamelModel):
    entities: Dict[str, EntityStatusOut]
    pending_conflicts: int


class ResolveConflictResponse(CamelModel):
    message: str
    conflict: ConflictOut


class SyncLogOut(CamelModel):
    id: int
    timestamp: datetime
    user_id: str
    direction: str
    entity: str
    status: str
    records_processed: int
    records_succeeded: int
    records_failed: int
    message: str
    details: Optional[Dict[str, Any]]
    error_message: Optional[str]
    error_stack: Optional[str]
    duration_ms: int
    finished_at: Optional[datetime]
    retry_of: Optional[int]

    @classmethod
    def from_row(cls, log: SyncLog) -> "SyncLogOut":
        return cls(
            id=log.id,
            timestamp=log.timestamp,
            user_id=log.user_id,
            direction=log.direction,
            entity=log.entity,
            status=log.status,
            records_processed=log.records_processed,
            records_succeeded=log.records_succeeded,
            records_failed=log.records_failed,
            message=log.message,
            details=json.loads(log.details_json) if log.details_json else None,
            error_message=log.error_message,
            error_stack=log.error_stack,
            duration_ms=log.duration_ms,
            finished_at=log.finished_at,
            retry_of=log.retry_of,
        )


class SyncStatsOut(CamelModel):
    window_days: int
    total_syncs: int
    successful_syncs: int
    warning_syncs: int
    failed_syncs: int
    success_rate: float
    average_duration_ms: int
    last_sync: Optional[datetime]
    entity_stats: Dict[str, int]

    @classmethod
    def from_stats(cls, stats: SyncStats) -> "SyncStatsOut":
        return cls(**vars(stats))


class SyncLogPage(CamelModel):
    logs: List[SyncLogOut]
    total: int
    page: int
    limit: int
    total_pages: int
    stats: SyncStatsOut


class RetryResponse(CamelModel):
    message: str
    retry_of: int
    results: List[EntityOutcomeOut]


class HealthCheckOut(CamelModel):
    name: str
    status: str
    message: str
    details: Dict[str, Any]


class IntegrationHealthOut(CamelModel):
    status: str
    checked_at: datetime
    checks: List[HealthCheckOut]
    recent_failures: List[SyncLogOut]
    pending_conflicts: List[ConflictOut]

    @classmethod
    def from_health(cls, health: IntegrationHealth) -> "IntegrationHealthOut":
        return cls(
            status=health.status,
            checked_at=health.checked_at,
            checks=[HealthCheckOut(**vars(c)) for c in health.checks],
            recent_failures=[SyncLogOut.from_row(log) for log in health.recent_failures],
            pending_conflicts=[ConflictOut.from_row(c) for c in health.pending_conflicts],
        )
