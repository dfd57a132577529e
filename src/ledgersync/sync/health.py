"""
Read-only health and status aggregation for the integration dashboard.

Levels, worst wins:
    critical  database unreachable, repeated sync errors in the window, or
              the most recent sync ended in ERROR
    warning   any sync error or pending conflict, or a ledger token that is
              missing, expired or about to expire
    healthy   everything else
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, text
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from ledgersync.config import get_settings
from ledgersync.ledger.mappers import MAPPERS
from ledgersync.models.base import utcnow
from ledgersync.models.sync import SyncConflict, SyncLog, SyncStatus
from ledgersync.sync.audit import SyncAuditLog
from ledgersync.sync.conflicts import ConflictStore

logger = logging.getLogger(__name__)

HEALTHY = "healthy"
WARNING = "warning"
CRITICAL = "critical"
_RANK = {HEALTHY: 0, WARNING: 1, CRITICAL: 2}


@dataclass
class HealthCheck:
    name: str
    status: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class IntegrationHealth:
    status: str
    checked_at: datetime
    checks: List[HealthCheck] = field(default_factory=list)
    recent_failures: List[SyncLog] = field(default_factory=list)
    pending_conflicts: List[SyncConflict] = field(default_factory=list)


def worst(levels) -> str:
    return max(levels, key=_RANK.__getitem__, default=HEALTHY)


def get_integration_health(engine, auth, now: Optional[datetime] = None) -> IntegrationHealth:
    """Snapshot of database, ledger connection and sync activity."""
    now = now or utcnow()
    database = _check_database(engine)
    if database.status == CRITICAL:
        return IntegrationHealth(status=CRITICAL, checked_at=now, checks=[database])

    checks = [database, _check_connection(auth, now), _check_sync_activity(engine, now)]
    report = IntegrationHealth(
        status=worst(c.status for c in checks),
        checked_at=now,
        checks=checks,
        recent_failures=SyncAuditLog(engine).recent_failures(limit=5),
        pending_conflicts=ConflictStore(engine).list_pending(limit=5),
    )
    logger.debug("Integration health: %s", report.status)
    return report


def _check_database(engine) -> HealthCheck:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        with Session(engine) as s:
            log_count = s.exec(select(func.count()).select_from(SyncLog)).one()
    except SQLAlchemyError as exc:
        logger.error("Health check: database unreachable: %s", exc)
        return HealthCheck("database", CRITICAL, f"Database unreachable: {exc}")
    return HealthCheck("database", HEALTHY, "Database reachable", {"sync_log_entries": log_count})


def _check_connection(auth, now: datetime) -> HealthCheck:
    health = auth.connection_health(now)
    details = {
        "tenant_name": health.tenant_name,
        "expires_in_minutes": health.expires_in_minutes,
        "needs_refresh": health.needs_refresh,
        "needs_reconnect": health.needs_reconnect,
    }
    if health.expires_in_minutes is None:
        return HealthCheck("xero_connection", WARNING, "Xero is not connected", details)
    if health.needs_reconnect:
        return HealthCheck(
            "xero_connection", WARNING, "Xero access token has expired; reconnect required", details
        )
    if health.needs_refresh:
        return HealthCheck(
            "xero_connection",
            WARNING,
            f"Xero access token expires in {health.expires_in_minutes} minutes",
            details,
        )
    return HealthCheck("xero_connection", HEALTHY, f"Connected to {health.tenant_name}", details)


def _check_sync_activity(engine, now: datetime) -> HealthCheck:
    settings = get_settings()
    stats = SyncAuditLog(engine).stats(days=settings.stats_window_days, now=now)
    pending = ConflictStore(engine).count_pending()
    with Session(engine) as s:
        latest = s.exec(
            select(SyncLog)
            .where(SyncLog.status != SyncStatus.IN_PROGRESS.value)
            .order_by(SyncLog.timestamp.desc(), SyncLog.id.desc())
        ).first()

    details = {
        "window_days": stats.window_days,
        "total_syncs": stats.total_syncs,
        "failed_syncs": stats.failed_syncs,
        "success_rate": stats.success_rate,
        "pending_conflicts": pending,
        "last_sync": latest.timestamp.isoformat() if latest else None,
        "last_status": latest.status if latest else None,
    }
    if latest is not None and latest.status == SyncStatus.ERROR.value:
        return HealthCheck("sync_activity", CRITICAL, f"Latest sync failed: {latest.message}", details)
    if stats.failed_syncs >= settings.health_failure_threshold:
        return HealthCheck(
            "sync_activity",
            CRITICAL,
            f"{stats.failed_syncs} failed syncs in the last {stats.window_days} days",
            details,
        )
    if stats.failed_syncs or pending:
        return HealthCheck(
            "sync_activity",
            WARNING,
            f"{stats.failed_syncs} failed syncs, {pending} pending conflicts",
            details,
        )
    return HealthCheck("sync_activity", HEALTHY, "No recent sync problems", details)


def get_sync_status(engine) -> Dict[str, Any]:
    """Per entity type: how many local records are linked to the ledger."""
    entities = {}
    with Session(engine) as s:
        for entity_type, mapper in MAPPERS.items():
            model = mapper.model
            total = s.exec(select(func.count()).select_from(model)).one()
            synced = s.exec(
                select(func.count()).select_from(model).where(model.external_id != None)  # noqa: E711
            ).one()
            entities[entity_type] = {
                "total": total,
                "synced": synced,
                "unsynced": total - synced,
                "sync_percentage": round(synced / total * 100) if total else 100,
            }
    return {
        "entities": entities,
        "pending_conflicts": ConflictStore(engine).count_pending(),
    }
