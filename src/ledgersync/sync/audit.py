"""
Append-only audit trail of sync attempts.

Every executor run creates one SyncLog row as IN_PROGRESS and finishes it
exactly once with SUCCESS, WARNING or ERROR. Finished rows are never edited;
a retry appends a new row pointing back via retry_of.

The read side (list_logs, stats, recent_failures) feeds the sync-log page
and the health dashboard.
"""
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import delete, func
from sqlmodel import Session, select

from ledgersync.models.base import utcnow
from ledgersync.models.sync import (
    TERMINAL_STATUSES,
    SyncDirection,
    SyncEntity,
    SyncLog,
    SyncStatus,
)
from ledgersync.sync.errors import LogAlreadyFinalizedError, SyncLogNotFoundError

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 200


@dataclass
class LogFilters:
    status: Optional[SyncStatus] = None
    entity: Optional[SyncEntity] = None
    direction: Optional[SyncDirection] = None
    user_id: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None


@dataclass
class SyncStats:
    window_days: int
    total_syncs: int = 0
    successful_syncs: int = 0
    warning_syncs: int = 0
    failed_syncs: int = 0
    success_rate: float = 0.0  # successful / total, 0..1
    average_duration_ms: int = 0
    last_sync: Optional[datetime] = None
    entity_stats: Dict[str, int] = field(default_factory=dict)


class SyncAuditLog:
    """Writes and reads SyncLog rows."""

    def __init__(self, engine):
        self.engine = engine

    # ── Write side ────────────────────────────────────────────────────────────

    def start(
        self,
        *,
        user_id: str,
        direction: SyncDirection,
        entity: SyncEntity,
        message: str,
        retry_of: Optional[int] = None,
    ) -> SyncLog:
        log = SyncLog(
            timestamp=utcnow(),
            user_id=user_id,
            direction=direction.value,
            entity=entity.value,
            status=SyncStatus.IN_PROGRESS.value,
            message=message,
            retry_of=retry_of,
        )
        with Session(self.engine) as s:
            s.add(log)
            s.commit()
            s.refresh(log)
        return log

    def finish(
        self,
        log: SyncLog,
        *,
        status: SyncStatus,
        message: str,
        processed: int = 0,
        succeeded: int = 0,
        failed: int = 0,
        details: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
        error_stack: Optional[str] = None,
        duration_ms: int = 0,
    ) -> SyncLog:
        """
        Move an IN_PROGRESS entry to its terminal status.

        Raises:
            LogAlreadyFinalizedError: if the entry already has a terminal status.
            ValueError: if status is not terminal.
        """
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"{status} is not a terminal sync status")

        with Session(self.engine) as s:
            db_log = s.get(SyncLog, log.id)
            if db_log is None:
                raise SyncLogNotFoundError(f"Sync log {log.id} not found")
            if db_log.status != SyncStatus.IN_PROGRESS.value:
                raise LogAlreadyFinalizedError(
                    f"Sync log {log.id} already finished as {db_log.status}"
                )
            db_log.status = status.value
            db_log.message = message
            db_log.records_processed = processed
            db_log.records_succeeded = succeeded
            db_log.records_failed = failed
            db_log.details_json = json.dumps(details, default=str) if details else None
            db_log.error_message = error_message
            db_log.error_stack = error_stack
            db_log.duration_ms = duration_ms
            db_log.finished_at = utcnow()
            s.add(db_log)
            s.commit()
            s.refresh(db_log)
        return db_log

    def prune(self, older_than_days: int, now: Optional[datetime] = None) -> int:
        """Delete finished entries older than the retention window. Returns count."""
        cutoff = (now or utcnow()) - timedelta(days=older_than_days)
        with Session(self.engine) as s:
            result = s.exec(
                delete(SyncLog).where(
                    SyncLog.timestamp < cutoff,
                    SyncLog.status != SyncStatus.IN_PROGRESS.value,
                )
            )
            s.commit()
        logger.info("Pruned %d sync log entries older than %s", result.rowcount, cutoff)
        return result.rowcount

    # ── Read side ─────────────────────────────────────────────────────────────

    def get(self, log_id: int) -> SyncLog:
        with Session(self.engine) as s:
            log = s.get(SyncLog, log_id)
        if log is None:
            raise SyncLogNotFoundError(f"Sync log {log_id} not found")
        return log

    def list_logs(
        self,
        filters: Optional[LogFilters] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[List[SyncLog], int]:
        """Newest first. Returns (page of logs, total matching)."""
        filters = filters or LogFilters()
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)

        conditions = []
        if filters.status:
            conditions.append(SyncLog.status == filters.status.value)
        if filters.entity:
            conditions.append(SyncLog.entity == filters.entity.value)
        if filters.direction:
            conditions.append(SyncLog.direction == filters.direction.value)
        if filters.user_id:
            conditions.append(SyncLog.user_id == filters.user_id)
        if filters.date_from:
            conditions.append(SyncLog.timestamp >= filters.date_from)
        if filters.date_to:
            conditions.append(SyncLog.timestamp <= filters.date_to)

        with Session(self.engine) as s:
            total = s.exec(
                select(func.count()).select_from(SyncLog).where(*conditions)
            ).one()
            logs = s.exec(
                select(SyncLog)
                .where(*conditions)
                .order_by(SyncLog.timestamp.desc(), SyncLog.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()
        return list(logs), total

    def recent_failures(self, limit: int = 5) -> List[SyncLog]:
        logs, _ = self.list_logs(LogFilters(status=SyncStatus.ERROR), page=1, limit=limit)
        return logs

    def stats(self, days: int = 30, now: Optional[datetime] = None) -> SyncStats:
        """Aggregate finished entries over a trailing window."""
        since = (now or utcnow()) - timedelta(days=days)
        with Session(self.engine) as s:
            logs = s.exec(
                select(SyncLog).where(
                    SyncLog.timestamp >= since,
                    SyncLog.status != SyncStatus.IN_PROGRESS.value,
                )
            ).all()

        result = SyncStats(
            window_days=days,
            entity_stats={e.value: 0 for e in SyncEntity},
        )
        if not logs:
            return result

        result.total_syncs = len(logs)
        result.successful_syncs = sum(1 for log in logs if log.status == SyncStatus.SUCCESS.value)
        result.warning_syncs = sum(1 for log in logs if log.status == SyncStatus.WARNING.value)
        result.failed_syncs = sum(1 for log in logs if log.status == SyncStatus.ERROR.value)
        result.success_rate = round(result.successful_syncs / result.total_syncs, 4)
        result.average_duration_ms = round(
            sum(log.duration_ms or 0 for log in logs) / result.total_syncs
        )
        result.last_sync = max(log.timestamp for log in logs)
        for log in logs:
            result.entity_stats[log.entity] = result.entity_stats.get(log.entity, 0) + 1
        return result
