"""
APScheduler jobs.

Daily log cleanup keeps the audit trail within its retention window.
The optional nightly pull catches ledger-side edits nobody pulled by hand
(e.g. an accountant fixing an invoice directly in Xero).

The scheduler runs in the `python -m ledgersync` process; the API runs
separately under uvicorn.
"""
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from ledgersync.config import get_settings
from ledgersync.models.base import utcnow
from ledgersync.sync.audit import SyncAuditLog

logger = logging.getLogger(__name__)

SCHEDULED_PULL_TYPES = ("contacts", "invoices", "bills", "payments")


def build_scheduler(engine) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        engine: SQLAlchemy engine passed to every job.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _log_cleanup,
        trigger="cron",
        hour=settings.log_cleanup_hour,
        minute=0,
        id="log_cleanup",
        replace_existing=True,
        kwargs={"engine": engine},
    )

    if settings.scheduled_pull_enabled:
        scheduler.add_job(
            _scheduled_pull,
            trigger="cron",
            hour=settings.scheduled_pull_hour,
            minute=0,
            id="scheduled_pull",
            replace_existing=True,
            kwargs={"engine": engine},
        )

    return scheduler


async def _log_cleanup(engine) -> int:
    """Delete finished sync log entries past the retention window."""
    settings = get_settings()
    deleted = SyncAuditLog(engine).prune(settings.log_retention_days)
    logger.info("Log cleanup removed %d entries", deleted)
    return deleted


async def _scheduled_pull(engine) -> None:
    """
    Nightly job: pull every entity type from the ledger.

    Idempotent: unchanged records are skipped, so a rerun is harmless.
    """
    from ledgersync.ledger.auth import LedgerAuth
    from ledgersync.sync.executor import SyncExecutor
    from ledgersync.sync.orchestrator import BulkSyncOrchestrator
    from ledgersync.models.sync import SyncDirection

    settings = get_settings()
    logger.info("Scheduled pull starting at %s", utcnow().isoformat())

    try:
        auth = LedgerAuth(engine)
        async with auth.build_client() as client:
            orchestrator = BulkSyncOrchestrator(SyncExecutor(client, engine))
            bulk = await orchestrator.sync_all(
                SCHEDULED_PULL_TYPES,
                SyncDirection.PULL,
                user_id=settings.default_user_id,
            )
        auth.mark_synced()
        logger.info("Scheduled pull finished: %s", bulk.message)

    except Exception as exc:
        logger.error("Scheduled pull failed: %s", exc)
