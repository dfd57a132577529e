"""Tests for APScheduler job configuration and the job bodies."""
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlmodel import Session

from ledgersync.models.base import utcnow
from ledgersync.models.sync import SyncDirection, SyncLog, SyncStatus
from ledgersync.scheduler.jobs import (
    SCHEDULED_PULL_TYPES,
    _log_cleanup,
    _scheduled_pull,
    build_scheduler,
)


def _settings(**overrides):
    settings = MagicMock()
    settings.log_cleanup_hour = 4
    settings.scheduled_pull_enabled = False
    settings.scheduled_pull_hour = 2
    settings.log_retention_days = 90
    settings.default_user_id = "system"
    for key, value in overrides.items():
        setattr(settings, key, value)
    return settings


def _build(**overrides):
    with patch("ledgersync.scheduler.jobs.get_settings", return_value=_settings(**overrides)):
        return build_scheduler(MagicMock())


class TestBuildScheduler:
    def test_returns_scheduler(self):
        assert isinstance(_build(), AsyncIOScheduler)

    def test_log_cleanup_job_registered(self):
        job_ids = [job.id for job in _build().get_jobs()]
        assert job_ids == ["log_cleanup"]

    def test_cleanup_hour_from_settings(self):
        scheduler = _build(log_cleanup_hour=5)
        job = next(j for j in scheduler.get_jobs() if j.id == "log_cleanup")
        assert job.trigger.__class__.__name__ == "CronTrigger"
        fields = {f.name: f for f in job.trigger.fields}
        assert str(fields["hour"]) == "5"

    def test_scheduled_pull_only_when_enabled(self):
        scheduler = _build(scheduled_pull_enabled=True, scheduled_pull_hour=1)
        job = next(j for j in scheduler.get_jobs() if j.id == "scheduled_pull")
        fields = {f.name: f for f in job.trigger.fields}
        assert str(fields["hour"]) == "1"

    def test_scheduler_not_running_on_creation(self):
        assert not _build().running


# ─── Job bodies ───────────────────────────────────────────────────────────────

class TestLogCleanupJob:
    @pytest.mark.asyncio
    async def test_prunes_old_entries(self, engine):
        with Session(engine) as s:
            s.add(SyncLog(
                timestamp=utcnow() - timedelta(days=200),
                user_id="u1",
                direction=SyncDirection.PUSH.value,
                entity="CONTACTS",
                status=SyncStatus.SUCCESS.value,
            ))
            s.commit()

        with patch("ledgersync.scheduler.jobs.get_settings", return_value=_settings()):
            deleted = await _log_cleanup(engine)

        assert deleted == 1


class TestScheduledPullJob:
    """
    LedgerAuth, SyncExecutor and BulkSyncOrchestrator are imported lazily
    inside the job body, so they are patched at their source modules.
    """

    @pytest.mark.asyncio
    async def test_pulls_every_type_and_marks_synced(self):
        auth = MagicMock()
        auth.build_client.return_value = AsyncMock()
        orchestrator = MagicMock()
        orchestrator.sync_all = AsyncMock(return_value=MagicMock(message="done"))

        with patch("ledgersync.ledger.auth.LedgerAuth", return_value=auth), \
             patch("ledgersync.sync.orchestrator.BulkSyncOrchestrator", return_value=orchestrator), \
             patch("ledgersync.scheduler.jobs.get_settings", return_value=_settings()):
            await _scheduled_pull(engine=MagicMock())

        args, kwargs = orchestrator.sync_all.call_args
        assert args == (SCHEDULED_PULL_TYPES, SyncDirection.PULL)
        assert kwargs["user_id"] == "system"
        auth.mark_synced.assert_called_once()

    @pytest.mark.asyncio
    async def test_exception_does_not_propagate(self):
        """The job catches everything so the scheduler stays alive."""
        auth = MagicMock()
        auth.build_client.side_effect = RuntimeError("No Xero integration found")

        with patch("ledgersync.ledger.auth.LedgerAuth", return_value=auth), \
             patch("ledgersync.scheduler.jobs.get_settings", return_value=_settings()):
            await _scheduled_pull(engine=MagicMock())

        auth.mark_synced.assert_not_called()
