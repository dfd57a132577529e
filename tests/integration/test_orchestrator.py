"""Tests for bulk syncs: dependency ordering and per-type isolation."""
from unittest.mock import AsyncMock

import pytest
from sqlmodel import Session, select

from factories import (
    contact_payload,
    echo_save,
    invoice_payload,
    make_client,
    make_ledger_client,
    payment_payload,
)
from ledgersync.ledger.errors import LedgerRateLimitError, LedgerUnavailableError
from ledgersync.models.business import Invoice, Payment
from ledgersync.models.sync import SyncDirection, SyncLog, SyncStatus
from ledgersync.sync.executor import SyncExecutor, SyncResult
from ledgersync.sync.orchestrator import (
    NOT_STARTED,
    SKIPPED,
    BulkSyncOrchestrator,
    plan_entity_types,
)


def _mock_executor(fail_on=()):
    """Executor double that records the order of calls."""
    executor = AsyncMock()
    calls = []

    async def sync(entity_type, direction, *, user_id, options=None):
        calls.append(entity_type)
        if entity_type in fail_on:
            raise LedgerRateLimitError("Ledger rate limit exceeded")
        return SyncResult(
            entity_type=entity_type, direction=direction, status=SyncStatus.SUCCESS,
            processed=2, succeeded=2, message=f"{entity_type} done",
        )

    executor.sync.side_effect = sync
    return executor, calls


class TestPlanEntityTypes:
    def test_sorted_into_dependency_order(self):
        ordered, unknown = plan_entity_types(["payments", "invoices", "clients"])
        assert ordered == ["clients", "invoices", "payments"]
        assert unknown == []

    def test_aliases_expand(self):
        assert plan_entity_types(["contacts"])[0] == ["clients", "vendors"]
        assert plan_entity_types(["all"])[0] == ["clients", "vendors", "invoices", "bills", "payments"]

    def test_duplicates_collapse(self):
        assert plan_entity_types(["clients", "customers", "CLIENTS"])[0] == ["clients"]

    def test_unknown_reported(self):
        ordered, unknown = plan_entity_types(["clients", "widgets"])
        assert ordered == ["clients"]
        assert unknown == ["widgets"]


class TestSyncAll:
    @pytest.mark.asyncio
    async def test_runs_in_dependency_order(self):
        executor, calls = _mock_executor()
        bulk = await BulkSyncOrchestrator(executor).sync_all(
            ["payments", "bills", "contacts", "invoices"], SyncDirection.PULL, user_id="u1"
        )
        assert calls == ["clients", "vendors", "invoices", "bills", "payments"]
        assert bulk.success
        assert bulk.total_processed == 10

    @pytest.mark.asyncio
    async def test_one_failing_type_does_not_stop_others(self):
        executor, calls = _mock_executor(fail_on=("invoices",))
        bulk = await BulkSyncOrchestrator(executor).sync_all(
            ["clients", "invoices", "payments"], SyncDirection.PULL, user_id="u1"
        )

        assert calls == ["clients", "invoices", "payments"]
        statuses = {r.entity_type: r.status for r in bulk.results}
        assert statuses == {"clients": "SUCCESS", "invoices": "ERROR", "payments": "SUCCESS"}
        assert not bulk.success
        failed = next(r for r in bulk.results if r.entity_type == "invoices")
        assert failed.error == "Ledger rate limit exceeded"
        assert "Failed: invoices" in bulk.message

    @pytest.mark.asyncio
    async def test_stop_on_error(self):
        executor, calls = _mock_executor(fail_on=("clients",))
        bulk = await BulkSyncOrchestrator(executor).sync_all(
            ["clients", "invoices"], SyncDirection.PULL, user_id="u1", stop_on_error=True
        )
        assert calls == ["clients"]
        assert bulk.results[1].status == NOT_STARTED

    @pytest.mark.asyncio
    async def test_deadline_stops_further_types(self):
        executor, calls = _mock_executor()
        bulk = await BulkSyncOrchestrator(executor).sync_all(
            ["clients", "invoices"], SyncDirection.PULL, user_id="u1", deadline_seconds=0
        )
        assert calls == []
        assert [r.status for r in bulk.results] == [NOT_STARTED, NOT_STARTED]

    @pytest.mark.asyncio
    async def test_payments_push_skipped(self):
        executor, calls = _mock_executor()
        bulk = await BulkSyncOrchestrator(executor).sync_all(
            ["clients", "payments"], SyncDirection.PUSH, user_id="u1"
        )
        assert calls == ["clients"]
        assert bulk.results[-1].status == SKIPPED
        assert bulk.success

    @pytest.mark.asyncio
    async def test_unknown_type_is_error_outcome(self):
        executor, calls = _mock_executor()
        bulk = await BulkSyncOrchestrator(executor).sync_all(
            ["widgets", "clients"], SyncDirection.PULL, user_id="u1"
        )
        assert calls == ["clients"]
        assert bulk.results[0].entity_type == "widgets"
        assert bulk.results[0].error == "Unknown sync type: widgets"

    @pytest.mark.asyncio
    async def test_progress_reported_per_type(self):
        executor, _ = _mock_executor()
        seen = []
        await BulkSyncOrchestrator(executor).sync_all(
            ["clients", "vendors"], SyncDirection.PULL, user_id="u1",
            on_progress=lambda outcome, done, total: seen.append((outcome.entity_type, done, total)),
        )
        assert seen == [("clients", 1, 2), ("vendors", 2, 2)]


class TestBulkPullEndToEnd:
    @pytest.mark.asyncio
    async def test_dependencies_available_within_one_run(self, engine, locks):
        """Invoices and payments resolve contacts pulled earlier in the same run."""
        client = make_ledger_client(
            contacts=[contact_payload("c-1", "Acme Pte Ltd")],
            invoices=[invoice_payload("i-1", "INV-001", "c-1")],
            payments=[payment_payload("p-1", "i-1")],
        )
        orchestrator = BulkSyncOrchestrator(SyncExecutor(client, engine, locks=locks))

        bulk = await orchestrator.sync_all(["payments", "invoices", "contacts"], SyncDirection.PULL, user_id="u1")

        assert bulk.success
        assert bulk.total_failed == 0
        with Session(engine) as s:
            invoice = s.exec(select(Invoice)).one()
            payment = s.exec(select(Payment)).one()
            logs = s.exec(select(SyncLog).order_by(SyncLog.id)).all()
        assert payment.invoice_id == invoice.id
        assert [log.entity for log in logs] == ["CONTACTS", "CONTACTS", "INVOICES", "PAYMENTS"]

    @pytest.mark.asyncio
    async def test_systemic_failure_reports_log_and_partial_counts(self, engine, locks):
        make_client(engine, "Alpha Pte Ltd")
        make_client(engine, "Beta Pte Ltd")
        client = make_ledger_client()
        accept = echo_save("contact", "ContactID")
        batches = []

        async def save(payloads):
            batches.append(payloads)
            if len(batches) > 1:
                raise LedgerUnavailableError("Ledger returned HTTP 503")
            return await accept(payloads)

        client.save_contacts.side_effect = save
        orchestrator = BulkSyncOrchestrator(SyncExecutor(client, engine, locks=locks, batch_size=1))

        bulk = await orchestrator.sync_all(["clients"], SyncDirection.PUSH, user_id="u1")

        assert not bulk.success
        [outcome] = bulk.results
        assert outcome.status == SyncStatus.ERROR.value
        assert (outcome.processed, outcome.succeeded) == (2, 1)
        assert outcome.error == "Ledger returned HTTP 503"
        with Session(engine) as s:
            log = s.get(SyncLog, outcome.log_id)
        assert log.status == SyncStatus.ERROR.value
        assert log.records_succeeded == 1
