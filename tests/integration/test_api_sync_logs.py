"""Integration tests for /sync-logs routes and /health/integrations."""
import json
from datetime import timedelta

from sqlmodel import Session

from factories import contact_payload, make_client
from ledgersync.models.base import utcnow
from ledgersync.models.sync import SyncDirection, SyncLog, SyncStatus

ADMIN = {"X-User-Id": "admin-1", "X-User-Role": "SUPERADMIN"}


def _log(engine, status, *, entity="CONTACTS", minutes_ago=10, details=None, direction="PUSH"):
    with Session(engine) as s:
        log = SyncLog(
            timestamp=utcnow() - timedelta(minutes=minutes_ago),
            user_id="u1",
            direction=direction,
            entity=entity,
            status=status.value,
            message=f"{entity} {status.value}",
            details_json=json.dumps(details) if details is not None else None,
            duration_ms=120,
        )
        s.add(log)
        s.commit()
        s.refresh(log)
    return log


class TestListSyncLogs:
    def test_page_with_stats(self, client, engine):
        _log(engine, SyncStatus.SUCCESS, minutes_ago=30)
        _log(engine, SyncStatus.ERROR, entity="INVOICES", minutes_ago=20)
        _log(engine, SyncStatus.WARNING, minutes_ago=10)

        resp = client.get("/sync-logs", params={"limit": 2}, headers=ADMIN)

        assert resp.status_code == 200
        body = resp.json()
        assert body["total"] == 3
        assert body["totalPages"] == 2
        assert [log["status"] for log in body["logs"]] == ["WARNING", "ERROR"]
        assert body["stats"]["totalSyncs"] == 3
        assert body["stats"]["failedSyncs"] == 1
        assert body["stats"]["entityStats"]["INVOICES"] == 1

    def test_filters(self, client, engine):
        _log(engine, SyncStatus.SUCCESS)
        target = _log(engine, SyncStatus.ERROR, entity="INVOICES")

        resp = client.get("/sync-logs", params={"status": "ERROR", "entity": "INVOICES"}, headers=ADMIN)

        assert [log["id"] for log in resp.json()["logs"]] == [target.id]

    def test_invalid_filter_value(self, client):
        resp = client.get("/sync-logs", params={"status": "BROKEN"}, headers=ADMIN)
        assert resp.status_code == 400

    def test_limit_capped(self, client):
        resp = client.get("/sync-logs", params={"limit": 1000}, headers=ADMIN)
        assert resp.status_code == 400

    def test_forbidden_role(self, client):
        resp = client.get("/sync-logs", headers={"X-User-Id": "staff-1", "X-User-Role": "STAFF"})
        assert resp.status_code == 403


class TestRetry:
    def test_retries_failed_records_only(self, client, engine, ledger):
        make_client(engine, "Alpha", email="a@alpha.example")
        bad = make_client(engine, "Beta", email="invalid-email")
        first = client.post("/sync/clients", json={"bulkSync": True}, headers=ADMIN).json()
        log_id = first["logIds"][0]

        # Fixed since the first run
        with Session(engine) as s:
            record = s.get(type(bad), bad.id)
            record.email = "ap@beta.example"
            s.add(record)
            s.commit()

        resp = client.post(f"/sync-logs/{log_id}/retry", headers=ADMIN)

        assert resp.status_code == 200
        body = resp.json()
        assert body["retryOf"] == log_id
        assert body["results"][0]["processed"] == 1
        assert body["results"][0]["status"] == "SUCCESS"
        sent = ledger.save_contacts.call_args.args[0]
        assert [p["Name"] for p in sent] == ["Beta"]
        with Session(engine) as s:
            retry_log = s.get(SyncLog, body["results"][0]["logId"])
        assert retry_log.retry_of == log_id

    def test_retry_pull_failures_by_external_id(self, client, engine, ledger):
        failed = _log(engine, SyncStatus.WARNING, direction=SyncDirection.PULL.value, details={
            "entity_type": "clients",
            "failures": [{"phase": "pull", "category": "VALIDATION_ERROR", "error": "x",
                          "record_id": None, "external_id": "c-7"}],
        })
        ledger.list_contacts.return_value = [contact_payload("c-7", "Fixed Co")]

        resp = client.post(f"/sync-logs/{failed.id}/retry", headers=ADMIN)

        assert resp.status_code == 200
        assert ledger.list_contacts.call_args.kwargs["ids"] == ["c-7"]

    def test_successful_log_not_retryable(self, client, engine):
        log = _log(engine, SyncStatus.SUCCESS, details={"entity_type": "clients"})
        resp = client.post(f"/sync-logs/{log.id}/retry", headers=ADMIN)
        assert resp.status_code == 400

    def test_unknown_log(self, client):
        resp = client.post("/sync-logs/999/retry", headers=ADMIN)
        assert resp.status_code == 404


class TestIntegrationHealth:
    def test_not_connected_is_warning(self, client):
        resp = client.get("/health/integrations", headers=ADMIN)
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "warning"
        checks = {c["name"]: c["status"] for c in body["checks"]}
        assert checks == {"database": "healthy", "xero_connection": "warning", "sync_activity": "healthy"}

    def test_latest_error_is_critical(self, client, engine):
        _log(engine, SyncStatus.ERROR)
        body = client.get("/health/integrations", headers=ADMIN).json()
        assert body["status"] == "critical"
        assert body["recentFailures"][0]["status"] == "ERROR"

    def test_forbidden_role(self, client):
        resp = client.get("/health/integrations", headers={"X-User-Id": "staff-1", "X-User-Role": "STAFF"})
        assert resp.status_code == 403
