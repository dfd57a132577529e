"""Tests for stored ledger connections and error classification."""
from datetime import datetime, timedelta

import pytest
from sqlmodel import Session, select

from ledgersync.ledger.auth import LedgerAuth, NoConnectionError, TokenExpiredError
from ledgersync.ledger.client import LedgerClient
from ledgersync.ledger.errors import (
    LedgerAuthError,
    LedgerRateLimitError,
    LedgerUnavailableError,
    LedgerValidationError,
    classify_error,
)
from ledgersync.models.sync import LedgerConnection

NOW = datetime(2025, 6, 30, 12, 0)


def _save(auth, tenant_id="t-1", minutes_left=60):
    return auth.save_connection(
        tenant_id=tenant_id,
        tenant_name=f"Org {tenant_id}",
        access_token=f"token-{tenant_id}",
        expires_at=NOW + timedelta(minutes=minutes_left),
    )


class TestConnection:
    def test_no_connection(self, engine):
        auth = LedgerAuth(engine)
        assert not auth.has_connection()
        with pytest.raises(NoConnectionError):
            auth.load_connection()

    def test_save_replaces_previous(self, engine):
        auth = LedgerAuth(engine)
        _save(auth, "t-1")
        _save(auth, "t-2")
        assert auth.load_connection().tenant_id == "t-2"
        with Session(engine) as s:
            active = s.exec(select(LedgerConnection).where(LedgerConnection.is_active == True)).all()  # noqa: E712
        assert len(active) == 1

    def test_clear(self, engine):
        auth = LedgerAuth(engine)
        _save(auth)
        auth.clear()
        assert not auth.has_connection()

    def test_mark_synced(self, engine):
        auth = LedgerAuth(engine)
        _save(auth)
        auth.mark_synced(NOW)
        assert auth.load_connection().last_sync_at == NOW

    def test_mark_synced_without_connection_is_noop(self, engine):
        LedgerAuth(engine).mark_synced(NOW)


class TestBuildClient:
    @pytest.mark.asyncio
    async def test_builds_client_for_tenant(self, engine):
        auth = LedgerAuth(engine)
        _save(auth)
        client = auth.build_client(now=NOW)
        assert isinstance(client, LedgerClient)
        assert client.tenant_id == "t-1"
        await client.aclose()

    def test_expired_token_rejected(self, engine):
        auth = LedgerAuth(engine)
        _save(auth, minutes_left=-5)
        with pytest.raises(TokenExpiredError):
            auth.build_client(now=NOW)

    def test_missing_connection_rejected(self, engine):
        with pytest.raises(NoConnectionError):
            LedgerAuth(engine).build_client(now=NOW)


class TestConnectionHealth:
    def test_not_connected(self, engine):
        health = LedgerAuth(engine).connection_health(NOW)
        assert not health.is_connected
        assert health.needs_reconnect
        assert health.expires_in_minutes is None

    def test_fresh_token(self, engine):
        auth = LedgerAuth(engine)
        _save(auth, minutes_left=45)
        health = auth.connection_health(NOW)
        assert health.is_connected
        assert not health.needs_refresh
        assert health.expires_in_minutes == 45
        assert health.tenant_name == "Org t-1"

    def test_inside_refresh_window(self, engine):
        auth = LedgerAuth(engine)
        _save(auth, minutes_left=5)
        assert auth.connection_health(NOW).needs_refresh

    def test_expired(self, engine):
        auth = LedgerAuth(engine)
        _save(auth, minutes_left=-1)
        health = auth.connection_health(NOW)
        assert not health.is_connected
        assert health.needs_reconnect


class TestClassifyError:
    def test_typed_errors(self):
        assert classify_error(LedgerAuthError("nope", 401)).code == "TOKEN_EXPIRED"
        assert classify_error(LedgerRateLimitError("slow down")).code == "RATE_LIMIT"
        assert classify_error(LedgerUnavailableError("down")).code == "NETWORK_ERROR"
        assert classify_error(LedgerValidationError("bad")).code == "VALIDATION_ERROR"

    def test_no_connection_is_token_problem(self):
        assert classify_error(TokenExpiredError("x")).code == "TOKEN_EXPIRED"

    @pytest.mark.parametrize("message, code", [
        ("Access token expired", "TOKEN_EXPIRED"),
        ("Too many requests", "RATE_LIMIT"),
        ("connection reset by peer", "NETWORK_ERROR"),
        ("Unauthorized scope", "PERMISSION_DENIED"),
        ("validation failed for Name", "VALIDATION_ERROR"),
        ("division by zero", "UNKNOWN_ERROR"),
    ])
    def test_untyped_errors_classified_by_message(self, message, code):
        assert classify_error(RuntimeError(message)).code == code

    def test_retryable_flags(self):
        assert classify_error(LedgerRateLimitError("x")).retryable
        assert not classify_error(LedgerValidationError("x")).retryable
