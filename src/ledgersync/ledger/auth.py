"""
Ledger connection persistence and token validity checks.

The OAuth dance and token refresh happen outside this service (the web
app's "Connect to Xero" flow). What lands here is the resulting token set,
stored as the single active LedgerConnection row:

    tenant_id / tenant_name   which organisation we talk to
    access_token              bearer token for every API call
    expires_at                when the bearer token stops working

If the token has expired we refuse to build a client and raise
TokenExpiredError; the operator has to reconnect.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlmodel import Session, select

from ledgersync.config import get_settings
from ledgersync.ledger.client import LedgerClient
from ledgersync.ledger.errors import LedgerAuthError
from ledgersync.models.base import utcnow
from ledgersync.models.sync import LedgerConnection


# ── Exceptions ────────────────────────────────────────────────────────────────

class NoConnectionError(LedgerAuthError):
    """Raised when no active ledger connection has been stored."""


class TokenExpiredError(LedgerAuthError):
    """Raised when the stored access token is past its expiry."""


# ── Health snapshot ───────────────────────────────────────────────────────────

@dataclass
class ConnectionHealth:
    is_connected: bool
    needs_refresh: bool
    needs_reconnect: bool
    expires_in_minutes: Optional[int] = None
    tenant_id: Optional[str] = None
    tenant_name: Optional[str] = None


# ── Main class ────────────────────────────────────────────────────────────────

class LedgerAuth:
    """
    Manages the stored ledger connection.

    Usage:
        auth = LedgerAuth(engine)
        if not auth.has_connection():
            auth.save_connection(tenant_id, access_token, expires_at, ...)
        client = auth.build_client()   # → LedgerClient
    """

    def __init__(self, engine):
        self.engine = engine

    # ── Persistence ───────────────────────────────────────────────────────────

    def has_connection(self) -> bool:
        """Return True if an active connection row exists."""
        with Session(self.engine) as s:
            return self._active(s) is not None

    def load_connection(self) -> LedgerConnection:
        """
        Return the most recently connected active connection.

        Raises:
            NoConnectionError: if nothing has been connected yet.
        """
        with Session(self.engine) as s:
            conn = self._active(s)
        if conn is None:
            raise NoConnectionError(
                "No Xero integration found. Please connect to Xero first."
            )
        return conn

    def save_connection(
        self,
        *,
        tenant_id: str,
        access_token: str,
        expires_at: datetime,
        tenant_name: Optional[str] = None,
        refresh_token: Optional[str] = None,
    ) -> LedgerConnection:
        """Store a new active connection, deactivating any previous one."""
        with Session(self.engine) as s:
            for old in s.exec(
                select(LedgerConnection).where(LedgerConnection.is_active == True)  # noqa: E712
            ).all():
                old.is_active = False
                s.add(old)
            conn = LedgerConnection(
                tenant_id=tenant_id,
                tenant_name=tenant_name,
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=expires_at,
                is_active=True,
            )
            s.add(conn)
            s.commit()
            s.refresh(conn)
        return conn

    def clear(self) -> None:
        """Deactivate every stored connection (does not raise if none)."""
        with Session(self.engine) as s:
            for conn in s.exec(select(LedgerConnection)).all():
                conn.is_active = False
                s.add(conn)
            s.commit()

    def mark_synced(self, when: Optional[datetime] = None) -> None:
        """Record the time of the last sync on the active connection."""
        with Session(self.engine) as s:
            conn = self._active(s)
            if conn is not None:
                conn.last_sync_at = when or utcnow()
                s.add(conn)
                s.commit()

    # ── Auth ──────────────────────────────────────────────────────────────────

    def build_client(self, now: Optional[datetime] = None) -> LedgerClient:
        """
        Build a LedgerClient from the stored connection.

        Raises:
            NoConnectionError: if no connection is stored.
            TokenExpiredError: if the access token has expired.
        """
        conn = self.load_connection()
        now = now or utcnow()
        if conn.expires_at <= now:
            raise TokenExpiredError(
                "Xero access token has expired. Reconnect the Xero account."
            )
        settings = get_settings()
        return LedgerClient(
            access_token=conn.access_token,
            tenant_id=conn.tenant_id,
            base_url=settings.xero_api_base_url,
            timeout=settings.xero_request_timeout_seconds,
        )

    def connection_health(self, now: Optional[datetime] = None) -> ConnectionHealth:
        """Describe token validity for the health dashboard. Never raises."""
        with Session(self.engine) as s:
            conn = self._active(s)
        if conn is None:
            return ConnectionHealth(
                is_connected=False, needs_refresh=False, needs_reconnect=True
            )

        now = now or utcnow()
        minutes_left = round((conn.expires_at - now) / timedelta(minutes=1))
        window = get_settings().token_refresh_window_minutes
        return ConnectionHealth(
            is_connected=minutes_left > 0,
            needs_refresh=0 < minutes_left <= window,
            needs_reconnect=minutes_left <= 0,
            expires_in_minutes=minutes_left,
            tenant_id=conn.tenant_id,
            tenant_name=conn.tenant_name or conn.tenant_id,
        )

    # ── Internal helpers ──────────────────────────────────────────────────────

    @staticmethod
    def _active(s: Session) -> Optional[LedgerConnection]:
        return s.exec(
            select(LedgerConnection)
            .where(LedgerConnection.is_active == True)  # noqa: E712
            .order_by(LedgerConnection.connected_at.desc())
        ).first()
