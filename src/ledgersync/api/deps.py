"""
Shared FastAPI dependencies.

Authentication happens upstream (the web app's session layer); requests
reach this service with the caller identified by X-User-Id / X-User-Role
headers. A request without both is rejected with 401; scheduled and CLI
runs never pass through here and are attributed to the configured service
user instead.
"""
from dataclasses import dataclass
from typing import AsyncGenerator, Callable, Optional

from fastapi import Depends, Header, HTTPException

from ledgersync.db.engine import get_engine
from ledgersync.ledger.auth import LedgerAuth
from ledgersync.ledger.client import LedgerClient
from ledgersync.ledger.errors import LedgerAuthError

SYNC_ROLES = ("SUPERADMIN", "FINANCE")
STATUS_ROLES = ("SUPERADMIN", "FINANCE", "PROJECT_MANAGER")
RESOLVE_ROLES = ("SUPERADMIN", "ADMIN", "MANAGER", "FINANCE")


@dataclass
class CurrentUser:
    id: str
    role: str


def get_db():
    """The engine used by every route; overridden in tests."""
    return get_engine()


def get_current_user(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> CurrentUser:
    if not x_user_id or not x_user_role:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return CurrentUser(id=x_user_id, role=x_user_role.upper())


def require_roles(*roles: str) -> Callable[..., CurrentUser]:
    """Dependency factory: 403 unless the caller holds one of `roles`."""

    def checker(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if user.role not in roles:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return user

    return checker


async def get_ledger_client(engine=Depends(get_db)) -> AsyncGenerator[LedgerClient, None]:
    """Client for the active connection. NoConnectionError / TokenExpiredError propagate."""
    client = LedgerAuth(engine).build_client()
    try:
        yield client
    finally:
        await client.aclose()


async def get_optional_ledger_client(engine=Depends(get_db)) -> AsyncGenerator[Optional[LedgerClient], None]:
    """Like get_ledger_client, but yields None when not connected."""
    try:
        client = LedgerAuth(engine).build_client()
    except LedgerAuthError:
        yield None
        return
    try:
        yield client
    finally:
        await client.aclose()
