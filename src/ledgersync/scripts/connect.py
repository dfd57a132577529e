"""
Interactive connection wizard.

Stores the tokens produced by the web app's "Connect to Xero" flow (or by
the Xero developer portal) as the active ledger connection. Any previous
connection is deactivated.

Usage:
    python -m ledgersync connect
    python -m ledgersync.scripts.connect   (direct invocation)

Re-run whenever the access token expires; the health dashboard shows how
many minutes are left.
"""
import getpass
import sys
from datetime import timedelta

from ledgersync.db.engine import get_engine
from ledgersync.ledger.auth import LedgerAuth
from ledgersync.models.base import utcnow

DEFAULT_EXPIRY_MINUTES = 30


def run_connect() -> None:
    auth = LedgerAuth(get_engine())

    print("\nLedger Sync: Xero connection\n")

    if auth.has_connection():
        health = auth.connection_health()
        print(f"An existing connection to {health.tenant_name} was found "
              f"(expires in {health.expires_in_minutes} min).")
        overwrite = input("Replace it? [y/N] ").strip().lower()
        if overwrite != "y":
            print("Cancelled. Existing connection unchanged.")
            sys.exit(0)

    tenant_id = input("Xero tenant id: ").strip()
    if not tenant_id:
        print("Error: tenant id cannot be empty.")
        sys.exit(1)
    tenant_name = input("Organisation name (optional): ").strip() or None

    access_token = getpass.getpass("Access token: ").strip()
    if not access_token:
        print("Error: access token cannot be empty.")
        sys.exit(1)
    refresh_token = getpass.getpass("Refresh token (optional): ").strip() or None

    raw_minutes = input(f"Minutes until the token expires [{DEFAULT_EXPIRY_MINUTES}]: ").strip()
    try:
        minutes = int(raw_minutes) if raw_minutes else DEFAULT_EXPIRY_MINUTES
    except ValueError:
        print(f"Error: {raw_minutes!r} is not a number of minutes.")
        sys.exit(1)

    conn = auth.save_connection(
        tenant_id=tenant_id,
        tenant_name=tenant_name,
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=utcnow() + timedelta(minutes=minutes),
    )

    print(f"\nConnected to {conn.tenant_name or conn.tenant_id}.")
    print(f"Token valid until {conn.expires_at:%Y-%m-%d %H:%M} UTC.")
    print("When it expires, just re-run:  python -m ledgersync connect\n")


if __name__ == "__main__":
    run_connect()
