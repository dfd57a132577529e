"""Shared column sets for records that are mirrored in the external ledger."""
from datetime import datetime, timezone
from typing import Optional

from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Naive UTC timestamp (SQLite stores datetimes without tzinfo)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SyncMetadata(SQLModel):
    """
    Sync bookkeeping carried by every syncable business record.

    Only the sync executor and the conflict resolver write these columns;
    the owning business module treats them as read-only.
    """

    external_id: Optional[str] = Field(default=None, unique=True, index=True)
    last_synced_at: Optional[datetime] = None
    sync_hash: Optional[str] = None  # fingerprint of sync_snapshot_json
    sync_snapshot_json: Optional[str] = None  # last common state, three-way base
    extensions_json: Optional[str] = None  # unmapped ledger fields, kept verbatim
    updated_at: datetime = Field(default_factory=utcnow)
