"""Sync audit log, conflict store, pull watermarks and the ledger connection."""
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel

from ledgersync.models.base import utcnow


class SyncDirection(str, Enum):
    PULL = "PULL"
    PUSH = "PUSH"
    BOTH = "BOTH"


class SyncEntity(str, Enum):
    CONTACTS = "CONTACTS"
    INVOICES = "INVOICES"
    BILLS = "BILLS"
    PAYMENTS = "PAYMENTS"
    ALL = "ALL"


class SyncStatus(str, Enum):
    SUCCESS = "SUCCESS"
    WARNING = "WARNING"
    ERROR = "ERROR"
    IN_PROGRESS = "IN_PROGRESS"


class ConflictType(str, Enum):
    DATA_MISMATCH = "DATA_MISMATCH"
    DUPLICATE_DETECTED = "DUPLICATE_DETECTED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    MISSING_DEPENDENCY = "MISSING_DEPENDENCY"


class ConflictStatus(str, Enum):
    PENDING = "PENDING"
    RESOLVED = "RESOLVED"


class Resolution(str, Enum):
    USE_LOCAL = "use_local"
    USE_XERO = "use_xero"
    MANUAL = "manual"


TERMINAL_STATUSES = (SyncStatus.SUCCESS, SyncStatus.WARNING, SyncStatus.ERROR)


class SyncLog(SQLModel, table=True):
    """
    One row per sync attempt.

    Created IN_PROGRESS, finished exactly once; retries append new rows.
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    timestamp: datetime = Field(default_factory=utcnow, index=True)
    user_id: str = Field(index=True)
    direction: str  # SyncDirection
    entity: str = Field(index=True)  # SyncEntity
    status: str = Field(default=SyncStatus.IN_PROGRESS.value, index=True)
    records_processed: int = 0
    records_succeeded: int = 0
    records_failed: int = 0
    message: str = ""
    details_json: Optional[str] = None
    error_message: Optional[str] = None
    error_stack: Optional[str] = None
    duration_ms: int = 0
    finished_at: Optional[datetime] = None
    retry_of: Optional[int] = Field(default=None, foreign_key="synclog.id")


class SyncConflict(SQLModel, table=True):
    """A record whose local and ledger copies diverged; waits for a human decision."""

    id: Optional[int] = Field(default=None, primary_key=True)
    entity: str = Field(index=True)  # entity type key, e.g. "clients"
    entity_id: int = Field(index=True)  # local primary key
    entity_name: str
    external_id: Optional[str] = None
    conflict_type: str = ConflictType.DATA_MISMATCH.value
    local_data_json: str
    xero_data_json: str
    base_data_json: Optional[str] = None
    fields_json: Optional[str] = None  # JSON list of mismatching field names
    suggested_action: str = ""
    status: str = Field(default=ConflictStatus.PENDING.value, index=True)
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None
    resolution: Optional[str] = None
    resolved_by: Optional[str] = None
    notes: Optional[str] = None
    sync_log_id: Optional[int] = Field(default=None, foreign_key="synclog.id")


class SyncWatermark(SQLModel, table=True):
    """Last successful pull per entity type; scopes the next change set."""

    id: Optional[int] = Field(default=None, primary_key=True)
    entity_type: str = Field(unique=True, index=True)
    last_pulled_at: datetime
    updated_at: datetime = Field(default_factory=utcnow)


class LedgerConnection(SQLModel, table=True):
    """OAuth connection to one ledger tenant. Token refresh happens elsewhere."""

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str
    tenant_name: Optional[str] = None
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: datetime
    is_active: bool = Field(default=True, index=True)
    connected_at: datetime = Field(default_factory=utcnow)
    last_sync_at: Optional[datetime] = None
