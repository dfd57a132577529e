"""
Business records mirrored in the external ledger.

These tables belong to the client, supplier and finance modules. The sync
engine reads them and writes only the columns inherited from SyncMetadata
(plus the fields a pull or a "use_xero" resolution overwrites).
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlmodel import Field

from ledgersync.models.base import SyncMetadata, utcnow


class Client(SyncMetadata, table=True):
    """A customer; pushed to the ledger as a contact with IsCustomer set."""

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    contact_number: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    tax_number: Optional[str] = None
    address_line1: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)


class Vendor(SyncMetadata, table=True):
    """A supplier; pushed to the ledger as a contact with IsSupplier set."""

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    contact_number: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    tax_number: Optional[str] = None
    address_line1: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)


class Invoice(SyncMetadata, table=True):
    """Customer invoice (ledger type ACCREC)."""

    id: Optional[int] = Field(default=None, primary_key=True)
    client_id: int = Field(foreign_key="client.id", index=True)
    invoice_number: str = Field(unique=True, index=True)
    reference: Optional[str] = None
    issue_date: date
    due_date: Optional[date] = None
    status: str = "DRAFT"  # DRAFT, SUBMITTED, AUTHORISED, PAID, VOIDED
    currency: str = "SGD"

    subtotal: Decimal = Field(default=Decimal("0.00"), max_digits=14, decimal_places=2)
    tax_amount: Decimal = Field(default=Decimal("0.00"), max_digits=14, decimal_places=2)
    total_amount: Decimal = Field(default=Decimal("0.00"), max_digits=14, decimal_places=2)
    amount_paid: Decimal = Field(default=Decimal("0.00"), max_digits=14, decimal_places=2)
    amount_due: Decimal = Field(default=Decimal("0.00"), max_digits=14, decimal_places=2)

    # JSON list of {description, quantity, unit_amount, account_code, tax_type};
    # numbers are decimal strings
    line_items_json: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class Bill(SyncMetadata, table=True):
    """Supplier invoice (ledger type ACCPAY)."""

    id: Optional[int] = Field(default=None, primary_key=True)
    vendor_id: int = Field(foreign_key="vendor.id", index=True)
    invoice_number: str = Field(index=True)
    reference: Optional[str] = None
    issue_date: date
    due_date: Optional[date] = None
    status: str = "DRAFT"
    currency: str = "SGD"

    subtotal: Decimal = Field(default=Decimal("0.00"), max_digits=14, decimal_places=2)
    tax_amount: Decimal = Field(default=Decimal("0.00"), max_digits=14, decimal_places=2)
    total_amount: Decimal = Field(default=Decimal("0.00"), max_digits=14, decimal_places=2)
    amount_paid: Decimal = Field(default=Decimal("0.00"), max_digits=14, decimal_places=2)
    amount_due: Decimal = Field(default=Decimal("0.00"), max_digits=14, decimal_places=2)

    line_items_json: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class Payment(SyncMetadata, table=True):
    """
    A payment against an invoice (received) or a bill (sent).

    Exactly one of invoice_id / bill_id is set.
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    invoice_id: Optional[int] = Field(default=None, foreign_key="invoice.id", index=True)
    bill_id: Optional[int] = Field(default=None, foreign_key="bill.id", index=True)
    payment_date: date
    amount: Decimal = Field(max_digits=14, decimal_places=2)
    reference: Optional[str] = None
    account_code: Optional[str] = None
    status: str = "AUTHORISED"  # AUTHORISED, DELETED
    created_at: datetime = Field(default_factory=utcnow)
