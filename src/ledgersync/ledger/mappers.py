"""
Translation between local business records and ledger payloads.

No DB access and no network here. Callers (the sync executor and the
conflict resolver) handle persistence.

Each mapper works with three shapes:

  record    the SQLModel row (Client, Invoice, ...)
  values    plain dict of the synchronized fields, as Python values
              (Decimal, date, list of line-item dicts, str/None)
  snapshot  canonical JSON-safe form of values: money as "12.30",
              dates as "2025-01-31", blank strings as None. Snapshots are
              what gets hashed, stored as the three-way base and compared.

Round trip guarantee: snapshot(from_external(to_external(r))) equals
snapshot(local_values(r)) for any record r.

The ledger's JSON has two date formats depending on endpoint and API
version:
  - "/Date(1518685950940+0000)/"     (milliseconds since epoch)
  - "2025-01-31T00:00:00"            (ISO 8601)
Both are handled by parse_ledger_date() / parse_ledger_datetime().

Ledger fields we do not map are kept verbatim in `extensions` and merged
back on push, so a pull followed by a push never drops data we don't know
about.
"""
import hashlib
import json
import re
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from ledgersync.models.business import Bill, Client, Invoice, Payment, Vendor
from ledgersync.models.sync import SyncEntity

MONEY = Decimal("0.01")
QUANTITY = Decimal("0.0001")

_MS_DATE = re.compile(r"/Date\((-?\d+)([+-]\d{4})?\)/")
_FRACTION = re.compile(r"\.\d+")
_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# Server-computed keys that are never sent back
SERVER_KEYS = frozenset({
    "UpdatedDateUTC",
    "StatusAttributeString",
    "ValidationErrors",
    "Warnings",
    "HasErrors",
    "HasValidationErrors",
    "DateString",
    "DueDateString",
})


# ── Value helpers ─────────────────────────────────────────────────────────────

def to_money(value: Any) -> Decimal:
    """Coerce a ledger or local amount to a 2-dp Decimal. None → 0.00."""
    if value is None or value == "":
        return Decimal("0.00")
    try:
        return Decimal(str(value)).quantize(MONEY, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise ValueError(f"Not an amount: {value!r}") from exc


def _to_quantity(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0.0000")
    return Decimal(str(value)).quantize(QUANTITY, rounding=ROUND_HALF_UP)


def parse_ledger_datetime(value: Any) -> Optional[datetime]:
    """Parse either ledger datetime format into a naive UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    s = str(value).strip()
    match = _MS_DATE.fullmatch(s)
    if match:
        millis = int(match.group(1))
        dt = datetime(1970, 1, 1) + timedelta(milliseconds=millis)
        return dt
    # ISO 8601; fractional seconds dropped, offset kept for the UTC conversion
    base = _FRACTION.sub("", s, count=1)
    if base.endswith("Z"):
        base = base[:-1] + "+00:00"
    parsed = datetime.fromisoformat(base)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_ledger_date(value: Any) -> Optional[date]:
    """Parse either ledger date format into a date (time part dropped)."""
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    dt = parse_ledger_datetime(value)
    return dt.date() if dt else None


def format_date(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


def _blank_to_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value)
    return s if s.strip() else None


def _canonical(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value.quantize(MONEY, rounding=ROUND_HALF_UP))
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str):
        return value if value.strip() else None
    return value


def fingerprint(snapshot: Dict[str, Any]) -> str:
    """Stable hash of a snapshot; equal snapshots give equal fingerprints."""
    normalized = json.dumps(snapshot, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def dump_extensions(extensions: Dict[str, Any]) -> Optional[str]:
    if not extensions:
        return None
    return json.dumps(extensions, sort_keys=True, default=_extension_default)


def load_extensions(raw: Optional[str]) -> Dict[str, Any]:
    return json.loads(raw) if raw else {}


def _extension_default(value):
    if isinstance(value, Decimal):
        return float(value)
    raise TypeError(f"Cannot serialize {type(value).__name__}")


# ── Base mapper ───────────────────────────────────────────────────────────────

class EntityMapper:
    """Shared behaviour; subclasses declare the field set and the ledger shape."""

    entity_type: str = ""
    log_entity: SyncEntity = SyncEntity.ALL
    model: Any = None
    resource: str = ""
    id_key: str = ""
    fields: Tuple[str, ...] = ()
    natural_key: str = ""
    reference_field: Optional[str] = None  # local FK to a dependency
    money_fields: Tuple[str, ...] = ()
    date_fields: Tuple[str, ...] = ()
    mapped_keys: frozenset = frozenset()

    # ── Local side ────────────────────────────────────────────────────────────

    def local_values(self, record) -> Dict[str, Any]:
        return {f: getattr(record, f) for f in self.fields}

    def apply(self, record, values: Dict[str, Any]) -> None:
        """Write synchronized field values onto a record."""
        for f in self.fields:
            if f in values:
                setattr(record, f, values[f])

    def snapshot(self, values: Dict[str, Any]) -> Dict[str, Any]:
        return {f: _canonical(values.get(f)) for f in self.fields}

    def record_snapshot(self, record) -> Dict[str, Any]:
        return self.snapshot(self.local_values(record))

    def from_snapshot(self, snapshot: Dict[str, Any]) -> Dict[str, Any]:
        """Turn a stored snapshot back into values that apply() accepts."""
        values = {}
        for f in self.fields:
            if f not in snapshot:
                continue
            value = snapshot[f]
            if f in self.money_fields and value is not None:
                value = to_money(value)
            elif f in self.date_fields and value:
                value = date.fromisoformat(value)
            values[f] = value
        return values

    def display_name(self, values: Dict[str, Any]) -> str:
        return str(values.get(self.natural_key) or values.get("external_id") or "")

    def validate_local(self, record) -> List[str]:
        return []

    def validate_external(self, values: Dict[str, Any]) -> List[str]:
        return []

    # ── Ledger side ───────────────────────────────────────────────────────────

    def to_external(self, record, ref_external_id: Optional[str] = None) -> Dict[str, Any]:
        raise NotImplementedError

    def from_external(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def _extensions(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return {
            k: v for k, v in payload.items()
            if k not in self.mapped_keys and k not in SERVER_KEYS
        }

    def _base_payload(self, record) -> Dict[str, Any]:
        payload = load_extensions(record.extensions_json)
        if record.external_id:
            payload[self.id_key] = record.external_id
        return payload


# ── Contacts ──────────────────────────────────────────────────────────────────

class ContactMapper(EntityMapper):
    """
    Client/Vendor ↔ ledger Contact.

    Only the DEFAULT phone and the STREET address are mapped. The full
    Phones/Addresses arrays stay in extensions so other entries survive.
    """

    log_entity = SyncEntity.CONTACTS
    resource = "Contacts"
    id_key = "ContactID"
    natural_key = "name"
    fields = (
        "name",
        "contact_number",
        "email",
        "phone",
        "tax_number",
        "address_line1",
        "city",
        "postal_code",
        "country",
    )
    mapped_keys = frozenset({
        "ContactID", "Name", "ContactNumber", "EmailAddress", "TaxNumber",
        "IsCustomer", "IsSupplier",
    })

    def to_external(self, record, ref_external_id: Optional[str] = None) -> Dict[str, Any]:
        payload = self._base_payload(record)
        payload.update({
            "Name": record.name,
            "ContactNumber": record.contact_number or "",
            "EmailAddress": record.email or "",
            "TaxNumber": record.tax_number or "",
        })

        phones = [p for p in payload.get("Phones") or [] if p.get("PhoneType") != "DEFAULT"]
        default_phone = next(
            (p for p in payload.get("Phones") or [] if p.get("PhoneType") == "DEFAULT"), {}
        )
        phones.insert(0, {**default_phone, "PhoneType": "DEFAULT", "PhoneNumber": record.phone or ""})
        payload["Phones"] = phones

        addresses = [a for a in payload.get("Addresses") or [] if a.get("AddressType") != "STREET"]
        street = next(
            (a for a in payload.get("Addresses") or [] if a.get("AddressType") == "STREET"), {}
        )
        addresses.insert(0, {
            **street,
            "AddressType": "STREET",
            "AddressLine1": record.address_line1 or "",
            "City": record.city or "",
            "PostalCode": record.postal_code or "",
            "Country": record.country or "",
        })
        payload["Addresses"] = addresses
        return payload

    def from_external(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        phone = next(
            (p for p in payload.get("Phones") or [] if p.get("PhoneType") == "DEFAULT"), {}
        )
        street = next(
            (a for a in payload.get("Addresses") or [] if a.get("AddressType") == "STREET"), {}
        )
        return {
            "external_id": payload.get("ContactID"),
            "name": _blank_to_none(payload.get("Name")),
            "contact_number": _blank_to_none(payload.get("ContactNumber")),
            "email": _blank_to_none(payload.get("EmailAddress")),
            "phone": _blank_to_none(phone.get("PhoneNumber")),
            "tax_number": _blank_to_none(payload.get("TaxNumber")),
            "address_line1": _blank_to_none(street.get("AddressLine1")),
            "city": _blank_to_none(street.get("City")),
            "postal_code": _blank_to_none(street.get("PostalCode")),
            "country": _blank_to_none(street.get("Country")),
            "is_customer": bool(payload.get("IsCustomer")),
            "is_supplier": bool(payload.get("IsSupplier")),
            "modified_at": parse_ledger_datetime(payload.get("UpdatedDateUTC")),
            "extensions": self._extensions(payload),
        }

    def validate_local(self, record) -> List[str]:
        errors = []
        if not (record.name or "").strip():
            errors.append("Contact name is required")
        if record.email and not _EMAIL.match(record.email):
            errors.append(f"Invalid email address: {record.email}")
        return errors

    def validate_external(self, values: Dict[str, Any]) -> List[str]:
        if not values.get("external_id"):
            return ["Missing ContactID"]
        if not values.get("name"):
            return ["Contact has no name"]
        return []


class ClientMapper(ContactMapper):
    entity_type = "clients"
    model = Client

    def to_external(self, record, ref_external_id: Optional[str] = None) -> Dict[str, Any]:
        payload = super().to_external(record, ref_external_id)
        payload["IsCustomer"] = True
        return payload


class VendorMapper(ContactMapper):
    entity_type = "vendors"
    model = Vendor

    def to_external(self, record, ref_external_id: Optional[str] = None) -> Dict[str, Any]:
        payload = super().to_external(record, ref_external_id)
        payload["IsSupplier"] = True
        return payload


# ── Invoices and bills ────────────────────────────────────────────────────────

def _canonical_line_items(items: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    canonical = []
    for item in items or []:
        canonical.append({
            "description": _blank_to_none(item.get("description")),
            "quantity": str(_to_quantity(item.get("quantity"))),
            "unit_amount": str(_to_quantity(item.get("unit_amount"))),
            "account_code": _blank_to_none(item.get("account_code")),
            "tax_type": _blank_to_none(item.get("tax_type")),
        })
    return canonical


class LedgerInvoiceMapper(EntityMapper):
    """Invoice/Bill ↔ ledger Invoice (ACCREC / ACCPAY)."""

    resource = "Invoices"
    id_key = "InvoiceID"
    natural_key = "invoice_number"
    invoice_type = ""
    money_fields = ("subtotal", "tax_amount", "total_amount", "amount_paid", "amount_due")
    date_fields = ("issue_date", "due_date")
    fields = (
        "invoice_number",
        "reference",
        "issue_date",
        "due_date",
        "status",
        "currency",
        "subtotal",
        "tax_amount",
        "total_amount",
        "amount_paid",
        "amount_due",
        "line_items",
    )
    mapped_keys = frozenset({
        "InvoiceID", "Type", "InvoiceNumber", "Reference", "Date", "DueDate",
        "Status", "CurrencyCode", "SubTotal", "TotalTax", "Total",
        "AmountPaid", "AmountDue", "LineItems", "Contact",
    })

    def local_values(self, record) -> Dict[str, Any]:
        values = {f: getattr(record, f) for f in self.fields if f != "line_items"}
        values["line_items"] = _canonical_line_items(
            json.loads(record.line_items_json) if record.line_items_json else []
        )
        return values

    def apply(self, record, values: Dict[str, Any]) -> None:
        for f in self.fields:
            if f not in values:
                continue
            if f == "line_items":
                record.line_items_json = json.dumps(_canonical_line_items(values[f]))
            else:
                setattr(record, f, values[f])

    def snapshot(self, values: Dict[str, Any]) -> Dict[str, Any]:
        snap = {f: _canonical(values.get(f)) for f in self.fields if f != "line_items"}
        snap["line_items"] = _canonical_line_items(values.get("line_items"))
        return snap

    def to_external(self, record, ref_external_id: Optional[str] = None) -> Dict[str, Any]:
        payload = self._base_payload(record)
        values = self.local_values(record)
        payload.update({
            "Type": self.invoice_type,
            "InvoiceNumber": record.invoice_number,
            "Reference": record.reference or "",
            "Date": format_date(record.issue_date),
            "DueDate": format_date(record.due_date),
            "Status": record.status,
            "CurrencyCode": record.currency,
            "SubTotal": to_money(record.subtotal),
            "TotalTax": to_money(record.tax_amount),
            "Total": to_money(record.total_amount),
            "AmountPaid": to_money(record.amount_paid),
            "AmountDue": to_money(record.amount_due),
            "LineItems": [
                {
                    "Description": item["description"] or "",
                    "Quantity": Decimal(item["quantity"]),
                    "UnitAmount": Decimal(item["unit_amount"]),
                    "AccountCode": item["account_code"] or "",
                    "TaxType": item["tax_type"] or "",
                }
                for item in values["line_items"]
            ],
        })
        if ref_external_id:
            payload["Contact"] = {"ContactID": ref_external_id}
        return payload

    def from_external(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "external_id": payload.get("InvoiceID"),
            "invoice_type": payload.get("Type"),
            "invoice_number": _blank_to_none(payload.get("InvoiceNumber")),
            "reference": _blank_to_none(payload.get("Reference")),
            "issue_date": parse_ledger_date(payload.get("Date")),
            "due_date": parse_ledger_date(payload.get("DueDate")),
            "status": payload.get("Status") or "DRAFT",
            "currency": payload.get("CurrencyCode") or "SGD",
            "subtotal": to_money(payload.get("SubTotal")),
            "tax_amount": to_money(payload.get("TotalTax")),
            "total_amount": to_money(payload.get("Total")),
            "amount_paid": to_money(payload.get("AmountPaid")),
            "amount_due": to_money(payload.get("AmountDue")),
            "line_items": _canonical_line_items([
                {
                    "description": li.get("Description"),
                    "quantity": li.get("Quantity"),
                    "unit_amount": li.get("UnitAmount"),
                    "account_code": li.get("AccountCode"),
                    "tax_type": li.get("TaxType"),
                }
                for li in payload.get("LineItems") or []
            ]),
            "ref_external_id": (payload.get("Contact") or {}).get("ContactID"),
            "modified_at": parse_ledger_datetime(payload.get("UpdatedDateUTC")),
            "extensions": self._extensions(payload),
        }

    def validate_local(self, record) -> List[str]:
        errors = []
        if not (record.invoice_number or "").strip():
            errors.append("Invoice number is required")
        if record.issue_date is None:
            errors.append("Invoice date is required")
        return errors

    def validate_external(self, values: Dict[str, Any]) -> List[str]:
        errors = []
        if not values.get("external_id"):
            errors.append("Missing InvoiceID")
        if not values.get("invoice_number"):
            errors.append("Missing invoice number")
        if values.get("issue_date") is None:
            errors.append("Missing invoice date")
        if not values.get("ref_external_id"):
            errors.append("Invoice has no contact")
        return errors


class InvoiceMapper(LedgerInvoiceMapper):
    entity_type = "invoices"
    log_entity = SyncEntity.INVOICES
    model = Invoice
    invoice_type = "ACCREC"
    reference_field = "client_id"


class BillMapper(LedgerInvoiceMapper):
    entity_type = "bills"
    log_entity = SyncEntity.BILLS
    model = Bill
    invoice_type = "ACCPAY"
    reference_field = "vendor_id"


# ── Payments ──────────────────────────────────────────────────────────────────

class PaymentMapper(EntityMapper):
    """
    Payment ↔ ledger Payment.

    The referenced document is an invoice for ACCRECPAYMENT and a bill for
    ACCPAYPAYMENT; the executor resolves which local table to look in.
    """

    entity_type = "payments"
    log_entity = SyncEntity.PAYMENTS
    model = Payment
    resource = "Payments"
    id_key = "PaymentID"
    natural_key = "reference"
    money_fields = ("amount",)
    date_fields = ("payment_date",)
    fields = ("payment_date", "amount", "reference", "account_code", "status")
    mapped_keys = frozenset({
        "PaymentID", "Invoice", "Account", "Date", "Amount", "Reference",
        "Status", "PaymentType",
    })

    def to_external(self, record, ref_external_id: Optional[str] = None) -> Dict[str, Any]:
        payload = self._base_payload(record)
        payload.update({
            "Date": format_date(record.payment_date),
            "Amount": to_money(record.amount),
            "Reference": record.reference or "",
            "Status": record.status,
        })
        if record.account_code:
            payload["Account"] = {**(payload.get("Account") or {}), "Code": record.account_code}
        if ref_external_id:
            payload["Invoice"] = {"InvoiceID": ref_external_id}
        return payload

    def from_external(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        invoice = payload.get("Invoice") or {}
        payment_type = str(payload.get("PaymentType") or "")
        return {
            "external_id": payload.get("PaymentID"),
            "payment_date": parse_ledger_date(payload.get("Date")),
            "amount": to_money(payload.get("Amount")),
            "reference": _blank_to_none(payload.get("Reference")),
            "account_code": _blank_to_none((payload.get("Account") or {}).get("Code")),
            "status": payload.get("Status") or "AUTHORISED",
            "ref_external_id": invoice.get("InvoiceID"),
            "ref_number": invoice.get("InvoiceNumber"),
            "is_bill_payment": "ACCPAY" in payment_type or "APCREDIT" in payment_type,
            "modified_at": parse_ledger_datetime(payload.get("UpdatedDateUTC")),
            "extensions": self._extensions(payload),
        }

    def display_name(self, values: Dict[str, Any]) -> str:
        return str(values.get("reference") or f"Payment {values.get('external_id') or ''}".strip())

    def validate_local(self, record) -> List[str]:
        errors = []
        if record.amount is None or to_money(record.amount) <= 0:
            errors.append(f"Invalid payment amount: {record.amount}")
        if record.payment_date is None:
            errors.append("Missing payment date")
        return errors

    def validate_external(self, values: Dict[str, Any]) -> List[str]:
        errors = []
        if not values.get("external_id"):
            errors.append("Missing PaymentID")
        if values.get("payment_date") is None:
            errors.append("Missing payment date")
        if values.get("amount") is None or values["amount"] <= 0:
            errors.append(f"Invalid payment amount: {values.get('amount')}")
        if not values.get("ref_external_id"):
            errors.append("Payment has no target invoice")
        if values.get("status") == "DELETED":
            errors.append("Payment is marked as DELETED in the ledger")
        return errors


MAPPERS: Dict[str, EntityMapper] = {
    m.entity_type: m
    for m in (ClientMapper(), VendorMapper(), InvoiceMapper(), BillMapper(), PaymentMapper())
}
