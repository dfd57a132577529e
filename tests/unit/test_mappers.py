"""Tests for record ↔ ledger payload mapping. Pure functions, no DB."""
import json
from datetime import date, datetime
from decimal import Decimal

import pytest

from ledgersync.ledger.mappers import (
    MAPPERS,
    fingerprint,
    parse_ledger_date,
    parse_ledger_datetime,
    to_money,
)
from ledgersync.models.business import Bill, Client, Invoice, Payment, Vendor


def _client(**fields):
    defaults = dict(
        id=1,
        name="Acme Pte Ltd",
        contact_number="C-100",
        email="accounts@acme.example",
        phone="+65 6123 4567",
        tax_number="201912345K",
        address_line1="1 Harbourfront Ave",
        city="Singapore",
        postal_code="098632",
        country="SG",
    )
    defaults.update(fields)
    return Client(**defaults)


def _invoice(**fields):
    defaults = dict(
        id=7,
        client_id=1,
        invoice_number="INV-0042",
        reference="PO 991",
        issue_date=date(2025, 3, 1),
        due_date=date(2025, 3, 31),
        status="AUTHORISED",
        currency="SGD",
        subtotal=Decimal("1000.00"),
        tax_amount=Decimal("90.00"),
        total_amount=Decimal("1090.00"),
        amount_paid=Decimal("0.00"),
        amount_due=Decimal("1090.00"),
        line_items_json=json.dumps([
            {"description": "Site survey", "quantity": "2", "unit_amount": "500",
             "account_code": "200", "tax_type": "OUTPUT"},
        ]),
    )
    defaults.update(fields)
    return Invoice(**defaults)


# ─── Value helpers ────────────────────────────────────────────────────────────

class TestLedgerDates:
    def test_ms_epoch_format(self):
        assert parse_ledger_datetime("/Date(1518685950940+0000)/") == datetime(2018, 2, 15, 9, 12, 30, 940000)

    def test_ms_epoch_without_offset(self):
        assert parse_ledger_date("/Date(1740787200000)/") == date(2025, 3, 1)

    def test_iso_format(self):
        assert parse_ledger_date("2025-01-31T00:00:00") == date(2025, 1, 31)

    def test_iso_with_fraction_and_z(self):
        assert parse_ledger_datetime("2025-01-31T10:15:00.123Z") == datetime(2025, 1, 31, 10, 15)

    def test_iso_with_offset_converted_to_utc(self):
        assert parse_ledger_datetime("2025-01-31T08:00:00+08:00") == datetime(2025, 1, 31, 0, 0)

    def test_iso_with_fraction_keeps_offset(self):
        assert parse_ledger_datetime("2025-01-31T08:00:00.123+08:00") == datetime(2025, 1, 31, 0, 0)

    def test_empty_is_none(self):
        assert parse_ledger_date(None) is None
        assert parse_ledger_date("") is None


class TestMoney:
    def test_rounds_half_up(self):
        assert to_money("10.005") == Decimal("10.01")

    def test_none_is_zero(self):
        assert to_money(None) == Decimal("0.00")

    def test_float_goes_through_str(self):
        assert to_money(0.1 + 0.2) == Decimal("0.30")

    def test_garbage_raises_value_error(self):
        with pytest.raises(ValueError):
            to_money("twelve")


class TestFingerprint:
    def test_key_order_does_not_matter(self):
        assert fingerprint({"a": 1, "b": "x"}) == fingerprint({"b": "x", "a": 1})

    def test_value_change_changes_fingerprint(self):
        assert fingerprint({"a": "1.00"}) != fingerprint({"a": "1.01"})


# ─── Contacts ─────────────────────────────────────────────────────────────────

class TestContactMapper:
    mapper = MAPPERS["clients"]

    def test_round_trip_reproduces_fields(self):
        record = _client()
        values = self.mapper.from_external(self.mapper.to_external(record))
        assert self.mapper.snapshot(values) == self.mapper.record_snapshot(record)

    def test_round_trip_with_blank_optionals(self):
        record = _client(email=None, phone=None, address_line1=None, city=None)
        values = self.mapper.from_external(self.mapper.to_external(record))
        assert self.mapper.snapshot(values) == self.mapper.record_snapshot(record)

    def test_client_marked_customer(self):
        assert self.mapper.to_external(_client())["IsCustomer"] is True

    def test_vendor_marked_supplier(self):
        vendor = Vendor(id=3, name="Steel Supplies")
        assert MAPPERS["vendors"].to_external(vendor)["IsSupplier"] is True

    def test_external_id_sent_when_linked(self):
        payload = self.mapper.to_external(_client(external_id="c-123"))
        assert payload["ContactID"] == "c-123"

    def test_unlinked_record_has_no_id(self):
        assert "ContactID" not in self.mapper.to_external(_client())

    def test_other_phones_and_addresses_survive(self):
        """Only DEFAULT phone and STREET address are ours; the rest is preserved."""
        extensions = {
            "Phones": [
                {"PhoneType": "MOBILE", "PhoneNumber": "+65 9000 0000"},
                {"PhoneType": "DEFAULT", "PhoneNumber": "old", "PhoneAreaCode": "65"},
            ],
            "Addresses": [{"AddressType": "POBOX", "AddressLine1": "PO Box 1"}],
            "Website": "https://acme.example",
        }
        record = _client(extensions_json=json.dumps(extensions))
        payload = self.mapper.to_external(record)

        phones = {p["PhoneType"]: p for p in payload["Phones"]}
        assert phones["MOBILE"]["PhoneNumber"] == "+65 9000 0000"
        assert phones["DEFAULT"]["PhoneNumber"] == "+65 6123 4567"
        assert phones["DEFAULT"]["PhoneAreaCode"] == "65"
        assert {a["AddressType"] for a in payload["Addresses"]} == {"STREET", "POBOX"}
        assert payload["Website"] == "https://acme.example"

    def test_unknown_keys_kept_as_extensions(self):
        values = self.mapper.from_external({
            "ContactID": "c-1",
            "Name": "Acme",
            "ContactStatus": "ACTIVE",
            "UpdatedDateUTC": "/Date(1740787200000+0000)/",
        })
        assert values["extensions"] == {"ContactStatus": "ACTIVE"}
        assert values["modified_at"] == datetime(2025, 3, 1)

    def test_invalid_email_rejected(self):
        errors = self.mapper.validate_local(_client(email="not-an-email"))
        assert errors == ["Invalid email address: not-an-email"]

    def test_missing_name_rejected(self):
        assert "Contact name is required" in self.mapper.validate_local(_client(name="  "))

    def test_valid_contact_passes(self):
        assert self.mapper.validate_local(_client()) == []

    def test_external_without_name_rejected(self):
        assert self.mapper.validate_external({"external_id": "c-1", "name": None})


# ─── Invoices and bills ───────────────────────────────────────────────────────

class TestInvoiceMapper:
    mapper = MAPPERS["invoices"]

    def test_round_trip_reproduces_fields(self):
        record = _invoice()
        payload = self.mapper.to_external(record, "contact-1")
        values = self.mapper.from_external(payload)
        assert self.mapper.snapshot(values) == self.mapper.record_snapshot(record)
        assert values["ref_external_id"] == "contact-1"

    def test_payload_shape(self):
        payload = self.mapper.to_external(_invoice(), "contact-1")
        assert payload["Type"] == "ACCREC"
        assert payload["Contact"] == {"ContactID": "contact-1"}
        assert payload["Date"] == "2025-03-01"
        assert payload["Total"] == Decimal("1090.00")
        assert payload["LineItems"][0]["Quantity"] == Decimal("2.0000")

    def test_bill_uses_accpay(self):
        bill = Bill(id=1, vendor_id=1, invoice_number="B-1", issue_date=date(2025, 3, 5))
        assert MAPPERS["bills"].to_external(bill, "v-1")["Type"] == "ACCPAY"

    def test_amounts_compare_at_two_places(self):
        """1090 from the ledger and 1090.00 locally are the same amount."""
        values = self.mapper.from_external({
            "InvoiceID": "i-1",
            "InvoiceNumber": "INV-0042",
            "Total": 1090,
        })
        assert self.mapper.snapshot(values)["total_amount"] == "1090.00"

    def test_line_items_stored_canonically(self):
        record = _invoice(line_items_json=None)
        self.mapper.apply(record, {"line_items": [{"description": "X", "quantity": 1, "unit_amount": "9.5"}]})
        stored = json.loads(record.line_items_json)
        assert stored == [{
            "description": "X", "quantity": "1.0000", "unit_amount": "9.5000",
            "account_code": None, "tax_type": None,
        }]

    def test_from_snapshot_restores_types(self):
        record = _invoice()
        values = self.mapper.from_snapshot(self.mapper.record_snapshot(record))
        assert values["issue_date"] == date(2025, 3, 1)
        assert values["total_amount"] == Decimal("1090.00")

    def test_external_without_contact_rejected(self):
        values = self.mapper.from_external({
            "InvoiceID": "i-1", "InvoiceNumber": "INV-1", "Date": "2025-03-01T00:00:00",
        })
        assert "Invoice has no contact" in self.mapper.validate_external(values)

    def test_missing_number_rejected_locally(self):
        assert "Invoice number is required" in self.mapper.validate_local(_invoice(invoice_number=""))


# ─── Payments ─────────────────────────────────────────────────────────────────

class TestPaymentMapper:
    mapper = MAPPERS["payments"]

    def _payload(self, **overrides):
        payload = {
            "PaymentID": "p-1",
            "Date": "/Date(1742428800000+0000)/",
            "Amount": Decimal("250.00"),
            "Reference": "TT 5531",
            "Status": "AUTHORISED",
            "PaymentType": "ACCRECPAYMENT",
            "Invoice": {"InvoiceID": "i-1", "InvoiceNumber": "INV-0042"},
            "Account": {"Code": "090"},
        }
        payload.update(overrides)
        return payload

    def test_from_external(self):
        values = self.mapper.from_external(self._payload())
        assert values["payment_date"] == date(2025, 3, 20)
        assert values["amount"] == Decimal("250.00")
        assert values["account_code"] == "090"
        assert values["ref_external_id"] == "i-1"
        assert values["is_bill_payment"] is False

    @pytest.mark.parametrize("payment_type", ["ACCPAYPAYMENT", "APCREDITPAYMENT"])
    def test_supplier_payment_types(self, payment_type):
        values = self.mapper.from_external(self._payload(PaymentType=payment_type))
        assert values["is_bill_payment"] is True

    def test_round_trip(self):
        record = Payment(
            id=1, invoice_id=1, payment_date=date(2025, 3, 20),
            amount=Decimal("250.00"), reference="TT 5531", account_code="090",
        )
        values = self.mapper.from_external(self.mapper.to_external(record, "i-1"))
        assert self.mapper.snapshot(values) == self.mapper.record_snapshot(record)

    def test_non_positive_amount_rejected(self):
        values = self.mapper.from_external(self._payload(Amount=0))
        assert any("Invalid payment amount" in e for e in self.mapper.validate_external(values))

    def test_deleted_payment_rejected(self):
        values = self.mapper.from_external(self._payload(Status="DELETED"))
        assert "Payment is marked as DELETED in the ledger" in self.mapper.validate_external(values)

    def test_missing_invoice_rejected(self):
        values = self.mapper.from_external(self._payload(Invoice=None))
        assert "Payment has no target invoice" in self.mapper.validate_external(values)

    def test_valid_payment_passes(self):
        values = self.mapper.from_external(self._payload())
        assert self.mapper.validate_external(values) == []
