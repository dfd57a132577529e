"""
Async REST client for the external ledger (Xero accounting API 2.0).

One request per page on reads, one request per batch on writes: the save
endpoints take a list of records and, with summarizeErrors=false, answer
with one element per input record carrying its own status and validation
errors. That lets the sync executor attribute success or failure to each
record without a round trip per record.

Amounts travel as JSON numbers. Responses are parsed with Decimal floats so
money never passes through binary floating point on the way in.
"""
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

import httpx

from ledgersync.ledger.errors import (
    LedgerAuthError,
    LedgerError,
    LedgerPermissionError,
    LedgerRateLimitError,
    LedgerSystemicError,
    LedgerUnavailableError,
    LedgerValidationError,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.xero.com/api.xro/2.0"
PAGE_SIZE = 100

# resource -> (collection key, id key)
RESOURCES: Dict[str, tuple] = {
    "Contacts": ("Contacts", "ContactID"),
    "Invoices": ("Invoices", "InvoiceID"),
    "Payments": ("Payments", "PaymentID"),
}


@dataclass
class SaveOutcome:
    """Result for one record of a batch save, in input order."""

    ok: bool
    payload: Optional[Dict[str, Any]] = None  # the ledger's copy when ok
    errors: List[str] = field(default_factory=list)


def _json_default(value):
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%dT%H:%M:%S")
    raise TypeError(f"Cannot serialize {type(value).__name__}")


def _element_errors(element: Dict[str, Any]) -> List[str]:
    messages = [
        str(err.get("Message", err))
        for err in element.get("ValidationErrors") or []
    ]
    if not messages and (
        element.get("HasErrors") or element.get("StatusAttributeString") == "ERROR"
    ):
        messages.append("Rejected by ledger")
    return messages


class LedgerClient:
    """
    Thin async wrapper over the ledger's REST endpoints.

    Every call carries the bearer token and the tenant header. Use as an
    async context manager, or call aclose() when done.
    """

    def __init__(
        self,
        access_token: str,
        tenant_id: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            access_token: OAuth bearer token.
            tenant_id: Ledger organisation id (Xero-tenant-id header).
            base_url: API root.
            timeout: Per-request timeout in seconds.
            transport: Optional httpx transport (httpx.MockTransport in tests).
        """
        self.tenant_id = tenant_id
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/",
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Xero-tenant-id": tenant_id,
                "Accept": "application/json",
            },
        )

    async def __aenter__(self) -> "LedgerClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ── Reads ─────────────────────────────────────────────────────────────────

    async def list_records(
        self,
        resource: str,
        *,
        modified_since: Optional[datetime] = None,
        ids: Optional[Iterable[str]] = None,
        where: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Fetch every page of a collection, optionally scoped.

        Args:
            resource: "Contacts", "Invoices" or "Payments".
            modified_since: Only records changed after this (If-Modified-Since).
            ids: Only these ledger ids.
            where: Ledger filter expression, e.g. 'Type=="ACCREC"'.
        """
        collection_key, id_key = RESOURCES[resource]
        params: Dict[str, Any] = {}
        headers: Dict[str, str] = {}
        clauses = [where] if where else []
        if ids is not None:
            ids = list(ids)
            if not ids:
                return []
            if resource == "Payments":
                # Payments has no IDs parameter
                clauses.append(
                    "(" + " OR ".join(f'{id_key}==Guid("{i}")' for i in ids) + ")"
                )
            else:
                params["IDs"] = ",".join(ids)
        if clauses:
            params["where"] = " AND ".join(clauses)
        if modified_since is not None:
            headers["If-Modified-Since"] = modified_since.strftime("%Y-%m-%dT%H:%M:%S")

        records: List[Dict[str, Any]] = []
        page = 1
        while True:
            body = await self._request(
                "GET", resource, params={**params, "page": page}, headers=headers
            )
            batch = body.get(collection_key) or []
            records.extend(batch)
            logger.debug("%s page %d: %d records", resource, page, len(batch))
            if len(batch) < PAGE_SIZE:
                break
            page += 1
        return records

    async def list_contacts(self, **kwargs) -> List[Dict[str, Any]]:
        return await self.list_records("Contacts", **kwargs)

    async def list_invoices(self, invoice_type: str, **kwargs) -> List[Dict[str, Any]]:
        """invoice_type is "ACCREC" (customer invoices) or "ACCPAY" (bills)."""
        return await self.list_records(
            "Invoices", where=f'Type=="{invoice_type}"', **kwargs
        )

    async def list_payments(self, **kwargs) -> List[Dict[str, Any]]:
        return await self.list_records("Payments", **kwargs)

    # ── Writes ────────────────────────────────────────────────────────────────

    async def save_records(
        self, resource: str, payloads: List[Dict[str, Any]]
    ) -> List[SaveOutcome]:
        """
        Create or update a batch of records in one request.

        Records carrying their id key are updated, the rest created
        (Payments can only be created). Returns one SaveOutcome per payload,
        in input order.

        Raises:
            LedgerSystemicError: auth, permission, rate limit, outage, or a
                response that cannot be matched to the input.
        """
        if not payloads:
            return []
        collection_key, _ = RESOURCES[resource]
        method = "PUT" if resource == "Payments" else "POST"
        body = await self._request(
            method,
            resource,
            params={"summarizeErrors": "false"},
            json_body={collection_key: payloads},
            allow_validation=True,
        )

        elements = body.get(collection_key) or body.get("Elements") or []
        if len(elements) != len(payloads):
            if body.get("Message") and not elements:
                # Whole batch rejected without per-record detail
                message = str(body["Message"])
                return [SaveOutcome(ok=False, errors=[message]) for _ in payloads]
            raise LedgerSystemicError(
                f"{resource} save returned {len(elements)} results "
                f"for {len(payloads)} records"
            )

        outcomes = []
        for element in elements:
            errors = _element_errors(element)
            outcomes.append(
                SaveOutcome(ok=not errors, payload=None if errors else element, errors=errors)
            )
        return outcomes

    async def save_contacts(self, payloads: List[Dict[str, Any]]) -> List[SaveOutcome]:
        return await self.save_records("Contacts", payloads)

    async def save_invoices(self, payloads: List[Dict[str, Any]]) -> List[SaveOutcome]:
        return await self.save_records("Invoices", payloads)

    async def create_payments(self, payloads: List[Dict[str, Any]]) -> List[SaveOutcome]:
        return await self.save_records("Payments", payloads)

    # ── Internal helpers ──────────────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        allow_validation: bool = False,
    ) -> Dict[str, Any]:
        """Send one request and map HTTP failures onto the ledger error taxonomy."""
        request_headers = dict(headers or {})
        content = None
        if json_body is not None:
            content = json.dumps(json_body, default=_json_default)
            request_headers["Content-Type"] = "application/json"

        try:
            response = await self._http.request(
                method, path, params=params, headers=request_headers, content=content
            )
        except httpx.TimeoutException as exc:
            raise LedgerUnavailableError(f"Timeout calling ledger {path}") from exc
        except httpx.TransportError as exc:
            raise LedgerUnavailableError(f"Network error calling ledger {path}: {exc}") from exc

        status = response.status_code
        if status == 304:
            return {}  # nothing modified since the watermark
        if status == 401:
            raise LedgerAuthError("Ledger rejected the access token (token invalid or expired)", 401)
        if status == 403:
            raise LedgerPermissionError(f"Permission denied for {method} {path}", 403)
        if status == 429:
            retry_after = response.headers.get("Retry-After")
            raise LedgerRateLimitError(
                "Ledger rate limit exceeded",
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if status >= 500:
            raise LedgerUnavailableError(f"Ledger returned HTTP {status} for {path}", status)

        try:
            body = response.json(parse_float=Decimal) if response.content else {}
        except ValueError as exc:
            raise LedgerUnavailableError(f"Ledger returned invalid JSON for {path}") from exc

        if status == 400:
            if allow_validation:
                return body
            raise LedgerValidationError(str(body.get("Message", "Validation failed")))
        if status >= 400:
            raise LedgerError(f"Ledger returned HTTP {status} for {path}", status)
        return body
