"""
Zoho Billing Adapter

Invoiced orders are created in Zoho Billing (Books API); the invoice id is
the session's invoice reference and the correlation id of billing webhooks.
"""

import hashlib
import hmac
import json
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from checkout_portal.core.logging import get_logger

from .base import (
    BillingCustomer,
    BillingError,
    BillingProvider,
    BillingType,
    InvoiceRequest,
    InvoiceResult,
    PaymentResult,
    PaymentStatus,
    PaymentStatusResult,
    RefundResult,
)

logger = get_logger(__name__)

INVOICE_STATUS_MAP = {
    "draft": PaymentStatus.PENDING,
    "sent": PaymentStatus.PENDING,
    "overdue": PaymentStatus.PENDING,
    "partially_paid": PaymentStatus.PENDING,
    "paid": PaymentStatus.SUCCEEDED,
    "void": PaymentStatus.CANCELED,
}


def compute_webhook_signature(payload: bytes, secret: str) -> str:
    """Return the hex HMAC-SHA256 Zoho sends in X-Zoho-Webhook-Signature."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


class ZohoBillingAdapter(BillingProvider):
    """Zoho Billing adapter."""

    def __init__(
        self,
        base_url: str,
        organization_id: Optional[str],
        auth_token: Optional[str],
        webhook_secret: Optional[str] = None,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **config
    ):
        super().__init__(base_url=base_url, organization_id=organization_id, **config)
        self.base_url = base_url.rstrip("/")
        self.organization_id = organization_id
        self.auth_token = auth_token
        self.webhook_secret = webhook_secret
        self.timeout = httpx.Timeout(timeout_seconds, connect=min(timeout_seconds, 5.0))
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_billing_type(self) -> BillingType:
        return BillingType.ZOHO_BILLING

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={
                    "Authorization": f"Zoho-authtoken {self.auth_token}",
                    "X-organization-id": self.organization_id or "",
                    "Content-Type": "application/json",
                },
            )
        return self._client

    async def create_invoice(self, request: InvoiceRequest) -> InvoiceResult:
        customer_id = await self._find_or_create_customer(request.customer)

        line_items = [
            {
                "name": item.name,
                "description": item.description or "",
                "rate": float(item.rate),
                "quantity": item.quantity,
            }
            for item in request.line_items
        ] or [{"name": "Checkout order", "rate": float(request.amount), "quantity": 1}]

        body = {
            "invoice": {
                "customer_id": customer_id,
                "line_items": line_items,
                "date": date.today().isoformat(),
                "reference_number": request.checkout_session_id,
                "notes": request.notes,
            }
        }
        data = await self._request("POST", "/invoices", "create_invoice", json=body)
        invoice = data.get("invoice") or {}
        invoice_id = invoice.get("invoice_id")
        if not invoice_id:
            raise BillingError("No invoice id returned", "no_invoice_id", "zoho_billing", provider_response=data)

        logger.info("zoho_billing.invoice.created", invoice_id=invoice_id)
        return InvoiceResult(
            reference=str(invoice_id),
            billing_type=self.billing_type,
            amount=Decimal(str(invoice.get("total", request.amount))),
            currency=request.currency.upper(),
            status=INVOICE_STATUS_MAP.get(invoice.get("status", "draft"), PaymentStatus.PENDING),
            created_at=datetime.now(timezone.utc),
            provider_response=data,
        )

    async def capture_payment(self, reference: str, amount: Optional[Decimal] = None) -> PaymentResult:
        if amount is None:
            amount = (await self.get_payment_status(reference)).amount or Decimal("0")

        body = {
            "payment": {
                "invoice_id": reference,
                "amount": float(amount),
                "payment_mode": "creditcard",
                "date": date.today().isoformat(),
            }
        }
        data = await self._request("POST", "/customerpayments", "record_payment", json=body)
        payment = data.get("payment") or {}
        return PaymentResult(
            success=True,
            transaction_id=str(payment.get("payment_id", "")),
            amount=amount,
            currency=None,
            status=PaymentStatus.SUCCEEDED,
            billing_type=self.billing_type,
            processed_at=datetime.now(timezone.utc),
            provider_response=data,
        )

    async def refund_payment(
        self,
        reference: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        body = {
            "refund": {
                "amount": float(amount) if amount is not None else None,
                "reason": reason,
                "date": date.today().isoformat(),
            }
        }
        data = await self._request("POST", f"/customerpayments/{reference}/refunds", "refund_payment", json=body)
        refund = data.get("refund") or {}
        refunded = refund.get("amount")
        return RefundResult(
            success=True,
            refund_id=str(refund.get("refund_id", "")),
            reference=reference,
            amount=Decimal(str(refunded)) if refunded is not None else amount,
            status=PaymentStatus.REFUNDED,
            billing_type=self.billing_type,
            reason=reason,
            provider_response=data,
        )

    async def get_payment_status(self, reference: str) -> PaymentStatusResult:
        data = await self._request("GET", f"/invoices/{reference}", "get_invoice")
        invoice = data.get("invoice") or {}
        total = invoice.get("total")
        return PaymentStatusResult(
            reference=reference,
            status=INVOICE_STATUS_MAP.get(invoice.get("status", ""), PaymentStatus.PENDING),
            billing_type=self.billing_type,
            amount=Decimal(str(total)) if total is not None else None,
            currency=invoice.get("currency_code"),
            provider_response=data,
        )

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if not self.webhook_secret:
            raise BillingError("Webhook secret not configured", "webhook_secret_missing", "zoho_billing")
        if not signature:
            raise BillingError("Missing webhook signature", "webhook_signature_missing", "zoho_billing")

        expected = compute_webhook_signature(payload, self.webhook_secret)
        if not hmac.compare_digest(expected, signature.strip().lower()):
            raise BillingError("Invalid webhook signature", "webhook_signature_invalid", "zoho_billing")

        try:
            return json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise BillingError(f"Invalid webhook JSON: {e}", "webhook_json_invalid", "zoho_billing") from e

    async def _find_or_create_customer(self, customer: BillingCustomer) -> str:
        found = await self._request("GET", "/contacts", "find_customer", params={"email": customer.email})
        contacts = found.get("contacts") or []
        if contacts:
            return str(contacts[0]["contact_id"])

        name = customer.name or customer.email
        first, _, last = name.partition(" ")
        body = {
            "contact_name": customer.company or name,
            "company_name": customer.company or "",
            "contact_persons": [
                {
                    "first_name": first,
                    "last_name": last,
                    "email": customer.email,
                    "phone": customer.phone or "",
                    "is_primary_contact": True,
                }
            ],
            "billing_address": customer.address or {},
        }
        created = await self._request("POST", "/contacts", "create_customer", json=body)
        contact_id = (created.get("contact") or {}).get("contact_id")
        if not contact_id:
            raise BillingError("No customer id returned", "no_customer_id", "zoho_billing", provider_response=created)
        return str(contact_id)

    async def _request(self, method: str, path: str, operation: str, **kwargs) -> Dict[str, Any]:
        if not (self.auth_token and self.organization_id):
            raise BillingError("Zoho Billing is not configured", "not_configured", "zoho_billing")

        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("zoho_billing.request.timeout", operation=operation)
            raise BillingError(f"Zoho Billing timed out during {operation}", "timeout", "zoho_billing") from e
        except httpx.HTTPError as e:
            logger.warning("zoho_billing.request.transport_error", operation=operation, error=str(e))
            raise BillingError(f"Zoho Billing unreachable during {operation}", "transport_error", "zoho_billing") from e

        try:
            data = response.json()
        except ValueError:
            data = {"raw": response.text}

        if response.status_code >= 400:
            message = data.get("message") if isinstance(data, dict) else None
            if response.status_code == 401:
                raise BillingError("Authentication failed - check auth token", "auth_error", "zoho_billing", data)
            if response.status_code == 404:
                raise BillingError("Resource not found", "not_found", "zoho_billing", data)
            if response.status_code == 429:
                raise BillingError("Rate limit exceeded", "rate_limit", "zoho_billing", data)
            if response.status_code >= 500:
                raise BillingError("Zoho Billing server error", "server_error", "zoho_billing", data)
            raise BillingError(message or f"Zoho Billing error in {operation}", "api_error", "zoho_billing", data)

        # Books reports application errors with a non-zero code inside a 200
        if isinstance(data, dict) and data.get("code") not in (None, 0):
            raise BillingError(data.get("message") or f"Zoho Billing rejected {operation}", "api_error", "zoho_billing", data)
        return data

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
