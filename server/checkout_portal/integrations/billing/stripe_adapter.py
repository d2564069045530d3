"""
Stripe Billing Adapter

Card payments for checkout sessions are Stripe PaymentIntents; the intent id
is the session's payment reference and the correlation id of every Stripe
webhook.
"""

import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

import stripe
from stripe import StripeClient, StripeError

from checkout_portal.core.logging import get_logger

from .base import (
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


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1")))


def from_minor_units(amount: Optional[int]) -> Optional[Decimal]:
    return Decimal(amount) / 100 if amount is not None else None


class StripeAdapter(BillingProvider):
    """Stripe billing adapter."""

    def __init__(
        self,
        api_key: Optional[str],
        webhook_secret: Optional[str] = None,
        timeout_seconds: float = 10.0,
        **config
    ):
        """
        Initialize Stripe adapter.

        Args:
            api_key: Stripe secret API key
            webhook_secret: Stripe webhook secret for signature verification
            timeout_seconds: Network timeout for API calls
        """
        super().__init__(webhook_secret=webhook_secret, **config)
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.timeout_seconds = timeout_seconds
        self._client: Optional[StripeClient] = None

    def _get_billing_type(self) -> BillingType:
        return BillingType.STRIPE

    @property
    def client(self) -> StripeClient:
        if not self.api_key:
            raise BillingError("Stripe API key not configured", "not_configured", "stripe")
        if self._client is None:
            self._client = StripeClient(
                self.api_key,
                http_client=stripe.HTTPXClient(timeout=self.timeout_seconds),
                max_network_retries=0,
            )
        return self._client

    async def create_invoice(self, request: InvoiceRequest) -> InvoiceResult:
        params: Dict[str, Any] = {
            "amount": to_minor_units(request.amount),
            "currency": request.currency.lower(),
            "automatic_payment_methods": {"enabled": True},
            "capture_method": "automatic",
            "receipt_email": request.customer.email,
            "metadata": {
                "checkout_session_id": request.checkout_session_id,
                "email": request.customer.email,
                "quantity": str(sum(item.quantity for item in request.line_items) or 1),
            },
        }
        if request.notes:
            params["description"] = request.notes

        try:
            intent = await self.client.v1.payment_intents.create_async(
                params=params,
                options={"idempotency_key": f"checkout-{request.checkout_session_id}"},
            )
        except StripeError as e:
            logger.error("stripe.payment_intent.create_failed", error=str(e))
            raise BillingError(str(e), "stripe_api_error", "stripe") from e

        return InvoiceResult(
            reference=intent.id,
            billing_type=self.billing_type,
            amount=request.amount,
            currency=request.currency.upper(),
            status=self._map_stripe_status(intent.status),
            client_secret=intent.client_secret,
            created_at=datetime.fromtimestamp(intent.created, timezone.utc),
        )

    async def capture_payment(self, reference: str, amount: Optional[Decimal] = None) -> PaymentResult:
        params: Dict[str, Any] = {}
        if amount is not None:
            params["amount_to_capture"] = to_minor_units(amount)

        try:
            intent = await self.client.v1.payment_intents.capture_async(reference, params=params)
        except StripeError as e:
            logger.error("stripe.payment_intent.capture_failed", reference=reference, error=str(e))
            raise BillingError(str(e), "stripe_capture_error", "stripe", reference=reference) from e

        status = self._map_stripe_status(intent.status)
        return PaymentResult(
            success=status == PaymentStatus.SUCCEEDED,
            transaction_id=intent.id,
            amount=from_minor_units(intent.amount_received),
            currency=intent.currency.upper() if intent.currency else None,
            status=status,
            billing_type=self.billing_type,
            processed_at=datetime.now(timezone.utc),
        )

    async def refund_payment(
        self,
        reference: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        params: Dict[str, Any] = {"payment_intent": reference}
        if amount is not None:
            params["amount"] = to_minor_units(amount)
        if reason:
            params["reason"] = reason

        try:
            refund = await self.client.v1.refunds.create_async(params=params)
        except StripeError as e:
            logger.error("stripe.refund.failed", reference=reference, error=str(e))
            raise BillingError(str(e), "stripe_refund_error", "stripe", reference=reference) from e

        return RefundResult(
            success=refund.status in ("succeeded", "pending"),
            refund_id=refund.id,
            reference=reference,
            amount=from_minor_units(refund.amount),
            status=PaymentStatus.REFUNDED if refund.status == "succeeded" else PaymentStatus.PENDING,
            billing_type=self.billing_type,
            reason=refund.reason,
        )

    async def get_payment_status(self, reference: str) -> PaymentStatusResult:
        try:
            intent = await self.client.v1.payment_intents.retrieve_async(reference)
        except StripeError as e:
            logger.error("stripe.payment_intent.retrieve_failed", reference=reference, error=str(e))
            raise BillingError(str(e), "stripe_status_error", "stripe", reference=reference) from e

        return PaymentStatusResult(
            reference=intent.id,
            status=self._map_stripe_status(intent.status),
            billing_type=self.billing_type,
            amount=from_minor_units(intent.amount),
            currency=intent.currency.upper() if intent.currency else None,
        )

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if not self.webhook_secret:
            raise BillingError("Webhook secret not configured", "webhook_secret_missing", "stripe")
        if not signature:
            raise BillingError("Missing Stripe-Signature header", "webhook_signature_missing", "stripe")

        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.warning("stripe.webhook.signature_invalid")
            raise BillingError("Invalid webhook signature", "webhook_signature_invalid", "stripe") from e
        except ValueError as e:
            raise BillingError("Invalid webhook payload", "webhook_json_invalid", "stripe") from e

        return json.loads(payload)

    def _map_stripe_status(self, stripe_status: Optional[str]) -> PaymentStatus:
        status_mapping = {
            "requires_payment_method": PaymentStatus.PENDING,
            "requires_confirmation": PaymentStatus.PENDING,
            "requires_action": PaymentStatus.PENDING,
            "processing": PaymentStatus.PENDING,
            "requires_capture": PaymentStatus.REQUIRES_CAPTURE,
            "succeeded": PaymentStatus.SUCCEEDED,
            "canceled": PaymentStatus.CANCELED,
        }
        return status_mapping.get(stripe_status or "", PaymentStatus.PENDING)
