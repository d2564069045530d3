"""
Maps raw provider webhook bodies onto the internal event vocabulary.

Callers authenticate the body first; this module does no I/O and nothing
downstream of it sees provider JSON.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping

from checkout_portal.core.errors import WebhookValidationError
from checkout_portal.core.logging import get_logger

logger = get_logger(__name__)


class Provider(str, Enum):
    STRIPE = "stripe"
    DOCUSIGN = "docusign"
    ZOHO_BILLING = "zoho_billing"


class EventKind(str, Enum):
    PAYMENT_SUCCEEDED = "PaymentSucceeded"
    PAYMENT_FAILED = "PaymentFailed"
    AGREEMENT_SENT = "AgreementSent"
    AGREEMENT_PARTIALLY_SIGNED = "AgreementPartiallySigned"
    AGREEMENT_COMPLETED = "AgreementCompleted"
    AGREEMENT_DECLINED = "AgreementDeclined"
    AGREEMENT_VOIDED = "AgreementVoided"
    INVOICE_PAID = "InvoicePaid"
    INVOICE_VOIDED = "InvoiceVoided"
    REFUND_ISSUED = "RefundIssued"
    UNHANDLED = "Unhandled"


AGREEMENT_KINDS = frozenset(
    {
        EventKind.AGREEMENT_SENT,
        EventKind.AGREEMENT_PARTIALLY_SIGNED,
        EventKind.AGREEMENT_COMPLETED,
        EventKind.AGREEMENT_DECLINED,
        EventKind.AGREEMENT_VOIDED,
    }
)


@dataclass(frozen=True, slots=True)
class NormalizedEvent:
    provider: Provider
    kind: EventKind
    event_id: str
    correlation_id: str | None
    raw_type: str
    occurred_at: datetime | None = None
    card_last4: str | None = None
    amount: str | None = None
    attributes: Mapping[str, Any] = field(default_factory=dict)

    @property
    def is_handled(self) -> bool:
        return self.kind is not EventKind.UNHANDLED


STRIPE_EVENT_KINDS = {
    "payment_intent.succeeded": EventKind.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": EventKind.PAYMENT_FAILED,
    "payment_intent.canceled": EventKind.PAYMENT_FAILED,
    "charge.refunded": EventKind.REFUND_ISSUED,
}

# Keys are lowercased with separators removed so "envelope-sent" and "EnvelopeSent" match
DOCUSIGN_EVENT_KINDS = {
    "envelopesent": EventKind.AGREEMENT_SENT,
    "recipientcompleted": EventKind.AGREEMENT_PARTIALLY_SIGNED,
    "envelopecompleted": EventKind.AGREEMENT_COMPLETED,
    "envelopedeclined": EventKind.AGREEMENT_DECLINED,
    "recipientdeclined": EventKind.AGREEMENT_DECLINED,
    "envelopevoided": EventKind.AGREEMENT_VOIDED,
}

ZOHO_BILLING_EVENT_KINDS = {
    "invoice.paid": EventKind.INVOICE_PAID,
    "invoice.voided": EventKind.INVOICE_VOIDED,
    "payment.created": EventKind.PAYMENT_SUCCEEDED,
    "refund.created": EventKind.REFUND_ISSUED,
}


def _digest(*parts: Any) -> str:
    joined = "|".join("" if part is None else str(part) for part in parts)
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()[:40]


def _as_mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _require(value: Any, provider: Provider, what: str, raw_type: str) -> str:
    if value is None or value == "":
        raise WebhookValidationError(f"{provider.value} {raw_type or 'event'} is missing {what}", provider=provider.value)
    return str(value)


def _normalize_stripe(payload: Mapping[str, Any]) -> NormalizedEvent:
    raw_type = str(payload.get("type") or "")
    event_id = _require(payload.get("id"), Provider.STRIPE, "event id", raw_type)
    obj = _as_mapping(_as_mapping(payload.get("data")).get("object"))
    kind = STRIPE_EVENT_KINDS.get(raw_type, EventKind.UNHANDLED)
    occurred_at = _parse_timestamp(payload.get("created"))

    if kind is EventKind.UNHANDLED:
        return NormalizedEvent(Provider.STRIPE, kind, event_id, obj.get("id"), raw_type, occurred_at)

    if obj.get("object") == "charge" or raw_type.startswith("charge."):
        correlation_id = obj.get("payment_intent")
    else:
        correlation_id = obj.get("id")
    correlation_id = _require(correlation_id, Provider.STRIPE, "payment intent id", raw_type)

    card = _as_mapping(_as_mapping(obj.get("payment_method_details")).get("card"))
    last4 = card.get("last4")
    if last4 is None:
        charges = _as_mapping(obj.get("charges")).get("data") or []
        if charges:
            first = _as_mapping(charges[0])
            last4 = _as_mapping(_as_mapping(first.get("payment_method_details")).get("card")).get("last4")

    amount = obj.get("amount_refunded") if kind is EventKind.REFUND_ISSUED else obj.get("amount")
    failure = _as_mapping(obj.get("last_payment_error")).get("message")

    return NormalizedEvent(
        provider=Provider.STRIPE,
        kind=kind,
        event_id=event_id,
        correlation_id=correlation_id,
        raw_type=raw_type,
        occurred_at=occurred_at,
        card_last4=str(last4) if last4 else None,
        amount=str(amount) if amount is not None else None,
        attributes={"failure_reason": failure} if failure else {},
    )


def _normalize_docusign(payload: Mapping[str, Any]) -> NormalizedEvent:
    raw_type = str(payload.get("event") or payload.get("eventType") or "")
    data = _as_mapping(payload.get("data"))
    kind = DOCUSIGN_EVENT_KINDS.get(raw_type.replace("-", "").replace("_", "").lower(), EventKind.UNHANDLED)
    envelope_id = data.get("envelopeId") or payload.get("envelopeId")
    generated = payload.get("generatedDateTime")
    recipient_id = data.get("recipientId")

    event_id = payload.get("eventId") or data.get("eventId")
    if not event_id:
        if not envelope_id:
            raise WebhookValidationError("docusign event carries neither an event id nor an envelope id", provider="docusign")
        event_id = _digest(raw_type, envelope_id, generated, recipient_id)

    if kind is not EventKind.UNHANDLED:
        envelope_id = _require(envelope_id, Provider.DOCUSIGN, "envelope id", raw_type)

    return NormalizedEvent(
        provider=Provider.DOCUSIGN,
        kind=kind,
        event_id=str(event_id),
        correlation_id=str(envelope_id) if envelope_id else None,
        raw_type=raw_type,
        occurred_at=_parse_timestamp(generated),
        attributes={"recipient_id": recipient_id} if recipient_id else {},
    )


def _normalize_zoho_billing(payload: Mapping[str, Any]) -> NormalizedEvent:
    raw_type = str(payload.get("event_type") or "")
    data = _as_mapping(payload.get("data"))
    kind = ZOHO_BILLING_EVENT_KINDS.get(raw_type, EventKind.UNHANDLED)

    event_id = payload.get("event_id")
    if not event_id:
        if not data.get("id"):
            raise WebhookValidationError("zoho billing event carries neither an event id nor a record id", provider="zoho_billing")
        event_id = _digest(raw_type, data.get("id"))

    if kind in (EventKind.INVOICE_PAID, EventKind.INVOICE_VOIDED):
        correlation_id = data.get("invoice_id") or data.get("id")
    elif kind is EventKind.PAYMENT_SUCCEEDED:
        correlation_id = data.get("invoice_id")
    elif kind is EventKind.REFUND_ISSUED:
        correlation_id = data.get("invoice_id") or data.get("payment_id")
    else:
        correlation_id = data.get("id")

    if kind is not EventKind.UNHANDLED:
        correlation_id = _require(correlation_id, Provider.ZOHO_BILLING, "invoice id", raw_type)

    amount = data.get("amount")
    return NormalizedEvent(
        provider=Provider.ZOHO_BILLING,
        kind=kind,
        event_id=str(event_id),
        correlation_id=str(correlation_id) if correlation_id else None,
        raw_type=raw_type,
        occurred_at=_parse_timestamp(payload.get("event_time")),
        amount=str(amount) if amount is not None else None,
        attributes={"payment_id": data["payment_id"]} if data.get("payment_id") else {},
    )


NORMALIZERS: dict[Provider, Callable[[Mapping[str, Any]], NormalizedEvent]] = {
    Provider.STRIPE: _normalize_stripe,
    Provider.DOCUSIGN: _normalize_docusign,
    Provider.ZOHO_BILLING: _normalize_zoho_billing,
}


def normalize(provider: Provider | str, payload: Any) -> NormalizedEvent:
    """
    Translate an authenticated webhook body into a ``NormalizedEvent``.

    Unknown event types produce ``EventKind.UNHANDLED``. A body that is not
    an object, or that lacks the event id or the correlation id its kind
    needs, raises ``WebhookValidationError``.
    """
    provider = Provider(provider)
    if not isinstance(payload, Mapping):
        raise WebhookValidationError("webhook body must be a JSON object", provider=provider.value)

    event = NORMALIZERS[provider](payload)
    if not event.is_handled:
        logger.info("webhook.event.unhandled", provider=provider.value, raw_type=event.raw_type)
    return event
