"""
Webhook pipeline: normalize -> admit -> apply -> (maybe) provision.

Every typed failure becomes a ``WebhookResult`` outcome so the route can
acknowledge the delivery. Anything else propagates, the transaction (ledger
row included) rolls back and the provider redelivers.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_portal.core.errors import (
    DuplicateEvent,
    NotFoundError,
    ProviderCallError,
    StateConflictError,
    WebhookValidationError,
)
from checkout_portal.core.identity import SYSTEM_ACTOR
from checkout_portal.core.logging import bind_webhook_context, clear_webhook_context, get_logger
from checkout_portal.integrations.crm import CRMClient
from checkout_portal.models.audit import AuditCategory
from checkout_portal.models.checkout import AgreementStatus, CheckoutSession, CheckoutStatus
from checkout_portal.schemas.webhook import WebhookOutcome
from checkout_portal.services.audit_service import record_audit, record_operator_alert
from checkout_portal.services.checkout_service import (
    find_agreement_by_envelope,
    find_by_invoice_reference,
    find_by_payment_reference,
)
from checkout_portal.services.idempotency import admit_once
from checkout_portal.services.normalizer import AGREEMENT_KINDS, EventKind, NormalizedEvent, Provider, normalize
from checkout_portal.services.outbox_service import CustomerNotification, enqueue_customer_notification
from checkout_portal.services.provisioning_service import ProvisioningResult, provision_checkout
from checkout_portal.services.state_machine import (
    AgreementOutcome,
    SessionGuards,
    advance_session,
    apply_agreement_event,
    record_transition_audit,
)

logger = get_logger(__name__)


@dataclass(slots=True)
class WebhookResult:
    outcome: WebhookOutcome
    event: Optional[NormalizedEvent] = None
    checkout_session_id: Optional[str] = None
    provisioning: Optional[ProvisioningResult] = None
    detail: Optional[str] = None


@dataclass(slots=True)
class _Applied:
    checkout_session_id: str
    provision: bool = False
    changed: bool = True


async def process_webhook(
    session: AsyncSession,
    provider: Provider,
    payload: Mapping[str, Any],
    *,
    crm: CRMClient,
    redis_client: Optional[Redis] = None,
) -> WebhookResult:
    """Reconcile one authenticated webhook delivery."""
    try:
        event = normalize(provider, payload)
    except WebhookValidationError as exc:
        logger.warning("webhook.invalid", provider=provider.value, error=exc.error_message)
        return WebhookResult(WebhookOutcome.INVALID, detail=exc.error_message)

    bind_webhook_context(provider=provider.value, event_id=event.event_id, correlation_id=event.correlation_id)
    try:
        return await _process_event(session, event, crm=crm, redis_client=redis_client)
    finally:
        clear_webhook_context()


async def _process_event(
    session: AsyncSession,
    event: NormalizedEvent,
    *,
    crm: CRMClient,
    redis_client: Optional[Redis],
) -> WebhookResult:
    logger.info("webhook.received", kind=event.kind.value, raw_type=event.raw_type)
    if not event.is_handled:
        return WebhookResult(WebhookOutcome.IGNORED, event, detail=event.raw_type)

    try:
        await admit_once(
            session,
            event.provider.value,
            event.event_id,
            kind=event.kind.value,
            correlation_id=event.correlation_id,
        )
    except DuplicateEvent:
        await session.rollback()
        return WebhookResult(WebhookOutcome.DUPLICATE, event)

    try:
        applied = await _apply_event(session, event)
    except NotFoundError as exc:
        record_operator_alert(
            session,
            action="webhook.correlation_missing",
            provider=event.provider.value,
            event_id=event.event_id,
            kind=event.kind.value,
            correlation_id=event.correlation_id,
        )
        await session.commit()
        return WebhookResult(WebhookOutcome.NOT_FOUND, event, detail=exc.error_message)
    except StateConflictError as exc:
        record_operator_alert(
            session,
            action="webhook.state_conflict",
            checkout_session_id=exc.correlation_id,
            provider=event.provider.value,
            event_id=event.event_id,
            kind=event.kind.value,
            reason=exc.error_message,
        )
        await session.commit()
        return WebhookResult(WebhookOutcome.CONFLICT, event, exc.correlation_id, detail=exc.error_message)

    record_audit(
        session,
        action=f"webhook.{event.kind.value}",
        category=AuditCategory.WEBHOOK,
        checkout_session_id=applied.checkout_session_id,
        details={"provider": event.provider.value, "event_id": event.event_id, "changed": applied.changed},
    )
    await session.commit()
    logger.info("webhook.applied", checkout_session_id=applied.checkout_session_id, changed=applied.changed)

    if not applied.provision:
        outcome = WebhookOutcome.PROCESSED if applied.changed else WebhookOutcome.IGNORED
        return WebhookResult(outcome, event, applied.checkout_session_id)

    try:
        provisioning = await provision_checkout(
            session,
            applied.checkout_session_id,
            crm=crm,
            redis_client=redis_client,
            actor=SYSTEM_ACTOR,
        )
    except ProviderCallError as exc:
        return WebhookResult(WebhookOutcome.PROVIDER_ERROR, event, applied.checkout_session_id, detail=exc.error_code)
    except StateConflictError as exc:
        return WebhookResult(WebhookOutcome.CONFLICT, event, applied.checkout_session_id, detail=exc.error_message)
    return WebhookResult(WebhookOutcome.PROCESSED, event, applied.checkout_session_id, provisioning)


async def _apply_event(session: AsyncSession, event: NormalizedEvent) -> _Applied:
    if event.kind in AGREEMENT_KINDS:
        return await _apply_agreement_event(session, event)

    checkout = await _find_payment_session(session, event)
    handlers = {
        EventKind.PAYMENT_SUCCEEDED: _apply_payment_succeeded,
        EventKind.INVOICE_PAID: _apply_payment_succeeded,
        EventKind.PAYMENT_FAILED: _apply_payment_failed,
        EventKind.INVOICE_VOIDED: _apply_invoice_voided,
        EventKind.REFUND_ISSUED: _apply_refund_issued,
    }
    return await handlers[event.kind](session, checkout, event)


async def _find_payment_session(session: AsyncSession, event: NormalizedEvent) -> CheckoutSession:
    if event.provider is Provider.ZOHO_BILLING:
        checkout = await find_by_invoice_reference(session, event.correlation_id)
    else:
        checkout = await find_by_payment_reference(session, event.correlation_id)
    if checkout is None:
        raise NotFoundError(
            f"no checkout session for {event.provider.value} reference {event.correlation_id}",
            provider=event.provider.value,
        )
    return checkout


def _agreement_completed(checkout: CheckoutSession) -> bool:
    return checkout.agreement is not None and checkout.agreement.status == AgreementStatus.COMPLETED


async def _apply_agreement_event(session: AsyncSession, event: NormalizedEvent) -> _Applied:
    agreement = await find_agreement_by_envelope(session, event.correlation_id)
    if agreement is None:
        raise NotFoundError(f"no agreement for envelope {event.correlation_id}", provider=event.provider.value)

    checkout = agreement.checkout_session
    transition = apply_agreement_event(agreement, event.kind, event.occurred_at)
    if transition.outcome is AgreementOutcome.CONFLICT:
        logger.warning(
            "agreement.transition.conflict",
            checkout_session_id=checkout.id,
            current=transition.current.value,
            reason=transition.reason,
        )
        raise StateConflictError(transition.reason or "agreement conflict", correlation_id=checkout.id)
    if transition.outcome is AgreementOutcome.NOOP:
        logger.info("agreement.transition.noop", checkout_session_id=checkout.id, current=transition.current.value)
        return _Applied(checkout.id, changed=False)

    record_audit(
        session,
        action="agreement.status.transition",
        category=AuditCategory.STATE_TRANSITION,
        checkout_session_id=checkout.id,
        details={"from": transition.previous.value, "to": transition.current.value},
    )
    logger.info(
        "agreement.transition.applied",
        checkout_session_id=checkout.id,
        previous=transition.previous.value,
        current=transition.current.value,
    )
    provision = transition.became_completed and checkout.status in (
        CheckoutStatus.PAYMENT_COMPLETED,
        CheckoutStatus.CONTACT_CREATED,
        CheckoutStatus.SALES_ORDER_CREATED,
    )
    return _Applied(checkout.id, provision=provision)


async def _apply_payment_succeeded(session: AsyncSession, checkout: CheckoutSession, event: NormalizedEvent) -> _Applied:
    if checkout.status in (CheckoutStatus.CANCELLED, CheckoutStatus.REFUNDED):
        raise StateConflictError(
            f"payment succeeded for a {checkout.status.value} session",
            correlation_id=checkout.id,
        )

    if checkout.status not in (CheckoutStatus.PENDING, CheckoutStatus.PAYMENT_FAILED):
        logger.info("checkout.payment.already_confirmed", checkout_session_id=checkout.id, status=checkout.status.value)
        return _Applied(checkout.id, provision=False, changed=False)

    transition = advance_session(checkout, CheckoutStatus.PAYMENT_COMPLETED, SessionGuards())
    if not transition.succeeded:
        raise StateConflictError(transition.reason or "payment transition refused", correlation_id=checkout.id)
    if event.card_last4:
        checkout.card_last4 = event.card_last4
    record_transition_audit(checkout, actor=SYSTEM_ACTOR, session=session, details={"event_id": event.event_id})
    await enqueue_customer_notification(
        session,
        checkout,
        CustomerNotification.PAYMENT_CONFIRMED,
        recipient=checkout.user.email,
        amount=event.amount,
        card_last4=checkout.card_last4,
    )
    return _Applied(checkout.id, provision=_agreement_completed(checkout))


async def _apply_payment_failed(session: AsyncSession, checkout: CheckoutSession, event: NormalizedEvent) -> _Applied:
    if checkout.status != CheckoutStatus.PENDING:
        logger.info("checkout.payment_failed.ignored", checkout_session_id=checkout.id, status=checkout.status.value)
        return _Applied(checkout.id, changed=False)

    advance_session(checkout, CheckoutStatus.PAYMENT_FAILED, SessionGuards())
    record_transition_audit(checkout, actor=SYSTEM_ACTOR, session=session, details={"event_id": event.event_id})
    await enqueue_customer_notification(
        session,
        checkout,
        CustomerNotification.PAYMENT_FAILED,
        recipient=checkout.user.email,
        reason=event.attributes.get("failure_reason"),
    )
    return _Applied(checkout.id)


async def _apply_invoice_voided(session: AsyncSession, checkout: CheckoutSession, event: NormalizedEvent) -> _Applied:
    if checkout.status == CheckoutStatus.CANCELLED:
        return _Applied(checkout.id, changed=False)

    transition = advance_session(checkout, CheckoutStatus.CANCELLED, SessionGuards())
    if not transition.succeeded:
        raise StateConflictError(transition.reason or "cannot cancel session", correlation_id=checkout.id)
    record_transition_audit(checkout, actor=SYSTEM_ACTOR, session=session, details={"event_id": event.event_id})
    await enqueue_customer_notification(
        session,
        checkout,
        CustomerNotification.ORDER_CANCELLED,
        recipient=checkout.user.email,
    )
    return _Applied(checkout.id)


async def _apply_refund_issued(session: AsyncSession, checkout: CheckoutSession, event: NormalizedEvent) -> _Applied:
    if checkout.status == CheckoutStatus.REFUNDED:
        return _Applied(checkout.id, changed=False)

    transition = advance_session(checkout, CheckoutStatus.REFUNDED, SessionGuards())
    if not transition.succeeded:
        raise StateConflictError(transition.reason or "cannot refund session", correlation_id=checkout.id)
    record_transition_audit(checkout, actor=SYSTEM_ACTOR, session=session, details={"event_id": event.event_id})
    await enqueue_customer_notification(
        session,
        checkout,
        CustomerNotification.REFUND_PROCESSED,
        recipient=checkout.user.email,
        amount=event.amount,
    )
    return _Applied(checkout.id)
