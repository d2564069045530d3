"""
One-time CRM provisioning for a paid and signed checkout session.

The chain is contact -> sales order -> completed. Each step commits before
the next begins and each step's own record is its completion marker, so the
chain can be re-run after any partial failure and resumes where it stopped.

Only one run works a session at a time: a run first claims the session with a
conditional UPDATE on its claim columns and returns ``skipped`` when another
run holds an unexpired claim. A Redis lock, when configured, sits in front.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_portal.core.config import get_settings
from checkout_portal.core.errors import NotFoundError, ProviderCallError, StateConflictError
from checkout_portal.core.identity import SYSTEM_ACTOR
from checkout_portal.core.logging import get_logger
from checkout_portal.integrations.crm import (
    ContactFields,
    CRMClient,
    RelatedEntity,
    SalesOrderLineItem,
    SalesOrderRequest,
)
from checkout_portal.models.audit import AuditCategory
from checkout_portal.models.checkout import (
    PAYMENT_CONFIRMED_STATUSES,
    AgreementSignatureStatus,
    AgreementStatus,
    CheckoutSession,
    CheckoutStatus,
    SalesOrder,
)
from checkout_portal.models.crm import ZohoAccountLink
from checkout_portal.models.mixins import utcnow
from checkout_portal.services.audit_service import record_audit, record_operator_alert
from checkout_portal.services.checkout_service import DEFAULT_MODULE_NAME, get_checkout_session
from checkout_portal.services.outbox_service import CustomerNotification, enqueue_customer_notification
from checkout_portal.services.provider_calls import call_provider
from checkout_portal.services.state_machine import SessionGuards, advance_session, record_transition_audit

logger = get_logger(__name__)

LOCK_PREFIX = "checkout:provisioning:"


@dataclass(slots=True)
class ProvisioningResult:
    checkout_session_id: str
    status: CheckoutStatus
    steps_performed: list[str] = field(default_factory=list)
    contact_id: str | None = None
    sales_order_id: str | None = None
    skipped: bool = False


def is_provisioning_eligible(checkout: CheckoutSession) -> bool:
    agreement = checkout.agreement
    return (
        agreement is not None
        and agreement.status == AgreementStatus.COMPLETED
        and checkout.status in PAYMENT_CONFIRMED_STATUSES
    )


def build_contact_fields(checkout: CheckoutSession) -> ContactFields:
    company = checkout.company_info
    if company is None:
        raise StateConflictError("company info is required to provision the CRM contact", correlation_id=checkout.id)

    first_name, _, last_name = company.contact_name.strip().partition(" ")
    return ContactFields(
        first_name=first_name if last_name else "",
        last_name=last_name or first_name or company.company_name,
        email=company.email or checkout.user.email,
        phone=company.phone,
        company=company.company_name,
        street=company.address,
        city=company.city,
        state=company.state,
        zip_code=company.zip_code,
        country=company.country or "US",
        industry=company.industry,
        description=f"Created via checkout session: {checkout.id}",
    )


def build_sales_order_request(checkout: CheckoutSession, sales_order: SalesOrder) -> SalesOrderRequest:
    module_name = checkout.module or DEFAULT_MODULE_NAME
    amount = Decimal(sales_order.amount)
    return SalesOrderRequest(
        subject=f"{module_name} - {checkout.id}",
        amount=amount,
        currency=sales_order.currency,
        line_items=[SalesOrderLineItem(name=module_name, quantity=1, unit_price=amount)],
        description=f"Checkout session {checkout.id}",
        reference=checkout.id,
    )


async def _acquire_provisioning_lock(redis_client: Optional[Redis], key: str, ttl: int) -> bool:
    if redis_client is None:
        return True
    try:
        return bool(await redis_client.set(key, "1", nx=True, ex=ttl))
    except RedisError as exc:
        logger.warning("provisioning.lock.unavailable", key=key, error=str(exc))
        return True


async def _release_provisioning_lock(redis_client: Optional[Redis], key: str) -> None:
    if redis_client is None:
        return
    try:
        await redis_client.delete(key)
    except RedisError as exc:
        logger.warning("provisioning.lock.release_failed", key=key, error=str(exc))


async def _claim_session(session: AsyncSession, checkout_id: str, token: str, ttl: int) -> bool:
    """Take the session's provisioning claim unless another run holds a live one."""
    now = utcnow()
    claimed = await session.execute(
        update(CheckoutSession)
        .where(
            CheckoutSession.id == checkout_id,
            or_(
                CheckoutSession.provisioning_claim.is_(None),
                CheckoutSession.provisioning_claimed_at < now - timedelta(seconds=ttl),
            ),
        )
        .values(provisioning_claim=token, provisioning_claimed_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return claimed.rowcount == 1


async def _release_claim(session: AsyncSession, checkout_id: str, token: str) -> None:
    await session.execute(
        update(CheckoutSession)
        .where(CheckoutSession.id == checkout_id, CheckoutSession.provisioning_claim == token)
        .values(provisioning_claim=None, provisioning_claimed_at=None)
        .execution_options(synchronize_session=False)
    )
    await session.commit()


async def _get_account_link(session: AsyncSession, user_id: str) -> ZohoAccountLink | None:
    result = await session.execute(
        select(ZohoAccountLink)
        .where(ZohoAccountLink.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def _load_session(session: AsyncSession, checkout_id: str, *, refresh: bool = False) -> CheckoutSession:
    checkout = await get_checkout_session(session, checkout_id, refresh=refresh)
    if checkout is None:
        raise NotFoundError(f"checkout session {checkout_id} not found", correlation_id=checkout_id)
    return checkout


async def provision_checkout(
    session: AsyncSession,
    checkout_id: str,
    *,
    crm: CRMClient,
    redis_client: Optional[Redis] = None,
    actor: str = SYSTEM_ACTOR,
    timeout_seconds: float | None = None,
) -> ProvisioningResult:
    """
    Run (or resume) the provisioning chain for one session.

    Raises:
        NotFoundError: the session does not exist
        StateConflictError: payment or agreement is not in a provisionable state
        ProviderCallError: a CRM call failed or timed out; the session stays in
            its last committed sub-state and an operator alert is recorded
    """
    settings = get_settings()
    timeout = timeout_seconds if timeout_seconds is not None else settings.provider_timeout_seconds

    checkout = await _load_session(session, checkout_id)
    if not _check_provisionable(checkout):
        return ProvisioningResult(checkout.id, checkout.status)

    checkout_id = checkout.id
    lock_key = f"{LOCK_PREFIX}{checkout_id}"
    if not await _acquire_provisioning_lock(redis_client, lock_key, settings.provisioning_lock_ttl_seconds):
        logger.info("provisioning.skipped.locked", checkout_session_id=checkout_id)
        return ProvisioningResult(checkout_id, checkout.status, skipped=True)

    claim_token = str(uuid.uuid4())
    try:
        if not await _claim_session(session, checkout_id, claim_token, settings.provisioning_lock_ttl_seconds):
            logger.info("provisioning.skipped.claimed", checkout_session_id=checkout_id)
            return ProvisioningResult(checkout_id, checkout.status, skipped=True)
        try:
            return await _run_claimed(session, checkout_id, crm=crm, actor=actor, timeout=timeout)
        finally:
            await _release_claim(session, checkout_id, claim_token)
    finally:
        await _release_provisioning_lock(redis_client, lock_key)


def _check_provisionable(checkout: CheckoutSession) -> bool:
    """False when the session is already completed; raises when it cannot be provisioned."""
    if checkout.status == CheckoutStatus.COMPLETED:
        logger.info("provisioning.already_completed", checkout_session_id=checkout.id)
        return False
    if not is_provisioning_eligible(checkout):
        agreement_status = checkout.agreement.status.value if checkout.agreement else None
        raise StateConflictError(
            f"session {checkout.status.value} with agreement {agreement_status} is not ready for provisioning",
            correlation_id=checkout.id,
        )
    return True


async def _run_claimed(
    session: AsyncSession,
    checkout_id: str,
    *,
    crm: CRMClient,
    actor: str,
    timeout: float,
) -> ProvisioningResult:
    # another run may have moved the session between the first read and the claim
    checkout = await _load_session(session, checkout_id, refresh=True)
    result = ProvisioningResult(checkout_id, checkout.status)
    if not _check_provisionable(checkout):
        return result

    step = "contact"
    try:
        link = await _ensure_contact(session, checkout, crm=crm, actor=actor, timeout=timeout, result=result)
        step = "sales_order"
        await _ensure_sales_order(session, checkout, link, crm=crm, actor=actor, timeout=timeout, result=result)
        step = "complete"
        await _mark_completed(session, checkout, link, actor=actor, result=result)
    except (ProviderCallError, StateConflictError) as exc:
        # rollback expires loaded instances; only plain values are used below
        await session.rollback()
        record_operator_alert(
            session,
            action="provisioning.step_failed",
            checkout_session_id=checkout_id,
            actor=actor,
            step=step,
            provider=exc.provider,
            error_code=exc.error_code,
            operation=exc.details.get("operation"),
        )
        await session.commit()
        raise
    except Exception:
        await session.rollback()
        raise

    result.status = checkout.status
    return result


async def _ensure_contact(
    session: AsyncSession,
    checkout: CheckoutSession,
    *,
    crm: CRMClient,
    actor: str,
    timeout: float,
    result: ProvisioningResult,
) -> ZohoAccountLink:
    link = await _get_account_link(session, checkout.user_id)
    if link is not None and checkout.status != CheckoutStatus.PAYMENT_COMPLETED:
        result.contact_id = link.contact_id
        logger.info("provisioning.step.skipped", step="contact", checkout_session_id=checkout.id)
        return link

    fields = build_contact_fields(checkout)
    if link is not None:
        contact_id = await call_provider(
            crm.update_contact(link.contact_id, fields),
            provider="zoho_crm",
            operation="update_contact",
            timeout=timeout,
            correlation_id=checkout.id,
        )
    else:
        matches = await call_provider(
            crm.search_related(RelatedEntity.CONTACTS, f"(Email:equals:{fields.email})"),
            provider="zoho_crm",
            operation="search_contacts",
            timeout=timeout,
            correlation_id=checkout.id,
        )
        if matches:
            contact_id = str(matches[0]["id"])
            logger.warning(
                "provisioning.duplicate_side_effect_detected",
                step="contact",
                checkout_session_id=checkout.id,
                contact_id=contact_id,
            )
        else:
            contact_id = await call_provider(
                crm.create_contact(fields),
                provider="zoho_crm",
                operation="create_contact",
                timeout=timeout,
                correlation_id=checkout.id,
            )
        link = ZohoAccountLink(user_id=checkout.user_id, contact_id=contact_id)
        session.add(link)

    link.contact_id = contact_id
    guards = SessionGuards.for_session(checkout, has_account_link=True)
    transition = advance_session(checkout, CheckoutStatus.CONTACT_CREATED, guards)
    if not transition.succeeded:
        raise StateConflictError(transition.reason or "cannot record contact", correlation_id=checkout.id)
    if transition.changed:
        record_transition_audit(checkout, actor=actor, session=session, details={"contact_id": contact_id})
    record_audit(
        session,
        action="provisioning.contact_synced",
        category=AuditCategory.PROVISIONING,
        checkout_session_id=checkout.id,
        actor=actor,
        details={"contact_id": contact_id},
    )
    checkout_id = checkout.id
    try:
        await session.commit()
    except IntegrityError as exc:
        # another session of the same customer linked a contact first
        await session.rollback()
        logger.warning("provisioning.contact_link.lost_race", checkout_session_id=checkout_id, contact_id=contact_id)
        raise StateConflictError(
            f"customer already linked to a CRM contact by a concurrent run; contact {contact_id} is unlinked",
            error_code="provisioning_race",
            provider="zoho_crm",
            correlation_id=checkout_id,
            details={"operation": "link_contact", "contact_id": contact_id},
        ) from exc

    result.contact_id = contact_id
    result.steps_performed.append("contact")
    logger.info("provisioning.step.completed", step="contact", checkout_session_id=checkout.id, contact_id=contact_id)
    return link


async def _ensure_sales_order(
    session: AsyncSession,
    checkout: CheckoutSession,
    link: ZohoAccountLink,
    *,
    crm: CRMClient,
    actor: str,
    timeout: float,
    result: ProvisioningResult,
) -> None:
    sales_order = checkout.sales_order
    if sales_order is None:
        sales_order = SalesOrder(checkout_session_id=checkout.id, amount=Decimal("0"))
        session.add(sales_order)
        checkout.sales_order = sales_order

    if sales_order.external_id:
        result.sales_order_id = sales_order.external_id
        if checkout.status == CheckoutStatus.CONTACT_CREATED:
            logger.warning(
                "provisioning.duplicate_side_effect_detected",
                step="sales_order",
                checkout_session_id=checkout.id,
                sales_order_id=sales_order.external_id,
            )
        else:
            logger.info("provisioning.step.skipped", step="sales_order", checkout_session_id=checkout.id)
    else:
        external_id = await call_provider(
            crm.create_sales_order(link.contact_id, build_sales_order_request(checkout, sales_order)),
            provider="zoho_crm",
            operation="create_sales_order",
            timeout=timeout,
            correlation_id=checkout.id,
        )
        sales_order.external_id = external_id
        result.sales_order_id = external_id
        result.steps_performed.append("sales_order")
        record_audit(
            session,
            action="provisioning.sales_order_created",
            category=AuditCategory.PROVISIONING,
            checkout_session_id=checkout.id,
            actor=actor,
            details={"sales_order_id": external_id, "contact_id": link.contact_id},
        )
        logger.info(
            "provisioning.step.completed",
            step="sales_order",
            checkout_session_id=checkout.id,
            sales_order_id=external_id,
        )

    guards = SessionGuards.for_session(checkout, has_account_link=True)
    transition = advance_session(checkout, CheckoutStatus.SALES_ORDER_CREATED, guards)
    if not transition.succeeded:
        raise StateConflictError(transition.reason or "cannot record sales order", correlation_id=checkout.id)
    if transition.changed:
        record_transition_audit(checkout, actor=actor, session=session)
    await session.commit()


async def _mark_completed(
    session: AsyncSession,
    checkout: CheckoutSession,
    link: ZohoAccountLink,
    *,
    actor: str,
    result: ProvisioningResult,
) -> None:
    guards = SessionGuards.for_session(checkout, has_account_link=True)
    transition = advance_session(checkout, CheckoutStatus.COMPLETED, guards)
    if not transition.succeeded:
        raise StateConflictError(transition.reason or "cannot complete session", correlation_id=checkout.id)
    if transition.changed:
        record_transition_audit(checkout, actor=actor, session=session)
        await enqueue_customer_notification(
            session,
            checkout,
            CustomerNotification.COMPLETED,
            recipient=checkout.user.email,
            contact_id=link.contact_id,
            sales_order_id=result.sales_order_id,
        )
        result.steps_performed.append("complete")
    await session.commit()
    logger.info("provisioning.step.completed", step="complete", checkout_session_id=checkout.id)


@dataclass(slots=True)
class SweepOutcome:
    checkout_session_id: str
    outcome: str
    status: CheckoutStatus | None = None
    error: str | None = None


async def find_stalled_checkouts(session: AsyncSession, *, limit: int = 50) -> list[str]:
    """Sessions that are paid and signed but whose provisioning never finished."""
    result = await session.execute(
        select(CheckoutSession.id)
        .join(AgreementSignatureStatus, AgreementSignatureStatus.checkout_session_id == CheckoutSession.id)
        .where(
            CheckoutSession.status.in_(PAYMENT_CONFIRMED_STATUSES),
            AgreementSignatureStatus.status == AgreementStatus.COMPLETED,
        )
        .order_by(CheckoutSession.updated_at)
        .limit(limit)
    )
    return list(result.scalars().all())


async def sweep_stalled_checkouts(
    session: AsyncSession,
    *,
    crm: CRMClient,
    redis_client: Optional[Redis] = None,
    limit: int = 50,
) -> list[SweepOutcome]:
    """Re-run provisioning for stalled sessions; one failure does not stop the sweep."""
    outcomes: list[SweepOutcome] = []
    for checkout_id in await find_stalled_checkouts(session, limit=limit):
        try:
            result = await provision_checkout(session, checkout_id, crm=crm, redis_client=redis_client)
        except (ProviderCallError, StateConflictError, NotFoundError) as exc:
            outcomes.append(SweepOutcome(checkout_id, "failed", error=exc.error_code))
            continue
        outcome = "skipped" if result.skipped else "completed"
        outcomes.append(SweepOutcome(checkout_id, outcome, status=result.status))
    logger.info(
        "provisioning.sweep.finished",
        examined=len(outcomes),
        failed=sum(1 for item in outcomes if item.outcome == "failed"),
    )
    return outcomes
