from __future__ import annotations

from decimal import Decimal
from typing import Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from checkout_portal.core.config import get_settings
from checkout_portal.core.errors import NotFoundError, StateConflictError
from checkout_portal.core.identity import Identity
from checkout_portal.core.logging import get_logger
from checkout_portal.integrations.billing import (
    BillingCustomer,
    BillingLineItem,
    BillingProvider,
    BillingType,
    InvoiceRequest,
    InvoiceResult,
    PaymentResult,
    PaymentStatusResult,
    RefundResult,
)
from checkout_portal.integrations.esignature import ESignatureProvider, SignerInfo, SigningUrlInfo
from checkout_portal.models.audit import AuditCategory
from checkout_portal.models.checkout import (
    PAYMENT_CONFIRMED_STATUSES,
    AgreementSignatureStatus,
    AgreementStatus,
    CheckoutSession,
    CheckoutStatus,
    CompanyInfo,
    SalesOrder,
)
from checkout_portal.schemas.checkout import CompanyInfoUpsert
from checkout_portal.services.audit_service import record_audit
from checkout_portal.services.provider_calls import call_provider

logger = get_logger(__name__)

DEFAULT_MODULE_NAME = "Zoho Integration"

SESSION_RELATIONS = (
    selectinload(CheckoutSession.company_info),
    selectinload(CheckoutSession.agreement),
    selectinload(CheckoutSession.sales_order),
    selectinload(CheckoutSession.user),
)


async def create_checkout_session(
    session: AsyncSession,
    identity: Identity,
    *,
    module: str | None,
    amount: Decimal,
    currency: str = "USD",
) -> CheckoutSession:
    checkout = CheckoutSession(
        user_id=identity.user_id,
        module=module,
        status=CheckoutStatus.PENDING,
        company_info=None,
        sales_order=SalesOrder(amount=amount, currency=currency.upper()),
        agreement=AgreementSignatureStatus(status=AgreementStatus.PENDING),
    )
    session.add(checkout)
    await session.flush()
    record_audit(
        session,
        action="checkout.created",
        category=AuditCategory.STATE_TRANSITION,
        checkout_session_id=checkout.id,
        actor=identity.user_id,
        details={"module": module, "amount": str(amount), "currency": currency.upper()},
    )
    logger.info("checkout.created", checkout_session_id=checkout.id, user_id=identity.user_id)
    return checkout


async def get_checkout_session(
    session: AsyncSession,
    checkout_id: str,
    identity: Identity | None = None,
    *,
    refresh: bool = False,
) -> CheckoutSession | None:
    """
    Load a session with its sub-records; sessions owned by someone else are invisible to non-operators.

    ``refresh`` overwrites any copy already held by this ORM session with the committed rows.
    """
    result = await session.execute(
        select(CheckoutSession)
        .where(CheckoutSession.id == checkout_id)
        .options(*SESSION_RELATIONS)
        .execution_options(populate_existing=refresh)
    )
    checkout = result.scalars().first()
    if checkout is None:
        return None
    if identity is not None and not identity.is_operator and checkout.user_id != identity.user_id:
        return None
    return checkout


async def list_checkout_sessions(session: AsyncSession, identity: Identity) -> Sequence[CheckoutSession]:
    result = await session.execute(
        select(CheckoutSession)
        .where(CheckoutSession.user_id == identity.user_id)
        .options(*SESSION_RELATIONS)
        .order_by(CheckoutSession.created_at.desc())
    )
    return result.scalars().all()


async def find_by_payment_reference(session: AsyncSession, reference: str) -> CheckoutSession | None:
    result = await session.execute(
        select(CheckoutSession).where(CheckoutSession.payment_reference == reference).options(*SESSION_RELATIONS)
    )
    return result.scalars().first()


async def find_by_invoice_reference(session: AsyncSession, reference: str) -> CheckoutSession | None:
    result = await session.execute(
        select(CheckoutSession).where(CheckoutSession.invoice_reference == reference).options(*SESSION_RELATIONS)
    )
    return result.scalars().first()


async def find_agreement_by_envelope(session: AsyncSession, envelope_id: str) -> AgreementSignatureStatus | None:
    result = await session.execute(
        select(AgreementSignatureStatus)
        .where(AgreementSignatureStatus.envelope_id == envelope_id)
        .options(
            selectinload(AgreementSignatureStatus.checkout_session).options(
                selectinload(CheckoutSession.company_info),
                selectinload(CheckoutSession.agreement),
                selectinload(CheckoutSession.sales_order),
                selectinload(CheckoutSession.user),
            )
        )
    )
    return result.scalars().first()


async def upsert_company_info(
    session: AsyncSession,
    checkout: CheckoutSession,
    payload: CompanyInfoUpsert,
) -> CompanyInfo:
    if checkout.agreement is not None and checkout.agreement.status == AgreementStatus.COMPLETED:
        raise StateConflictError(
            "company info cannot change after the agreement is completed",
            correlation_id=checkout.id,
        )

    values = payload.model_dump()
    company = checkout.company_info
    if company is None:
        company = CompanyInfo(checkout_session_id=checkout.id, **values)
        session.add(company)
        checkout.company_info = company
    else:
        for field, value in values.items():
            setattr(company, field, value)
    await session.flush()
    logger.info("checkout.company_info.saved", checkout_session_id=checkout.id)
    return company


def build_template_fields(checkout: CheckoutSession) -> dict[str, str]:
    company = checkout.company_info
    if company is None:
        raise StateConflictError("company info is required before signing", correlation_id=checkout.id)
    address = ", ".join(part for part in (company.address, company.city, company.state, company.zip_code) if part)
    return {
        "company_name": company.company_name,
        "contact_name": company.contact_name,
        "contact_email": company.email or "",
        "company_address": address,
        "module": checkout.module or DEFAULT_MODULE_NAME,
        "amount": str(checkout.sales_order.amount) if checkout.sales_order else "",
        "checkout_session_id": checkout.id,
    }


async def initiate_signing(
    session: AsyncSession,
    checkout: CheckoutSession,
    identity: Identity,
    *,
    signer_provider: ESignatureProvider,
    return_url: str,
) -> SigningUrlInfo:
    """
    Create the agreement envelope and return the embedded signing URL.

    The envelope id is stored on the agreement so DocuSign Connect events can
    be correlated back to this session.
    """
    if checkout.company_info is None:
        raise StateConflictError("company info is required before signing", correlation_id=checkout.id)
    agreement = checkout.agreement
    if agreement is not None and agreement.status == AgreementStatus.COMPLETED:
        raise StateConflictError("agreement is already completed", correlation_id=checkout.id)

    company = checkout.company_info
    signer = SignerInfo(
        name=company.contact_name,
        email=company.email or identity.email,
        client_user_id=identity.user_id,
    )
    signing = await call_provider(
        signer_provider.create_envelope_signing_url(signer, build_template_fields(checkout), return_url),
        provider="docusign",
        operation="create_envelope_signing_url",
        timeout=get_settings().provider_timeout_seconds,
        correlation_id=checkout.id,
    )

    if agreement is None:
        agreement = AgreementSignatureStatus(checkout_session_id=checkout.id)
        session.add(agreement)
        checkout.agreement = agreement
    agreement.provider = "docusign"
    agreement.envelope_id = signing.envelope_id
    agreement.status = AgreementStatus.PENDING
    agreement.completed_at = None
    await session.flush()
    record_audit(
        session,
        action="agreement.signing_initiated",
        category=AuditCategory.STATE_TRANSITION,
        checkout_session_id=checkout.id,
        actor=identity.user_id,
        details={"envelope_id": signing.envelope_id},
    )
    logger.info("agreement.signing_initiated", checkout_session_id=checkout.id, envelope_id=signing.envelope_id)
    return signing


def attach_payment_reference(checkout: CheckoutSession, reference: str) -> None:
    if checkout.payment_reference not in (None, reference):
        raise StateConflictError("session already has a different payment reference", correlation_id=checkout.id)
    checkout.payment_reference = reference


def attach_invoice_reference(checkout: CheckoutSession, reference: str) -> None:
    if checkout.invoice_reference not in (None, reference):
        raise StateConflictError("session already has a different invoice reference", correlation_id=checkout.id)
    checkout.invoice_reference = reference


async def start_payment(
    session: AsyncSession,
    checkout: CheckoutSession,
    identity: Identity,
    *,
    billing: BillingProvider,
) -> InvoiceResult:
    """Create the card payment intent or the billing invoice and attach its reference to the session."""
    if checkout.status not in (CheckoutStatus.PENDING, CheckoutStatus.PAYMENT_FAILED):
        raise StateConflictError(f"session is {checkout.status.value}; payment is not expected", correlation_id=checkout.id)

    sales_order = checkout.sales_order
    if sales_order is None:
        raise NotFoundError("session has no order amount", correlation_id=checkout.id)

    company = checkout.company_info
    module_name = checkout.module or DEFAULT_MODULE_NAME
    request = InvoiceRequest(
        checkout_session_id=checkout.id,
        customer=BillingCustomer(
            email=identity.email,
            name=company.contact_name if company else identity.full_name or None,
            company=company.company_name if company else None,
            phone=company.phone if company else None,
        ),
        amount=Decimal(sales_order.amount),
        currency=sales_order.currency,
        line_items=[BillingLineItem(name=module_name, rate=Decimal(sales_order.amount), quantity=1)],
        notes=f"{module_name} - {checkout.id}",
    )
    result = await call_provider(
        billing.create_invoice(request),
        provider=billing.billing_type.value,
        operation="create_invoice",
        timeout=get_settings().provider_timeout_seconds,
        correlation_id=checkout.id,
    )

    if billing.billing_type is BillingType.STRIPE:
        attach_payment_reference(checkout, result.reference)
    else:
        attach_invoice_reference(checkout, result.reference)
    await session.flush()
    logger.info(
        "checkout.payment.started",
        checkout_session_id=checkout.id,
        provider=billing.billing_type.value,
        reference=result.reference,
    )
    return result


async def refund_checkout_payment(
    session: AsyncSession,
    checkout: CheckoutSession,
    identity: Identity,
    *,
    billing: BillingProvider,
    amount: Decimal | None = None,
    reason: str | None = None,
) -> RefundResult:
    """
    Ask the billing provider for a refund. The session moves to ``refunded``
    when the provider's refund webhook arrives, not here.
    """
    if checkout.status not in PAYMENT_CONFIRMED_STATUSES:
        raise StateConflictError(f"session is {checkout.status.value}; nothing to refund", correlation_id=checkout.id)

    result = await call_provider(
        billing.refund_payment(_billing_reference(checkout, billing), amount=amount, reason=reason),
        provider=billing.billing_type.value,
        operation="refund_payment",
        timeout=get_settings().provider_timeout_seconds,
        correlation_id=checkout.id,
    )
    record_audit(
        session,
        action="checkout.refund_requested",
        category=AuditCategory.STATE_TRANSITION,
        checkout_session_id=checkout.id,
        actor=identity.user_id,
        details={"refund_id": result.refund_id, "amount": str(result.amount) if result.amount is not None else None},
    )
    return result


def _billing_reference(checkout: CheckoutSession, billing: BillingProvider) -> str:
    reference = checkout.payment_reference if billing.billing_type is BillingType.STRIPE else checkout.invoice_reference
    if not reference:
        raise NotFoundError(f"session has no {billing.billing_type.value} reference", correlation_id=checkout.id)
    return reference


async def fetch_payment_status(checkout: CheckoutSession, *, billing: BillingProvider) -> PaymentStatusResult:
    return await call_provider(
        billing.get_payment_status(_billing_reference(checkout, billing)),
        provider=billing.billing_type.value,
        operation="get_payment_status",
        timeout=get_settings().provider_timeout_seconds,
        correlation_id=checkout.id,
    )


async def capture_checkout_payment(
    session: AsyncSession,
    checkout: CheckoutSession,
    identity: Identity,
    *,
    billing: BillingProvider,
    amount: Decimal | None = None,
) -> PaymentResult:
    """Capture an authorized payment; confirmation still arrives through the provider webhook."""
    result = await call_provider(
        billing.capture_payment(_billing_reference(checkout, billing), amount=amount),
        provider=billing.billing_type.value,
        operation="capture_payment",
        timeout=get_settings().provider_timeout_seconds,
        correlation_id=checkout.id,
    )
    record_audit(
        session,
        action="checkout.payment_captured",
        category=AuditCategory.STATE_TRANSITION,
        checkout_session_id=checkout.id,
        actor=identity.user_id,
        details={"transaction_id": result.transaction_id, "status": result.status.value},
    )
    return result
