from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_portal.api.dependencies.auth import get_current_identity, require_operator
from checkout_portal.api.dependencies.database import get_db
from checkout_portal.api.dependencies.providers import (
    get_crm_client,
    get_signature_provider,
    get_stripe_billing,
    get_zoho_billing,
    select_billing_provider,
)
from checkout_portal.api.dependencies.redis import get_redis_client
from checkout_portal.core.errors import NotFoundError, ProviderCallError, ReconciliationError, StateConflictError
from checkout_portal.core.identity import Identity
from checkout_portal.integrations.billing import BillingProvider, BillingType
from checkout_portal.integrations.crm import CRMClient
from checkout_portal.integrations.esignature import ESignatureProvider
from checkout_portal.models.checkout import CheckoutSession
from checkout_portal.schemas.checkout import (
    CaptureRequest,
    CaptureResponse,
    CheckoutSessionCreate,
    CheckoutSessionRead,
    CompanyInfoUpsert,
    PaymentStartRequest,
    PaymentStartResponse,
    PaymentStatusRead,
    ProvisioningResultRead,
    RefundRequest,
    RefundResponse,
    SigningRequest,
    SigningResponse,
)
from checkout_portal.services import checkout_service
from checkout_portal.services.provisioning_service import provision_checkout

router = APIRouter(prefix="/checkout-sessions", tags=["checkout"])


def http_error(exc: ReconciliationError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.error_message)
    if isinstance(exc, StateConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.error_message)
    if isinstance(exc, ProviderCallError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"{exc.provider} request failed")
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.error_message)


async def _get_owned_session(session: AsyncSession, checkout_id: str, identity: Identity) -> CheckoutSession:
    checkout = await checkout_service.get_checkout_session(session, checkout_id, identity)
    if checkout is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Checkout session not found")
    return checkout


@router.post("", response_model=CheckoutSessionRead, status_code=status.HTTP_201_CREATED)
async def create_checkout_session(
    payload: CheckoutSessionCreate,
    session: AsyncSession = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
) -> CheckoutSessionRead:
    checkout = await checkout_service.create_checkout_session(
        session,
        identity,
        module=payload.module,
        amount=payload.amount,
        currency=payload.currency,
    )
    await session.commit()
    return CheckoutSessionRead.model_validate(checkout)


@router.get("", response_model=List[CheckoutSessionRead])
async def list_checkout_sessions(
    session: AsyncSession = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
) -> List[CheckoutSessionRead]:
    sessions = await checkout_service.list_checkout_sessions(session, identity)
    return [CheckoutSessionRead.model_validate(item) for item in sessions]


@router.get("/{checkout_id}", response_model=CheckoutSessionRead)
async def read_checkout_session(
    checkout_id: str,
    session: AsyncSession = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
) -> CheckoutSessionRead:
    checkout = await _get_owned_session(session, checkout_id, identity)
    return CheckoutSessionRead.model_validate(checkout)


@router.put("/{checkout_id}/company-info", response_model=CheckoutSessionRead)
async def upsert_company_info(
    checkout_id: str,
    payload: CompanyInfoUpsert,
    session: AsyncSession = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
) -> CheckoutSessionRead:
    checkout = await _get_owned_session(session, checkout_id, identity)
    try:
        await checkout_service.upsert_company_info(session, checkout, payload)
    except StateConflictError as exc:
        raise http_error(exc) from exc
    await session.commit()
    return CheckoutSessionRead.model_validate(checkout)


@router.post("/{checkout_id}/agreement", response_model=SigningResponse)
async def initiate_signing(
    checkout_id: str,
    payload: SigningRequest,
    session: AsyncSession = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
    signer: ESignatureProvider = Depends(get_signature_provider),
) -> SigningResponse:
    checkout = await _get_owned_session(session, checkout_id, identity)
    try:
        signing = await checkout_service.initiate_signing(
            session, checkout, identity, signer_provider=signer, return_url=payload.return_url
        )
    except (StateConflictError, ProviderCallError) as exc:
        raise http_error(exc) from exc
    await session.commit()
    return SigningResponse(url=signing.url, envelope_id=signing.envelope_id, expires_at=signing.expires_at)


@router.post("/{checkout_id}/payment", response_model=PaymentStartResponse)
async def start_payment(
    checkout_id: str,
    payload: PaymentStartRequest,
    session: AsyncSession = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
    stripe_billing: BillingProvider = Depends(get_stripe_billing),
    zoho_billing: BillingProvider = Depends(get_zoho_billing),
) -> PaymentStartResponse:
    checkout = await _get_owned_session(session, checkout_id, identity)
    billing = select_billing_provider(payload.provider, stripe_billing, zoho_billing)
    try:
        result = await checkout_service.start_payment(session, checkout, identity, billing=billing)
    except ReconciliationError as exc:
        raise http_error(exc) from exc
    await session.commit()
    return PaymentStartResponse(
        provider=result.billing_type,
        reference=result.reference,
        client_secret=result.client_secret,
        amount=result.amount,
        currency=result.currency,
    )


@router.get("/{checkout_id}/payment", response_model=PaymentStatusRead)
async def read_payment_status(
    checkout_id: str,
    provider: BillingType = Query(default=BillingType.STRIPE),
    session: AsyncSession = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
    stripe_billing: BillingProvider = Depends(get_stripe_billing),
    zoho_billing: BillingProvider = Depends(get_zoho_billing),
) -> PaymentStatusRead:
    checkout = await _get_owned_session(session, checkout_id, identity)
    billing = select_billing_provider(provider, stripe_billing, zoho_billing)
    try:
        result = await checkout_service.fetch_payment_status(checkout, billing=billing)
    except ReconciliationError as exc:
        raise http_error(exc) from exc
    return PaymentStatusRead(
        provider=result.billing_type,
        reference=result.reference,
        status=result.status.value,
        amount=result.amount,
        currency=result.currency,
    )


@router.post("/{checkout_id}/payment/capture", response_model=CaptureResponse)
async def capture_payment(
    checkout_id: str,
    payload: CaptureRequest,
    session: AsyncSession = Depends(get_db),
    operator: Identity = Depends(require_operator),
    stripe_billing: BillingProvider = Depends(get_stripe_billing),
    zoho_billing: BillingProvider = Depends(get_zoho_billing),
) -> CaptureResponse:
    checkout = await _get_owned_session(session, checkout_id, operator)
    billing = select_billing_provider(payload.provider, stripe_billing, zoho_billing)
    try:
        result = await checkout_service.capture_checkout_payment(
            session, checkout, operator, billing=billing, amount=payload.amount
        )
    except ReconciliationError as exc:
        raise http_error(exc) from exc
    await session.commit()
    return CaptureResponse(transaction_id=result.transaction_id, status=result.status.value, amount=result.amount)


@router.post("/{checkout_id}/refund", response_model=RefundResponse)
async def refund_payment(
    checkout_id: str,
    payload: RefundRequest,
    session: AsyncSession = Depends(get_db),
    operator: Identity = Depends(require_operator),
    stripe_billing: BillingProvider = Depends(get_stripe_billing),
    zoho_billing: BillingProvider = Depends(get_zoho_billing),
) -> RefundResponse:
    checkout = await _get_owned_session(session, checkout_id, operator)
    billing = select_billing_provider(payload.provider, stripe_billing, zoho_billing)
    try:
        result = await checkout_service.refund_checkout_payment(
            session, checkout, operator, billing=billing, amount=payload.amount, reason=payload.reason
        )
    except ReconciliationError as exc:
        raise http_error(exc) from exc
    await session.commit()
    return RefundResponse(
        refund_id=result.refund_id,
        reference=result.reference,
        amount=result.amount,
        status=result.status.value,
    )


@router.post("/{checkout_id}/provision", response_model=ProvisioningResultRead)
async def provision(
    checkout_id: str,
    session: AsyncSession = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
    crm: CRMClient = Depends(get_crm_client),
    redis_client: Optional[Redis] = Depends(get_redis_client),
) -> ProvisioningResultRead:
    """Manual retry of the provisioning chain for a paid and signed session."""
    await _get_owned_session(session, checkout_id, identity)
    try:
        result = await provision_checkout(
            session, checkout_id, crm=crm, redis_client=redis_client, actor=identity.user_id
        )
    except ReconciliationError as exc:
        raise http_error(exc) from exc
    return ProvisioningResultRead(
        checkout_session_id=result.checkout_session_id,
        status=result.status,
        steps_performed=result.steps_performed,
        contact_id=result.contact_id,
        sales_order_id=result.sales_order_id,
        skipped=result.skipped,
    )
