from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_portal.api.dependencies.database import get_db
from checkout_portal.api.dependencies.providers import (
    get_crm_client,
    get_signature_provider,
    get_stripe_billing,
    get_zoho_billing,
)
from checkout_portal.api.dependencies.redis import get_redis_client
from checkout_portal.core.errors import AuthenticityError
from checkout_portal.core.logging import get_logger
from checkout_portal.integrations.billing import BillingError, BillingProvider
from checkout_portal.integrations.crm import CRMClient
from checkout_portal.integrations.esignature import ESignatureProvider, SignatureError
from checkout_portal.schemas.webhook import WebhookAck, WebhookOutcome
from checkout_portal.services.normalizer import Provider
from checkout_portal.services.reconciliation_service import process_webhook

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _authenticate(
    provider: Provider,
    verify: Callable[[bytes, Optional[str]], Dict[str, Any]],
    payload: bytes,
    signature: Optional[str],
) -> Dict[str, Any] | None:
    """
    Verify the delivery and return its parsed body.

    Returns None when the signature is valid but the body is not JSON; any
    other verification failure is an ``AuthenticityError``.
    """
    try:
        return verify(payload, signature)
    except (BillingError, SignatureError) as exc:
        if exc.error_code == "webhook_json_invalid":
            logger.warning("webhook.invalid_json", provider=provider.value)
            return None
        logger.warning("webhook.rejected", provider=provider.value, reason=exc.error_code)
        raise AuthenticityError("Invalid signature", error_code=exc.error_code, provider=provider.value) from exc


async def _handle(
    provider: Provider,
    verify: Callable[[bytes, Optional[str]], Dict[str, Any]],
    request: Request,
    signature: Optional[str],
    session: AsyncSession,
    crm: CRMClient,
    redis_client: Optional[Redis],
) -> WebhookAck | JSONResponse:
    payload = await request.body()
    try:
        body = _authenticate(provider, verify, payload, signature)
    except AuthenticityError:
        return JSONResponse(status_code=401, content={"error": "Invalid signature"})

    if body is None:
        return WebhookAck(outcome=WebhookOutcome.INVALID)

    result = await process_webhook(session, provider, body, crm=crm, redis_client=redis_client)
    logger.info("webhook.acknowledged", provider=provider.value, outcome=result.outcome.value)
    return WebhookAck(outcome=result.outcome)


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    session: AsyncSession = Depends(get_db),
    billing: BillingProvider = Depends(get_stripe_billing),
    crm: CRMClient = Depends(get_crm_client),
    redis_client: Optional[Redis] = Depends(get_redis_client),
) -> WebhookAck | JSONResponse:
    return await _handle(Provider.STRIPE, billing.verify_webhook, request, stripe_signature, session, crm, redis_client)


@router.post("/docusign", response_model=WebhookAck)
async def docusign_webhook(
    request: Request,
    docusign_signature: Optional[str] = Header(default=None, alias="X-DocuSign-Signature-1"),
    session: AsyncSession = Depends(get_db),
    signer: ESignatureProvider = Depends(get_signature_provider),
    crm: CRMClient = Depends(get_crm_client),
    redis_client: Optional[Redis] = Depends(get_redis_client),
) -> WebhookAck | JSONResponse:
    return await _handle(
        Provider.DOCUSIGN, signer.verify_webhook, request, docusign_signature, session, crm, redis_client
    )


@router.post("/zoho-billing", response_model=WebhookAck)
async def zoho_billing_webhook(
    request: Request,
    zoho_signature: Optional[str] = Header(default=None, alias="X-Zoho-Webhook-Signature"),
    session: AsyncSession = Depends(get_db),
    billing: BillingProvider = Depends(get_zoho_billing),
    crm: CRMClient = Depends(get_crm_client),
    redis_client: Optional[Redis] = Depends(get_redis_client),
) -> WebhookAck | JSONResponse:
    return await _handle(
        Provider.ZOHO_BILLING, billing.verify_webhook, request, zoho_signature, session, crm, redis_client
    )
