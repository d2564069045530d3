"""
Provider collaborators as FastAPI dependencies.

Each adapter is built from settings per request and closed afterwards;
tests swap them for in-memory fakes via ``app.dependency_overrides``.
"""

from collections.abc import AsyncIterator

from fastapi import HTTPException, status

from checkout_portal.core.config import get_settings
from checkout_portal.integrations.billing import BillingProvider, BillingType, StripeAdapter, ZohoBillingAdapter
from checkout_portal.integrations.crm import CRMClient, ZohoCRMAdapter
from checkout_portal.integrations.esignature import DocuSignAdapter, ESignatureProvider


async def get_crm_client() -> AsyncIterator[CRMClient]:
    settings = get_settings()
    client = ZohoCRMAdapter(
        base_url=settings.zoho_crm_base_url,
        access_token=settings.zoho_access_token,
        timeout_seconds=settings.provider_timeout_seconds,
    )
    try:
        yield client
    finally:
        await client.close()


async def get_signature_provider() -> AsyncIterator[ESignatureProvider]:
    settings = get_settings()
    provider = DocuSignAdapter(
        base_url=settings.docusign_base_url,
        account_id=settings.docusign_account_id,
        access_token=settings.docusign_access_token,
        template_id=settings.docusign_template_id,
        webhook_secret=settings.docusign_webhook_secret,
        timeout_seconds=settings.provider_timeout_seconds,
    )
    try:
        yield provider
    finally:
        await provider.close()


async def get_stripe_billing() -> AsyncIterator[BillingProvider]:
    settings = get_settings()
    provider = StripeAdapter(
        api_key=settings.stripe_api_key,
        webhook_secret=settings.stripe_webhook_secret,
        timeout_seconds=settings.provider_timeout_seconds,
    )
    try:
        yield provider
    finally:
        await provider.close()


async def get_zoho_billing() -> AsyncIterator[BillingProvider]:
    settings = get_settings()
    provider = ZohoBillingAdapter(
        base_url=settings.zoho_billing_base_url,
        organization_id=settings.zoho_billing_organization_id,
        auth_token=settings.zoho_billing_auth_token,
        webhook_secret=settings.zoho_billing_webhook_secret,
        timeout_seconds=settings.provider_timeout_seconds,
    )
    try:
        yield provider
    finally:
        await provider.close()


def select_billing_provider(kind: BillingType, stripe: BillingProvider, zoho: BillingProvider) -> BillingProvider:
    if kind is BillingType.STRIPE:
        return stripe
    if kind is BillingType.ZOHO_BILLING:
        return zoho
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unsupported billing provider {kind}")
