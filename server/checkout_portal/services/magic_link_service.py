"""
Magic links that give a customer read-only access to their CRM records.

A link is bound to the owner's CRM contact id and carries a random code,
an expiry and a use limit. Redemption consumes one use with a conditional
UPDATE so concurrent redemptions can never exceed the limit.
"""

from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_portal.core.config import get_settings
from checkout_portal.core.errors import (
    LinkExpired,
    LinkNotFound,
    NoLinkedContact,
    ProviderCallError,
    UsageExceeded,
)
from checkout_portal.core.identity import Identity
from checkout_portal.core.logging import get_logger
from checkout_portal.integrations.crm import CRMClient, RelatedEntity
from checkout_portal.models.audit import AuditCategory
from checkout_portal.models.crm import SignupLink, ZohoAccountLink
from checkout_portal.models.mixins import as_utc
from checkout_portal.services.audit_service import record_audit
from checkout_portal.services.provider_calls import call_provider

logger = get_logger(__name__)

# Search criteria per related module, keyed by the field that references the contact
RELATED_CRITERIA = {
    RelatedEntity.SALES_ORDERS: "(Contact_Name:equals:{contact_id})",
    RelatedEntity.DEALS: "(Contact_Name:equals:{contact_id})",
    RelatedEntity.TASKS: "(Who_Id:equals:{contact_id})",
    RelatedEntity.NOTES: "(Parent_Id:equals:{contact_id})",
}


@dataclass(frozen=True, slots=True)
class RelatedInclude:
    """Related modules to fetch alongside the contact; all off unless requested."""

    sales_orders: bool = False
    deals: bool = False
    tasks: bool = False
    notes: bool = False

    def entities(self) -> list[RelatedEntity]:
        flags = {
            RelatedEntity.SALES_ORDERS: self.sales_orders,
            RelatedEntity.DEALS: self.deals,
            RelatedEntity.TASKS: self.tasks,
            RelatedEntity.NOTES: self.notes,
        }
        return [entity for entity, wanted in flags.items() if wanted]


@dataclass(slots=True)
class ContactSnapshot:
    contact: Dict[str, Any]
    sales_orders: List[Dict[str, Any]] = field(default_factory=list)
    deals: List[Dict[str, Any]] = field(default_factory=list)
    tasks: List[Dict[str, Any]] = field(default_factory=list)
    notes: List[Dict[str, Any]] = field(default_factory=list)

    def as_payload(self) -> Dict[str, Any]:
        return {
            "contact": self.contact,
            "salesOrders": self.sales_orders,
            "deals": self.deals,
            "tasks": self.tasks,
            "notes": self.notes,
        }


def build_magic_link_url(link: SignupLink) -> str:
    base_url = get_settings().public_base_url.rstrip("/")
    return f"{base_url}/crm-data/{link.contact_id}/{link.login_code}"


async def issue_signup_link(
    session: AsyncSession,
    identity: Identity,
    *,
    expires_in_hours: int | None = None,
    max_uses: int | None = None,
) -> SignupLink:
    settings = get_settings()
    hours = expires_in_hours if expires_in_hours is not None else settings.magic_link_default_hours
    uses = max_uses if max_uses is not None else settings.magic_link_default_max_uses

    result = await session.execute(select(ZohoAccountLink).where(ZohoAccountLink.user_id == identity.user_id))
    account_link = result.scalars().first()
    if account_link is None:
        raise NoLinkedContact("no CRM contact is linked to this user", correlation_id=identity.user_id)

    link = SignupLink(
        owner_user_id=identity.user_id,
        contact_id=account_link.contact_id,
        login_code=secrets.token_urlsafe(16),
        expires_at=datetime.now(timezone.utc) + timedelta(hours=hours),
        max_uses=uses,
        usage_count=0,
        is_active=True,
    )
    session.add(link)
    await session.flush()
    record_audit(
        session,
        action="magic_link.issued",
        category=AuditCategory.MAGIC_LINK,
        actor=identity.user_id,
        details={"contact_id": link.contact_id, "max_uses": uses, "expires_in_hours": hours},
    )
    logger.info("magic_link.issued", contact_id=link.contact_id, max_uses=uses)
    return link


async def _find_link(session: AsyncSession, contact_id: str, code: str) -> SignupLink | None:
    result = await session.execute(
        select(SignupLink)
        .where(SignupLink.contact_id == contact_id, SignupLink.login_code == code)
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


def _classify_rejection(link: SignupLink, now: datetime) -> None:
    """Raise the redemption error for a link that can no longer be used."""
    if now > as_utc(link.expires_at):
        raise LinkExpired("magic link has expired", correlation_id=link.contact_id)
    if link.usage_count >= link.max_uses:
        raise UsageExceeded("magic link has reached its maximum uses", correlation_id=link.contact_id)
    if not link.is_active:
        raise LinkNotFound("magic link is not active", correlation_id=link.contact_id)


async def consume_signup_link(session: AsyncSession, contact_id: str, code: str) -> SignupLink:
    """
    Validate the link and take one use from it.

    Expiry wins over exhaustion. The use counter only moves through the
    conditional UPDATE; zero affected rows means another redemption took the
    last use first.
    """
    now = datetime.now(timezone.utc)
    link = await _find_link(session, contact_id, code)
    if link is None:
        raise LinkNotFound("magic link not found", correlation_id=contact_id)

    if now > as_utc(link.expires_at):
        flipped = await session.execute(
            update(SignupLink)
            .where(SignupLink.id == link.id, SignupLink.is_active.is_(True))
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        if flipped.rowcount:
            logger.info("magic_link.expired", contact_id=contact_id)
        raise LinkExpired("magic link has expired", correlation_id=contact_id)

    _classify_rejection(link, now)

    consumed = await session.execute(
        update(SignupLink)
        .where(
            SignupLink.id == link.id,
            SignupLink.usage_count < SignupLink.max_uses,
            SignupLink.is_active.is_(True),
            SignupLink.expires_at > now,
        )
        .values(
            usage_count=SignupLink.usage_count + 1,
            is_active=case((SignupLink.usage_count + 1 >= SignupLink.max_uses, False), else_=True),
        )
        .execution_options(synchronize_session=False)
    )
    if consumed.rowcount == 0:
        await session.rollback()
        link = await _find_link(session, contact_id, code)
        if link is None:
            raise LinkNotFound("magic link not found", correlation_id=contact_id)
        _classify_rejection(link, now)
        raise UsageExceeded("magic link has reached its maximum uses", correlation_id=contact_id)

    await session.commit()
    link = await _find_link(session, contact_id, code)
    logger.info("magic_link.redeemed", contact_id=contact_id, usage_count=link.usage_count, max_uses=link.max_uses)
    return link


async def _fetch_related(crm: CRMClient, entity: RelatedEntity, contact_id: str, timeout: float) -> List[Dict[str, Any]]:
    criteria = RELATED_CRITERIA[entity].format(contact_id=contact_id)
    try:
        return await call_provider(
            crm.search_related(entity, criteria),
            provider="zoho_crm",
            operation=f"search_{entity.name.lower()}",
            timeout=timeout,
            correlation_id=contact_id,
        )
    except ProviderCallError as exc:
        logger.warning("magic_link.related_fetch_failed", entity=entity.value, error_code=exc.error_code)
        return []


async def redeem_signup_link(
    session: AsyncSession,
    contact_id: str,
    code: str,
    *,
    crm: CRMClient,
    include: RelatedInclude = RelatedInclude(),
    timeout_seconds: float | None = None,
) -> ContactSnapshot:
    """
    Consume one use of a magic link and return the contact's CRM records.

    Raises:
        LinkNotFound, LinkExpired, UsageExceeded: the link cannot be used
        ProviderCallError: the contact itself could not be fetched
    """
    timeout = timeout_seconds if timeout_seconds is not None else get_settings().provider_timeout_seconds
    await consume_signup_link(session, contact_id, code)

    contact = await call_provider(
        crm.get_contact(contact_id),
        provider="zoho_crm",
        operation="get_contact",
        timeout=timeout,
        correlation_id=contact_id,
    )
    if contact is None:
        raise LinkNotFound("linked contact no longer exists", correlation_id=contact_id)

    entities = include.entities()
    related = await asyncio.gather(*(_fetch_related(crm, entity, contact_id, timeout) for entity in entities))
    records = dict(zip(entities, related))
    return ContactSnapshot(
        contact=contact,
        sales_orders=records.get(RelatedEntity.SALES_ORDERS, []),
        deals=records.get(RelatedEntity.DEALS, []),
        tasks=records.get(RelatedEntity.TASKS, []),
        notes=records.get(RelatedEntity.NOTES, []),
    )
