from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_portal.api.dependencies.auth import get_current_identity
from checkout_portal.api.dependencies.database import get_db
from checkout_portal.api.dependencies.providers import get_crm_client
from checkout_portal.core.errors import NoLinkedContact, ProviderCallError, RedemptionError
from checkout_portal.core.identity import Identity
from checkout_portal.core.logging import get_logger
from checkout_portal.integrations.crm import CRMClient
from checkout_portal.schemas.magic_link import CrmData, CrmDataResponse, ErrorResponse, MagicLinkCreate, MagicLinkRead
from checkout_portal.services.magic_link_service import (
    RelatedInclude,
    build_magic_link_url,
    issue_signup_link,
    redeem_signup_link,
)

logger = get_logger(__name__)

router = APIRouter(tags=["magic-links"])

# Keyed by RedemptionError.error_code
REDEMPTION_ERRORS = {
    "not_found": (status.HTTP_404_NOT_FOUND, "Invalid or unknown link"),
    "expired": (status.HTTP_410_GONE, "Link has expired"),
    "usage_exceeded": (status.HTTP_429_TOO_MANY_REQUESTS, "Link has reached its maximum uses"),
}
CRM_UNAVAILABLE = (status.HTTP_502_BAD_GATEWAY, "CRM data is temporarily unavailable")


@router.post("/magic-links", response_model=MagicLinkRead, status_code=status.HTTP_201_CREATED)
async def create_magic_link(
    payload: MagicLinkCreate,
    session: AsyncSession = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
) -> MagicLinkRead:
    try:
        link = await issue_signup_link(
            session,
            identity,
            expires_in_hours=payload.expires_in_hours,
            max_uses=payload.max_uses,
        )
    except NoLinkedContact as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="No CRM contact is linked to this account") from exc
    await session.commit()
    return MagicLinkRead.model_validate(link).model_copy(update={"url": build_magic_link_url(link)})


@router.get(
    "/crm-data/{contact_id}/{login_code}",
    response_model=CrmDataResponse,
    responses={code: {"model": ErrorResponse} for code, _ in [*REDEMPTION_ERRORS.values(), CRM_UNAVAILABLE]},
)
async def read_crm_data(
    contact_id: str,
    login_code: str,
    include_sales_orders: bool = Query(default=False, alias="includeSalesOrders"),
    include_deals: bool = Query(default=False, alias="includeDeals"),
    include_tasks: bool = Query(default=False, alias="includeTasks"),
    include_notes: bool = Query(default=False, alias="includeNotes"),
    session: AsyncSession = Depends(get_db),
    crm: CRMClient = Depends(get_crm_client),
) -> CrmDataResponse | JSONResponse:
    include = RelatedInclude(
        sales_orders=include_sales_orders,
        deals=include_deals,
        tasks=include_tasks,
        notes=include_notes,
    )
    try:
        snapshot = await redeem_signup_link(session, contact_id, login_code, crm=crm, include=include)
    except RedemptionError as exc:
        status_code, message = REDEMPTION_ERRORS[exc.error_code]
        logger.info("magic_link.rejected", contact_id=contact_id, reason=exc.error_code)
        return JSONResponse(status_code=status_code, content={"error": message})
    except ProviderCallError as exc:
        status_code, message = CRM_UNAVAILABLE
        logger.warning("magic_link.crm_unavailable", contact_id=contact_id, reason=exc.error_code)
        return JSONResponse(status_code=status_code, content={"error": message})
    return CrmDataResponse(data=CrmData.model_validate(snapshot.as_payload()))
