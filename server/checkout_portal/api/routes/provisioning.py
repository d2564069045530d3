from typing import Optional

from fastapi import APIRouter, Depends
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_portal.api.dependencies.auth import require_operator
from checkout_portal.api.dependencies.database import get_db
from checkout_portal.api.dependencies.providers import get_crm_client
from checkout_portal.api.dependencies.redis import get_redis_client
from checkout_portal.core.identity import Identity
from checkout_portal.integrations.crm import CRMClient
from checkout_portal.schemas.checkout import SweepItem, SweepRequest, SweepResponse
from checkout_portal.services.provisioning_service import sweep_stalled_checkouts

router = APIRouter(prefix="/provisioning", tags=["provisioning"])


@router.post("/sweep", response_model=SweepResponse)
async def sweep_stalled(
    payload: SweepRequest,
    session: AsyncSession = Depends(get_db),
    operator: Identity = Depends(require_operator),  # noqa: ARG001 - operator-only endpoint
    crm: CRMClient = Depends(get_crm_client),
    redis_client: Optional[Redis] = Depends(get_redis_client),
) -> SweepResponse:
    outcomes = await sweep_stalled_checkouts(session, crm=crm, redis_client=redis_client, limit=payload.limit)
    return SweepResponse(
        examined=len(outcomes),
        completed=sum(1 for item in outcomes if item.outcome == "completed"),
        failed=sum(1 for item in outcomes if item.outcome == "failed"),
        items=[
            SweepItem(
                checkout_session_id=item.checkout_session_id,
                outcome=item.outcome,
                status=item.status,
                error=item.error,
            )
            for item in outcomes
        ],
    )
