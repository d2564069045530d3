from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_portal.api.dependencies.auth import require_operator
from checkout_portal.api.dependencies.database import get_db
from checkout_portal.core.identity import Identity
from checkout_portal.services.outbox_service import dispatch_pending_events


router = APIRouter(prefix="/events", tags=["events"])


@router.post("/dispatch")
async def dispatch_events_endpoint(
    session: AsyncSession = Depends(get_db),
    operator: Identity = Depends(require_operator),  # noqa: ARG001 - operator-only endpoint
) -> dict[str, int]:
    dispatched = await dispatch_pending_events(session)
    await session.commit()
    return {"dispatched": dispatched}
