from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_portal.api.dependencies.auth import get_current_user
from checkout_portal.api.dependencies.database import get_db
from checkout_portal.models.user import User
from checkout_portal.schemas.user import UserRead, UserUpdate
from checkout_portal.services.user_service import get_account_link, update_user


router = APIRouter(prefix="/users", tags=["users"])


async def _read_with_contact(session: AsyncSession, user: User) -> UserRead:
    link = await get_account_link(session, user.id)
    return UserRead.model_validate(user).model_copy(update={"contact_id": link.contact_id if link else None})


@router.get("/me", response_model=UserRead)
async def read_current_user(
    session: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> UserRead:
    return await _read_with_contact(session, current_user)


@router.patch("/me", response_model=UserRead)
async def update_current_user(
    payload: UserUpdate,
    session: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> UserRead:
    updated = await update_user(session, current_user, payload)
    await session.commit()
    return await _read_with_contact(session, updated)
