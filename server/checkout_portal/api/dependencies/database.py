from collections.abc import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession

from checkout_portal.db.session import async_session_factory


async def get_db() -> AsyncIterator[AsyncSession]:
    """One session per request; anything raised by the handler rolls the transaction back."""
    async with async_session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
