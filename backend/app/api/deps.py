from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import AsyncSession
from backend.app.core.database import async_session
from backend.app.core.locking import ProductLockManager, get_lock_manager
from backend.app.services.notifications import NotificationDispatcher


# Database session per request
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session() as session:
        yield session


# Process-wide product lock manager (memory or redis backend)
def get_product_locks() -> ProductLockManager:
    return get_lock_manager()


def get_notifier() -> NotificationDispatcher:
    return NotificationDispatcher()
