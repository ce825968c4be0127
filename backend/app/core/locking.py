"""
Per-product exclusive locks for the reservation critical section.

Checkout acquires one lock per distinct product id, always in ascending id
order, so two carts sharing some products can never wait on each other in a
cycle. Locks are taken before the database row locks and released after the
transaction commits or rolls back.

Two backends:
- ``memory``: asyncio mutex per product id (single process).
- ``redis``: redis-py ``Lock`` per product id (several workers / hosts).
"""
import asyncio
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Iterable, Optional

from redis.asyncio import Redis
from redis.exceptions import LockError
from sqlalchemy.exc import DBAPIError

from backend.app.core.logging import get_logger
from backend.app.core.metrics import product_lock_wait_seconds
from backend.app.core.settings import get_settings

logger = get_logger(__name__)

# PostgreSQL SQLSTATE for lock_timeout expiry
PG_LOCK_NOT_AVAILABLE = "55P03"


class LockTimeoutError(Exception):
    """A product lock could not be acquired within the allowed wait."""

    def __init__(self, product_id: Any, timeout: float):
        self.product_id = product_id
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout:.2f}s waiting for product {product_id}")


def is_lock_timeout_error(exc: DBAPIError) -> bool:
    """True when a DB error means a row lock wait exceeded ``lock_timeout``."""
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    return code == PG_LOCK_NOT_AVAILABLE


class ProductLockManager:
    """Base class: sorted multi-key acquisition with a shared deadline."""

    backend_name = "base"

    async def _acquire(self, product_id: int, timeout: float) -> Optional[Any]:
        raise NotImplementedError

    async def _release(self, product_id: int, handle: Any) -> None:
        raise NotImplementedError

    @asynccontextmanager
    async def hold(self, product_ids: Iterable[int], timeout: float) -> AsyncIterator[list[int]]:
        ordered = sorted(set(product_ids))
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        started = time.perf_counter()
        acquired: list[tuple[int, Any]] = []
        try:
            for product_id in ordered:
                remaining = deadline - loop.time()
                handle = await self._acquire(product_id, remaining) if remaining > 0 else None
                if handle is None:
                    logger.warning(
                        "Product lock wait timed out",
                        product_id=product_id,
                        timeout=timeout,
                        backend=self.backend_name,
                    )
                    raise LockTimeoutError(product_id, timeout)
                acquired.append((product_id, handle))
            product_lock_wait_seconds.labels(backend=self.backend_name).observe(
                time.perf_counter() - started
            )
            yield ordered
        finally:
            for product_id, handle in reversed(acquired):
                await self._release(product_id, handle)


class InMemoryProductLockManager(ProductLockManager):
    """asyncio mutex per product id; entries are dropped once nobody holds or waits."""

    backend_name = "memory"

    def __init__(self):
        self._locks: dict[int, asyncio.Lock] = {}
        self._users: dict[int, int] = {}

    async def _acquire(self, product_id: int, timeout: float) -> Optional[asyncio.Lock]:
        lock = self._locks.get(product_id)
        if lock is None:
            lock = self._locks[product_id] = asyncio.Lock()
        self._users[product_id] = self._users.get(product_id, 0) + 1
        try:
            await asyncio.wait_for(lock.acquire(), timeout)
        except asyncio.TimeoutError:
            self._forget(product_id)
            return None
        except BaseException:
            self._forget(product_id)
            raise
        return lock

    async def _release(self, product_id: int, handle: asyncio.Lock) -> None:
        handle.release()
        self._forget(product_id)

    def _forget(self, product_id: int) -> None:
        users = self._users.get(product_id, 1) - 1
        if users <= 0:
            self._users.pop(product_id, None)
            self._locks.pop(product_id, None)
        else:
            self._users[product_id] = users

    def is_locked(self, product_id: int) -> bool:
        lock = self._locks.get(product_id)
        return bool(lock and lock.locked())


class RedisProductLockManager(ProductLockManager):
    """redis-py ``Lock`` per product id, with a lease so a crashed worker cannot hold forever."""

    backend_name = "redis"
    KEY = "rental:lock:product:{product_id}"

    def __init__(self, redis: Redis, lease_seconds: float = 30.0):
        self.redis = redis
        self.lease_seconds = lease_seconds

    async def _acquire(self, product_id: int, timeout: float):
        lock = self.redis.lock(
            self.KEY.format(product_id=product_id),
            timeout=self.lease_seconds,
            blocking_timeout=timeout,
        )
        if await lock.acquire():
            return lock
        return None

    async def _release(self, product_id: int, handle) -> None:
        try:
            await handle.release()
        except LockError as e:
            # Lease expired while held; the row lock still protected the commit
            logger.warning("Redis product lock already released", product_id=product_id, error=str(e))


_lock_manager: Optional[ProductLockManager] = None
_redis: Optional[Redis] = None


def get_lock_manager() -> ProductLockManager:
    """Get the process-wide product lock manager (singleton)."""
    global _lock_manager, _redis
    if _lock_manager is None:
        settings = get_settings()
        if settings.RESERVATION_LOCK_BACKEND == "redis":
            _redis = Redis(host=settings.REDIS_HOST, port=settings.REDIS_PORT, db=settings.REDIS_DB)
            _lock_manager = RedisProductLockManager(
                _redis, lease_seconds=max(30.0, settings.RESERVATION_LOCK_TIMEOUT_SECONDS * 6)
            )
        else:
            _lock_manager = InMemoryProductLockManager()
        logger.info("Product lock manager ready", backend=_lock_manager.backend_name)
    return _lock_manager


async def close_lock_manager() -> None:
    global _lock_manager, _redis
    if _redis is not None:
        await _redis.close()
        _redis = None
    _lock_manager = None
