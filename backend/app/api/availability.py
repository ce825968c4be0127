from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.api.deps import get_session
from backend.app.core.logging import get_logger
from backend.app.models.store import Store
from backend.app.schemas import ProductAvailability
from backend.app.services.availability import get_product_availability
from backend.app.services.rental_rules import to_utc_naive

router = APIRouter()
logger = get_logger(__name__)


@router.get("/{store_id}/availability", response_model=List[ProductAvailability])
async def get_availability(
    store_id: int,
    start_date: datetime,
    end_date: datetime,
    product_id: Optional[List[int]] = Query(default=None),
    session: AsyncSession = Depends(get_session),
):
    """Remaining quantity per product / combination for a period (no locks, may be stale)."""
    start, end = to_utc_naive(start_date), to_utc_naive(end_date)
    if end <= start:
        raise HTTPException(status_code=400, detail={"error_code": "invalid_period"})
    store = await session.get(Store, store_id)
    if store is None:
        raise HTTPException(status_code=404, detail={"error_code": "store_not_found"})
    return await get_product_availability(session, store, start, end, product_id)
