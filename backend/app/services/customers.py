# backend/app/services/customers.py
"""Store-scoped customer upsert used by checkout."""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.logging import get_logger
from backend.app.models.customer import Customer

logger = get_logger(__name__)


@dataclass
class CustomerContact:
    email: str
    first_name: str
    last_name: str
    phone: Optional[str] = None
    customer_type: str = "individual"
    company_name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None


# Fields refreshed on an existing customer; blank values keep what is stored
_UPDATABLE_FIELDS = (
    "first_name", "last_name", "customer_type", "company_name",
    "phone", "address", "city", "postal_code", "country",
)


class CustomerService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def upsert(self, store_id: int, contact: CustomerContact) -> Customer:
        """
        Match on (store, lower-cased email); create or refresh contact fields.

        Flushes so the id is available. Caller must commit the session.
        """
        email = contact.email.strip().lower()
        result = await self.session.execute(
            select(Customer).where(Customer.store_id == store_id, Customer.email == email)
        )
        customer = result.scalar_one_or_none()

        if customer is None:
            customer = Customer(store_id=store_id, email=email)
            for name in _UPDATABLE_FIELDS:
                setattr(customer, name, getattr(contact, name))
            self.session.add(customer)
            await self.session.flush()
            logger.info("Customer created", customer_id=customer.id, store_id=store_id)
            return customer

        for name in _UPDATABLE_FIELDS:
            value = getattr(contact, name)
            if value not in (None, ""):
                setattr(customer, name, value)
        await self.session.flush()
        logger.info("Customer updated", customer_id=customer.id, store_id=store_id)
        return customer
