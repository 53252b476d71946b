from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict


class CustomerResponse(BaseModel):
    id: int
    stripe_customer_id: str
    email: str
    name: Optional[str] = None
    phone: Optional[str] = None
    preferences: Optional[dict] = None
    total_orders: int
    total_spent: Decimal
    last_order_at: Optional[datetime] = None
    is_active: bool

    model_config = ConfigDict(from_attributes=True)
