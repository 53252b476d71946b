from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class ProductUnitResponse(BaseModel):
    id: int
    product_id: int
    name: str
    quantity: int
    price: Decimal
    is_default: bool
    is_available: bool
    sort_order: int

    model_config = ConfigDict(from_attributes=True)


class ProductResponse(BaseModel):
    id: int
    name: str
    description: str
    base_price: Decimal
    image_url: Optional[str] = None
    is_featured: bool
    is_available: bool
    category: str
    ingredients: Optional[str] = None
    allergens: Optional[str] = None
    unit_type: str
    min_quantity: int
    max_quantity: int
    stripe_product_id: Optional[str] = None
    stripe_price_id: Optional[str] = None
    stripe_last_synced_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    units: List[ProductUnitResponse] = []

    model_config = ConfigDict(from_attributes=True)

