import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from cookieshop.exceptions import DomainValidationError, ProductNotFoundError, ProductUnitNotFoundError
from cookieshop.models import Product, ProductUnit
from cookieshop.services.pricing import calculate_item_total, parse_price

logger = logging.getLogger(__name__)

# (이름, 수량, 할인 배수, 정렬 순서)
DEFAULT_UNITS = (
    ("Individual", 1, Decimal("1"), 1),
    ("Half Dozen", 6, Decimal("0.9"), 2),
    ("Dozen", 12, Decimal("0.85"), 3),
)

_UPDATABLE_FIELDS = ("name", "quantity", "price", "is_default", "is_available", "sort_order")


def _validate_unit(quantity: Optional[int], price: Optional[Decimal]) -> None:
    if quantity is not None and quantity < 1:
        raise DomainValidationError("Unit quantity must be at least 1", {"quantity": quantity})
    if price is not None and price <= 0:
        raise DomainValidationError("Unit price must be greater than 0", {"price": str(price)})


class ProductUnitService:
    """상품별 판매 단위 (낱개/하프 더즌/더즌). 상품당 기본 단위는 최대 1개."""

    def __init__(self, db: Session):
        self.db = db

    def _get_unit(self, unit_id: int) -> ProductUnit:
        unit = self.db.get(ProductUnit, unit_id)
        if unit is None:
            raise ProductUnitNotFoundError(unit_id)
        return unit

    def _clear_default(self, product_id: int) -> None:
        self.db.execute(
            update(ProductUnit)
            .where(ProductUnit.product_id == product_id)
            .values(is_default=False)
        )

    def get_product_units(self, product_id: int) -> List[ProductUnit]:
        return list(
            self.db.scalars(
                select(ProductUnit)
                .where(ProductUnit.product_id == product_id, ProductUnit.is_available.is_(True))
                .order_by(ProductUnit.sort_order, ProductUnit.quantity)
            ).all()
        )

    def get_default_unit(self, product_id: int) -> Optional[ProductUnit]:
        return self.db.scalars(
            select(ProductUnit)
            .where(
                ProductUnit.product_id == product_id,
                ProductUnit.is_default.is_(True),
                ProductUnit.is_available.is_(True),
            )
            .limit(1)
        ).first()

    def create_unit(
        self,
        product_id: int,
        name: str,
        quantity: int,
        price: Any,
        is_default: bool = False,
        is_available: bool = True,
        sort_order: int = 0,
        commit: bool = True,
    ) -> ProductUnit:
        if self.db.get(Product, product_id) is None:
            raise ProductNotFoundError(product_id)
        price = parse_price(price)
        _validate_unit(quantity, price)

        if is_default:
            self._clear_default(product_id)

        unit = ProductUnit(
            product_id=product_id,
            name=name,
            quantity=quantity,
            price=price,
            is_default=is_default,
            is_available=is_available,
            sort_order=sort_order,
        )
        self.db.add(unit)
        self.db.flush()
        if commit:
            self.db.commit()
        return unit

    def create_default_units(self, product_id: int, base_price: Any, commit: bool = True) -> List[ProductUnit]:
        base = parse_price(base_price)
        units = []
        for name, quantity, multiplier, sort_order in DEFAULT_UNITS:
            price = calculate_item_total(base * multiplier, quantity)
            units.append(
                self.create_unit(
                    product_id,
                    name=name,
                    quantity=quantity,
                    price=price,
                    is_default=(quantity == 1),
                    sort_order=sort_order,
                    commit=False,
                )
            )
        if commit:
            self.db.commit()
        return units

    def update_unit(self, unit_id: int, data: Dict[str, Any]) -> ProductUnit:
        unit = self._get_unit(unit_id)
        fields = {k: v for k, v in data.items() if k in _UPDATABLE_FIELDS and v is not None}
        if "price" in fields:
            fields["price"] = parse_price(fields["price"])
        _validate_unit(fields.get("quantity"), fields.get("price"))

        if fields.get("is_default"):
            self._clear_default(unit.product_id)
        for key, value in fields.items():
            setattr(unit, key, value)
        self.db.commit()
        return unit

    def delete_unit(self, unit_id: int) -> None:
        unit = self._get_unit(unit_id)
        self.db.delete(unit)
        self.db.commit()
