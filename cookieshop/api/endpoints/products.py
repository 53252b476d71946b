import logging
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select
from sqlalchemy.orm import Session

from cookieshop.api.deps import get_optional_billing_client, raise_http_error
from cookieshop.billing_client import BillingClient
from cookieshop.db import get_session
from cookieshop.exceptions import BillingError, CookieShopError
from cookieshop.models import Product
from cookieshop.schemas.product import ProductResponse, ProductUnitResponse
from cookieshop.services.billing_sync import BillingSyncService
from cookieshop.services.product_units import ProductUnitService

router = APIRouter()

logger = logging.getLogger(__name__)


class ProductCreateIn(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    basePrice: Decimal = Field(gt=0)
    imageUrl: Optional[str] = None
    isFeatured: bool = False
    isAvailable: bool = True
    category: str = "cookies"
    ingredients: Optional[str] = None
    allergens: Optional[str] = None
    unitType: str = "individual"
    minQuantity: int = Field(default=1, ge=1)
    maxQuantity: int = Field(default=100, ge=1)
    createDefaultUnits: bool = True

    @field_validator("basePrice")
    @classmethod
    def validate_base_price(cls, v: Decimal) -> Decimal:
        if v.as_tuple().exponent < -2:
            raise ValueError("가격은 소수점 둘째 자리까지 입력해야 합니다.")
        return v


class ProductUpdateIn(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    basePrice: Optional[Decimal] = Field(default=None, gt=0)
    imageUrl: Optional[str] = None
    isFeatured: Optional[bool] = None
    isAvailable: Optional[bool] = None
    category: Optional[str] = None
    ingredients: Optional[str] = None
    allergens: Optional[str] = None
    minQuantity: Optional[int] = Field(default=None, ge=1)
    maxQuantity: Optional[int] = Field(default=None, ge=1)


class ProductUnitIn(BaseModel):
    name: str = Field(min_length=1)
    quantity: int = Field(ge=1)
    price: Decimal = Field(gt=0)
    isDefault: bool = False
    isAvailable: bool = True
    sortOrder: int = 0


class ProductUnitUpdateIn(BaseModel):
    name: Optional[str] = None
    quantity: Optional[int] = Field(default=None, ge=1)
    price: Optional[Decimal] = Field(default=None, gt=0)
    isDefault: Optional[bool] = None
    isAvailable: Optional[bool] = None
    sortOrder: Optional[int] = None


_FIELD_MAP = {
    "name": "name",
    "description": "description",
    "basePrice": "base_price",
    "imageUrl": "image_url",
    "isFeatured": "is_featured",
    "isAvailable": "is_available",
    "category": "category",
    "ingredients": "ingredients",
    "allergens": "allergens",
    "minQuantity": "min_quantity",
    "maxQuantity": "max_quantity",
}


def _get_product_or_404(session: Session, product_id: int) -> Product:
    product = session.get(Product, product_id)
    if product is None:
        raise HTTPException(status_code=404, detail="상품을 찾을 수 없습니다.")
    return product


@router.get("", response_model=List[ProductResponse])
def list_products(
    session: Session = Depends(get_session),
    category: str | None = Query(default=None),
    include_unavailable: bool = Query(default=False, alias="includeUnavailable"),
):
    stmt = select(Product).order_by(Product.id)
    if not include_unavailable:
        stmt = stmt.where(Product.is_available.is_(True))
    if category:
        stmt = stmt.where(Product.category == category)
    return session.scalars(stmt).all()


@router.get("/featured", response_model=List[ProductResponse])
def list_featured_products(session: Session = Depends(get_session)):
    return session.scalars(
        select(Product)
        .where(Product.is_featured.is_(True), Product.is_available.is_(True))
        .order_by(Product.id)
    ).all()


@router.get("/{product_id}", response_model=ProductResponse)
def get_product(product_id: int, session: Session = Depends(get_session)):
    return _get_product_or_404(session, product_id)


@router.post("", response_model=ProductResponse, status_code=201)
def create_product(
    payload: ProductCreateIn,
    session: Session = Depends(get_session),
    client: BillingClient | None = Depends(get_optional_billing_client),
):
    """
    상품 생성 → 기본 판매 단위 생성 → Stripe 동기화(best-effort).
    동기화 실패 시 상품은 Stripe id 없이 남고 미동기화 상품 동기화로 나중에 처리됩니다.
    """
    if payload.minQuantity > payload.maxQuantity:
        raise HTTPException(status_code=400, detail="최소 수량은 최대 수량보다 클 수 없습니다.")

    product = Product(
        name=payload.name.strip(),
        description=payload.description,
        base_price=payload.basePrice,
        image_url=payload.imageUrl,
        is_featured=payload.isFeatured,
        is_available=payload.isAvailable,
        category=payload.category,
        ingredients=payload.ingredients,
        allergens=payload.allergens,
        unit_type=payload.unitType,
        min_quantity=payload.minQuantity,
        max_quantity=payload.maxQuantity,
    )
    session.add(product)
    session.flush()

    if payload.createDefaultUnits:
        ProductUnitService(session).create_default_units(product.id, payload.basePrice, commit=False)
    session.commit()

    if client is not None and product.is_available:
        try:
            BillingSyncService(session, client).sync_product(product.id)
        except BillingError as e:
            session.rollback()
            logger.warning(f"[SYNC:STRIPE] Product {product.id} created without Stripe sync: {e}")
    else:
        logger.info(f"[SYNC:STRIPE] Stripe sync skipped for new product {product.id}")

    session.refresh(product)
    return product


@router.patch("/{product_id}", response_model=ProductResponse)
def update_product(
    product_id: int,
    payload: ProductUpdateIn,
    session: Session = Depends(get_session),
    client: BillingClient | None = Depends(get_optional_billing_client),
):
    product = _get_product_or_404(session, product_id)
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    for key, value in changes.items():
        setattr(product, _FIELD_MAP[key], value)
    if product.min_quantity > product.max_quantity:
        session.rollback()
        raise HTTPException(status_code=400, detail="최소 수량은 최대 수량보다 클 수 없습니다.")
    session.commit()

    if client is not None and changes:
        sync = BillingSyncService(session, client)
        try:
            if product.is_available:
                sync.update_product(product.id)
            else:
                sync.archive_product(product.id)
        except BillingError as e:
            session.rollback()
            logger.warning(f"[SYNC:STRIPE] Product {product.id} updated locally, Stripe update failed: {e}")

    session.refresh(product)
    return product


# --- 판매 단위 ---

@router.get("/{product_id}/units", response_model=List[ProductUnitResponse])
def list_product_units(product_id: int, session: Session = Depends(get_session)):
    _get_product_or_404(session, product_id)
    return ProductUnitService(session).get_product_units(product_id)


@router.get("/{product_id}/units/default", response_model=Optional[ProductUnitResponse])
def get_default_unit(product_id: int, session: Session = Depends(get_session)):
    _get_product_or_404(session, product_id)
    return ProductUnitService(session).get_default_unit(product_id)


@router.post("/{product_id}/units", response_model=ProductUnitResponse, status_code=201)
def create_product_unit(product_id: int, payload: ProductUnitIn, session: Session = Depends(get_session)):
    try:
        return ProductUnitService(session).create_unit(
            product_id,
            name=payload.name,
            quantity=payload.quantity,
            price=payload.price,
            is_default=payload.isDefault,
            is_available=payload.isAvailable,
            sort_order=payload.sortOrder,
        )
    except CookieShopError as e:
        raise_http_error(e)


@router.post("/{product_id}/units/defaults", response_model=List[ProductUnitResponse], status_code=201)
def create_default_units(product_id: int, session: Session = Depends(get_session)):
    product = _get_product_or_404(session, product_id)
    return ProductUnitService(session).create_default_units(product.id, product.base_price)


@router.patch("/units/{unit_id}", response_model=ProductUnitResponse)
def update_product_unit(unit_id: int, payload: ProductUnitUpdateIn, session: Session = Depends(get_session)):
    data = payload.model_dump(exclude_unset=True)
    fields = {
        "name": data.get("name"),
        "quantity": data.get("quantity"),
        "price": data.get("price"),
        "is_default": data.get("isDefault"),
        "is_available": data.get("isAvailable"),
        "sort_order": data.get("sortOrder"),
    }
    try:
        return ProductUnitService(session).update_unit(unit_id, fields)
    except CookieShopError as e:
        raise_http_error(e)


@router.delete("/units/{unit_id}", status_code=204)
def delete_product_unit(unit_id: int, session: Session = Depends(get_session)):
    try:
        ProductUnitService(session).delete_unit(unit_id)
    except CookieShopError as e:
        raise_http_error(e)
