from decimal import Decimal

import pytest

from cookieshop.exceptions import DomainValidationError, ProductNotFoundError, ProductUnitNotFoundError
from cookieshop.services.product_units import ProductUnitService


def test_create_default_units(test_session, make_product):
    product = make_product(base_price="2.00")
    service = ProductUnitService(test_session)

    units = service.create_default_units(product.id, product.base_price)

    assert [(u.name, u.quantity, u.price) for u in units] == [
        ("Individual", 1, Decimal("2.00")),
        ("Half Dozen", 6, Decimal("10.80")),
        ("Dozen", 12, Decimal("20.40")),
    ]
    default = service.get_default_unit(product.id)
    assert default is not None
    assert default.quantity == 1


def test_only_one_default_unit(test_session, make_product):
    product = make_product()
    service = ProductUnitService(test_session)
    service.create_default_units(product.id, product.base_price)

    service.create_unit(product.id, name="Party Box", quantity=24, price="70.00", is_default=True, sort_order=4)
    test_session.expire_all()

    defaults = [u for u in service.get_product_units(product.id) if u.is_default]
    assert len(defaults) == 1
    assert defaults[0].name == "Party Box"


def test_units_sorted_and_unavailable_hidden(test_session, make_product):
    product = make_product()
    service = ProductUnitService(test_session)
    service.create_unit(product.id, name="Dozen", quantity=12, price="30", sort_order=3)
    service.create_unit(product.id, name="Individual", quantity=1, price="3", sort_order=1)
    service.create_unit(product.id, name="Hidden", quantity=2, price="5", sort_order=2, is_available=False)

    assert [u.name for u in service.get_product_units(product.id)] == ["Individual", "Dozen"]


def test_create_unit_validation(test_session, make_product):
    product = make_product()
    service = ProductUnitService(test_session)

    with pytest.raises(DomainValidationError):
        service.create_unit(product.id, name="Zero", quantity=0, price="3")
    with pytest.raises(DomainValidationError):
        service.create_unit(product.id, name="Free", quantity=1, price="0")
    with pytest.raises(ProductNotFoundError):
        service.create_unit(9999, name="Ghost", quantity=1, price="3")


def test_update_and_delete_unit(test_session, make_product):
    product = make_product()
    service = ProductUnitService(test_session)
    unit = service.create_unit(product.id, name="Individual", quantity=1, price="3")

    updated = service.update_unit(unit.id, {"price": "3.25", "name": None, "unknown": "x"})
    assert updated.price == Decimal("3.25")
    assert updated.name == "Individual"

    with pytest.raises(DomainValidationError):
        service.update_unit(unit.id, {"quantity": 0})

    service.delete_unit(unit.id)
    with pytest.raises(ProductUnitNotFoundError):
        service.delete_unit(unit.id)
