import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select

from cookieshop.billing_sync_job import run_billing_sync_job
from cookieshop.exceptions import ProductNotFoundError
from cookieshop.models import Product, SyncRun, SyncRunError
from cookieshop.services.billing_sync import (
    ACTION_CREATED,
    ACTION_SKIPPED,
    ACTION_UPDATED,
    BillingSyncService,
)


def _service(session, client, **kwargs):
    kwargs.setdefault("batch_delay", 0)
    return BillingSyncService(session, client, **kwargs)


def test_sync_product_creates_remote_product_and_price(test_session, billing_client, make_product):
    product = make_product(name="Snickerdoodle", base_price="3.50")

    result = _service(test_session, billing_client).sync_product(product.id)

    assert result.action == ACTION_CREATED
    test_session.refresh(product)
    assert product.stripe_product_id == result.stripe_product_id
    assert product.stripe_price_id == result.stripe_price_id
    assert product.stripe_last_synced_at is not None

    price = billing_client.prices[result.stripe_price_id]
    assert price["unit_amount"] == 350
    assert price["metadata"]["productId"] == str(product.id)


def test_sync_product_unchanged_is_skipped(test_session, billing_client, make_product):
    product = make_product(base_price="3.50")
    service = _service(test_session, billing_client)
    first = service.sync_product(product.id)

    second = service.sync_product(product.id)

    assert second.action == ACTION_SKIPPED
    assert second.stripe_price_id == first.stripe_price_id
    assert billing_client.call_count("create_price") == 1


def test_price_change_creates_new_price(test_session, billing_client, make_product):
    product = make_product(base_price="3.50")
    service = _service(test_session, billing_client)
    first = service.sync_product(product.id)

    product.base_price = Decimal("4.00")
    test_session.commit()
    second = service.sync_product(product.id)

    assert second.action == ACTION_UPDATED
    assert second.stripe_product_id == first.stripe_product_id
    assert second.stripe_price_id != first.stripe_price_id
    assert billing_client.prices[second.stripe_price_id]["unit_amount"] == 400
    # 기존 price는 그대로 남음
    assert first.stripe_price_id in billing_client.prices


def test_remote_product_deleted_is_recreated(test_session, billing_client, make_product):
    product = make_product()
    service = _service(test_session, billing_client)
    first = service.sync_product(product.id)
    del billing_client.products[first.stripe_product_id]

    second = service.sync_product(product.id)

    assert second.action == ACTION_CREATED
    assert second.stripe_product_id != first.stripe_product_id
    test_session.refresh(product)
    assert product.stripe_product_id == second.stripe_product_id


def test_force_update_pushes_local_fields(test_session, billing_client, make_product):
    product = make_product(name="Old Name")
    service = _service(test_session, billing_client)
    first = service.sync_product(product.id)

    product.name = "New Name"
    test_session.commit()
    result = service.sync_product(product.id, force_update=True)

    assert result.action == ACTION_UPDATED
    assert billing_client.products[first.stripe_product_id]["name"] == "New Name"


def test_skip_existing_does_not_call_remote(test_session, billing_client, make_product):
    product = make_product()
    service = _service(test_session, billing_client)
    service.sync_product(product.id)
    retrieves = billing_client.call_count("retrieve_product")

    result = service.sync_product(product.id, skip_existing=True)

    assert result.action == ACTION_SKIPPED
    assert billing_client.call_count("retrieve_product") == retrieves


def test_sync_unknown_product(test_session, billing_client):
    with pytest.raises(ProductNotFoundError):
        _service(test_session, billing_client).sync_product(424242)


@pytest.mark.asyncio
async def test_sync_all_products_isolates_failures(test_session, billing_client, make_product):
    ok_ids = [make_product(name=f"Cookie {i}").id for i in range(4)]
    broken = make_product(name="Broken Cookie")
    hidden = make_product(name="Hidden Cookie", is_available=False)
    billing_client.fail_product_names.add("Broken Cookie")

    failures = []
    results = await _service(test_session, billing_client, batch_size=2).sync_all_products(
        on_error=lambda product_id, exc: failures.append(product_id)
    )

    assert sorted(r.product_id for r in results) == ok_ids
    assert failures == [broken.id]

    test_session.expire_all()
    assert test_session.get(Product, broken.id).stripe_product_id is None
    assert test_session.get(Product, hidden.id).stripe_product_id is None
    for product_id in ok_ids:
        assert test_session.get(Product, product_id).stripe_price_id is not None


@pytest.mark.asyncio
async def test_sync_all_products_item_timeout(test_session, billing_client, make_product):
    fast = make_product(name="Fast Cookie")
    slow = make_product(name="Slow Cookie")
    billing_client.slow_product_names.add("Slow Cookie")
    billing_client.slow_seconds = 0.5

    failures = {}
    results = await _service(test_session, billing_client, item_timeout=0.05).sync_all_products(
        on_error=lambda product_id, exc: failures.__setitem__(product_id, exc)
    )

    assert [r.product_id for r in results] == [fast.id]
    assert isinstance(failures[slow.id], asyncio.TimeoutError)
    # 타임아웃된 스레드가 끝날 때까지 대기 (결과는 반영되지 않음)
    await asyncio.sleep(0.6)
    test_session.expire_all()
    assert test_session.get(Product, slow.id).stripe_product_id is None


def test_sync_unsynced_products(test_session, billing_client, make_product):
    synced = make_product(name="Already Synced")
    service = _service(test_session, billing_client)
    service.sync_product(synced.id)
    pending = make_product(name="New Cookie")
    broken = make_product(name="Broken Cookie")
    billing_client.fail_product_names.add("Broken Cookie")

    failures = []
    results = service.sync_unsynced_products(on_error=lambda product_id, exc: failures.append(product_id))

    assert [r.product_id for r in results] == [pending.id]
    assert failures == [broken.id]
    assert service.count_unsynced_products() == 1
    assert service.get_sync_status() == {"total": 3, "synced": 2, "unsynced": 1}


def test_get_or_create_price_id_reuses_matching_price(test_session, billing_client, make_product):
    product = make_product(base_price="2.75")
    service = _service(test_session, billing_client)

    price_id = service.get_or_create_price_id(product.id)
    again = service.get_or_create_price_id(product.id)

    assert price_id == again
    assert billing_client.call_count("create_price") == 1


def test_archive_product(test_session, billing_client, make_product):
    product = make_product()
    service = _service(test_session, billing_client)

    # 동기화 이력이 없으면 원격 호출 없음
    assert service.archive_product(product.id) is False
    assert billing_client.call_count("update_product") == 0

    result = service.sync_product(product.id)
    assert service.archive_product(product.id) is True
    assert billing_client.products[result.stripe_product_id]["active"] is False


def test_run_billing_sync_job_records_run(test_session, billing_client, make_product):
    make_product(name="Cookie A")
    broken = make_product(name="Broken Cookie")
    billing_client.fail_product_names.add("Broken Cookie")

    job = run_billing_sync_job(test_session, billing_client)

    assert not job.skipped_run
    assert len(job.results) == 1
    run = test_session.get(SyncRun, job.run.id)
    assert run.status == "partial"
    assert run.vendor == "stripe"
    assert run.channel == "products"
    assert run.read_count == 2
    assert run.write_count == 1
    assert run.error_count == 1
    assert run.finished_at is not None

    errors = test_session.scalars(select(SyncRunError).where(SyncRunError.run_id == run.id)).all()
    assert [(e.entity_type, e.entity_id) for e in errors] == [("product", str(broken.id))]


def test_run_billing_sync_job_unsynced_channel(test_session, billing_client, make_product):
    make_product(name="Cookie A")
    make_product(name="Cookie B")

    job = run_billing_sync_job(test_session, billing_client, channel="unsynced")

    assert job.run.status == "success"
    assert job.run.write_count == 2


def test_run_billing_sync_job_unknown_channel(test_session, billing_client):
    with pytest.raises(ValueError):
        run_billing_sync_job(test_session, billing_client, channel="orders")
