"""Tests for the order placement transaction and catalog commands."""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.exc import OperationalError

from app import catalog_store, commands, order_store
from app.errors import (
    CustomerNotFound,
    InsufficientStock,
    InvalidArgument,
    ProductsNotFound,
    TransactionAborted,
    Unavailable,
)
from app.events import ORDER_EVENTS
from app.models import COMPLETED, CustomerCreate, LineRequest, ProductCreate
from app.tables import products as products_table


async def _stock(session_factory, product_id: str) -> int:
    async with session_factory() as session:
        product = await catalog_store.get_product(session, product_id)
        return product.stock


async def _order_count(session_factory) -> int:
    async with session_factory() as session:
        return len(await order_store.find_orders(session))


async def _place(session_factory, customer_id, lines, redis=None):
    async with session_factory() as session:
        return await commands.place_order(
            session,
            redis,
            customer_id,
            [LineRequest(product_id=pid, quantity=q) for pid, q in lines],
        )


# ── place_order: success ─────────────────────────


async def test_place_order_prices_lines_and_totals(session_factory, customers, products):
    laptop, mouse = products["laptop"], products["mouse"]

    order = await _place(
        session_factory, customers["alice"].id, [(laptop.id, 2), (mouse.id, 3)]
    )

    assert order.status == COMPLETED
    assert order.customer_id == customers["alice"].id
    assert [(i.product_id, i.quantity, i.price_at_purchase) for i in order.products] == [
        (laptop.id, 2, 1000.0),
        (mouse.id, 3, 25.0),
    ]
    assert order.total_amount == 2 * 1000.0 + 3 * 25.0
    assert order.total_amount == sum(i.quantity * i.price_at_purchase for i in order.products)
    assert order.order_date.tzinfo is not None


async def test_place_order_persists_order(session_factory, customers, products):
    order = await _place(session_factory, customers["bob"].id, [(products["book"].id, 4)])

    async with session_factory() as session:
        stored = await order_store.get_order(session, order.id)

    assert stored is not None
    assert stored.total_amount == 60.0
    assert stored.products == order.products
    assert stored.status == COMPLETED


async def test_place_order_decrements_stock_by_quantity(session_factory, customers, products):
    laptop, mouse = products["laptop"], products["mouse"]

    await _place(session_factory, customers["alice"].id, [(laptop.id, 4), (mouse.id, 7)])

    assert await _stock(session_factory, laptop.id) == 10 - 4
    assert await _stock(session_factory, mouse.id) == 100 - 7


async def test_place_order_can_consume_all_stock(session_factory, customers, products):
    pen = products["pen"]
    await _place(session_factory, customers["alice"].id, [(pen.id, 3)])
    assert await _stock(session_factory, pen.id) == 0


async def test_price_at_purchase_is_a_snapshot(session_factory, customers, products):
    book = products["book"]
    order = await _place(session_factory, customers["alice"].id, [(book.id, 1)])

    async with session_factory() as session:
        await session.execute(
            products_table.update()
            .where(products_table.c.id == book.id)
            .values(price=99.0)
        )
        await session.commit()
        stored = await order_store.get_order(session, order.id)

    assert stored.products[0].price_at_purchase == 15.0
    assert stored.total_amount == 15.0


async def test_duplicate_product_lines_are_merged(session_factory, customers, products):
    mouse = products["mouse"]

    order = await _place(
        session_factory, customers["alice"].id, [(mouse.id, 2), (mouse.id, 5)]
    )

    assert len(order.products) == 1
    assert order.products[0].quantity == 7
    assert order.total_amount == 7 * 25.0
    assert await _stock(session_factory, mouse.id) == 93


async def test_merged_duplicates_are_checked_against_stock(session_factory, customers, products):
    pen = products["pen"]

    with pytest.raises(InsufficientStock) as info:
        await _place(session_factory, customers["alice"].id, [(pen.id, 2), (pen.id, 2)])

    assert info.value.shortfalls[0].requested == 4
    assert await _stock(session_factory, pen.id) == 3


# ── place_order: failures leave the store unchanged ─


async def test_unknown_products_are_all_reported(session_factory, customers, products):
    laptop = products["laptop"]

    with pytest.raises(ProductsNotFound) as info:
        await _place(
            session_factory,
            customers["alice"].id,
            [("missing-1", 1), (laptop.id, 1), ("missing-2", 2)],
        )

    assert info.value.product_ids == ["missing-1", "missing-2"]
    assert "missing-1" in str(info.value) and "missing-2" in str(info.value)
    assert await _stock(session_factory, laptop.id) == 10
    assert await _order_count(session_factory) == 0


async def test_insufficient_stock_lists_every_short_product(session_factory, customers, products):
    laptop, pen, book = products["laptop"], products["pen"], products["book"]

    with pytest.raises(InsufficientStock) as info:
        await _place(
            session_factory,
            customers["alice"].id,
            [(laptop.id, 11), (book.id, 1), (pen.id, 5)],
        )

    shortfalls = {s.product_id: s for s in info.value.shortfalls}
    assert set(shortfalls) == {laptop.id, pen.id}
    assert shortfalls[laptop.id].missing == 1
    assert shortfalls[pen.id].available == 3
    assert await _stock(session_factory, book.id) == 50
    assert await _order_count(session_factory) == 0


async def test_unknown_customer_is_rejected(session_factory, products):
    with pytest.raises(CustomerNotFound):
        await _place(session_factory, "nobody", [(products["book"].id, 1)])

    assert await _stock(session_factory, products["book"].id) == 50


@pytest.mark.parametrize("quantity", [0, -3])
async def test_non_positive_quantity_is_invalid(session_factory, customers, products, quantity):
    with pytest.raises(InvalidArgument):
        await _place(session_factory, customers["alice"].id, [(products["book"].id, quantity)])


async def test_empty_order_is_invalid(session_factory, customers):
    with pytest.raises(InvalidArgument):
        await _place(session_factory, customers["alice"].id, [])


async def test_store_failure_rolls_back_stock(session_factory, customers, products, monkeypatch):
    laptop = products["laptop"]
    monkeypatch.setattr(
        order_store,
        "insert_order",
        AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("disk I/O error"))),
    )

    with pytest.raises(TransactionAborted):
        await _place(session_factory, customers["alice"].id, [(laptop.id, 2)])

    assert await _stock(session_factory, laptop.id) == 10
    assert await _order_count(session_factory) == 0


async def test_lost_race_on_stock_is_insufficient_stock(session_factory, customers, products, monkeypatch):
    pen = products["pen"]
    real_decrement = catalog_store.decrement_stock

    async def sold_out_meanwhile(session, product_id, quantity):
        # another order consumed the stock after our read
        return await real_decrement(session, product_id, quantity + 100)

    monkeypatch.setattr(catalog_store, "decrement_stock", sold_out_meanwhile)

    with pytest.raises(InsufficientStock):
        await _place(session_factory, customers["alice"].id, [(pen.id, 1)])

    assert await _stock(session_factory, pen.id) == 3


async def test_lost_connection_is_unavailable(session_factory, customers, products, monkeypatch):
    laptop = products["laptop"]
    monkeypatch.setattr(
        order_store,
        "insert_order",
        AsyncMock(side_effect=OperationalError(
            "INSERT", {}, Exception("server closed the connection"),
            connection_invalidated=True,
        )),
    )

    with pytest.raises(Unavailable):
        await _place(session_factory, customers["alice"].id, [(laptop.id, 2)])

    assert await _stock(session_factory, laptop.id) == 10
    assert await _order_count(session_factory) == 0


async def test_socket_error_is_unavailable(session_factory, customers, products, monkeypatch):
    monkeypatch.setattr(
        order_store, "insert_order", AsyncMock(side_effect=ConnectionResetError("reset"))
    )

    with pytest.raises(Unavailable):
        await _place(session_factory, customers["alice"].id, [(products["book"].id, 1)])

    assert await _stock(session_factory, products["book"].id) == 50


async def test_unexpected_error_still_rolls_back(session_factory, customers, products, monkeypatch):
    mouse = products["mouse"]
    monkeypatch.setattr(
        order_store, "insert_order", AsyncMock(side_effect=RuntimeError("boom"))
    )

    async with session_factory() as session:
        with pytest.raises(RuntimeError):
            await commands.place_order(
                session, None, customers["alice"].id,
                [LineRequest(product_id=mouse.id, quantity=5)],
            )
        assert not session.in_transaction()

    assert await _stock(session_factory, mouse.id) == 100


async def test_stock_rows_are_updated_in_product_id_order(session_factory, customers, products, monkeypatch):
    laptop, mouse = products["laptop"], products["mouse"]
    real_decrement = catalog_store.decrement_stock
    calls = []

    async def recording(session, product_id, quantity):
        calls.append(product_id)
        return await real_decrement(session, product_id, quantity)

    monkeypatch.setattr(catalog_store, "decrement_stock", recording)
    high, low = sorted([laptop.id, mouse.id], reverse=True)

    order = await _place(session_factory, customers["alice"].id, [(high, 1), (low, 1)])
    await _place(session_factory, customers["bob"].id, [(low, 1), (high, 1)])

    assert calls == [low, high, low, high]
    assert [i.product_id for i in order.products] == [high, low]


# ── concurrency ──────────────────────────────────


@pytest.mark.parametrize("attempts", [8, 2])
async def test_concurrent_orders_never_oversell(session_factory, customers, products, attempts):
    pen = products["pen"]

    async def attempt() -> bool:
        try:
            await _place(session_factory, customers["alice"].id, [(pen.id, 1)])
            return True
        except InsufficientStock:
            return False

    results = await asyncio.gather(*(attempt() for _ in range(attempts)))

    expected = min(attempts, 3)
    assert results.count(True) == expected
    assert results.count(False) == attempts - expected
    assert await _stock(session_factory, pen.id) == 3 - expected
    assert await _order_count(session_factory) == expected


# ── events ───────────────────────────────────────


async def test_order_placed_event_is_published(session_factory, customers, products):
    redis = AsyncMock()

    order = await _place(
        session_factory, customers["alice"].id, [(products["book"].id, 2)], redis=redis
    )

    redis.publish.assert_awaited_once()
    channel, payload = redis.publish.await_args.args
    event = json.loads(payload)
    assert channel == ORDER_EVENTS
    assert event["event_type"] == "OrderPlaced"
    assert event["data"]["order_id"] == order.id
    assert event["data"]["total_amount"] == 30.0


async def test_publish_failure_does_not_undo_order(session_factory, customers, products):
    redis = AsyncMock()
    redis.publish.side_effect = RedisConnectionError("down")

    order = await _place(
        session_factory, customers["alice"].id, [(products["book"].id, 1)], redis=redis
    )

    async with session_factory() as session:
        assert await order_store.get_order(session, order.id) is not None


async def test_rejected_order_publishes_nothing(session_factory, customers, products):
    redis = AsyncMock()

    with pytest.raises(InsufficientStock):
        await _place(
            session_factory, customers["alice"].id, [(products["pen"].id, 4)], redis=redis
        )

    redis.publish.assert_not_awaited()


# ── catalog commands ─────────────────────────────


async def test_duplicate_email_is_rejected(session_factory, customers):
    async with session_factory() as session:
        with pytest.raises(InvalidArgument):
            await commands.create_customer(
                session,
                CustomerCreate(
                    name="Alice Two", email="alice@example.com", age=31,
                    location="Denver", gender="female",
                ),
            )


async def test_negative_stock_is_rejected(session):
    with pytest.raises(InvalidArgument):
        await commands.create_product(
            session, ProductCreate(name="Broken", category="X", price=1.0, stock=-1)
        )
