"""
Shop Service — コマンドハンドラ (CQRS の Write 側)

注文確定 (place_order) は 1 つのトランザクションで
在庫確認 → 価格計算 → 在庫の減算 → 注文の保存 → コミット を行う。
途中のどこで失敗してもロールバックし、部分的な在庫変更や
書きかけの注文が他から見えることはない。

自動リトライはしない。リトライするかどうかは呼び出し側が決める。
"""

import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from uuid import uuid4

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import exc
from sqlalchemy.ext.asyncio import AsyncSession

from . import catalog_store, events, order_store
from .errors import (
    CustomerNotFound,
    InsufficientStock,
    InvalidArgument,
    ProductsNotFound,
    ShopError,
    Shortfall,
    TransactionAborted,
    Unavailable,
)
from .models import (
    COMPLETED,
    Customer,
    CustomerCreate,
    LineItem,
    LineRequest,
    Order,
    Product,
    ProductCreate,
)

logger = logging.getLogger(__name__)


async def _abort(session: AsyncSession) -> None:
    try:
        await session.rollback()
    except exc.SQLAlchemyError:
        logger.exception("Rollback failed")


@asynccontextmanager
async def transaction(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    """
    ブロックを 1 トランザクションとして実行する。

    正常終了でコミット、例外ならどの経路でもロールバックする。
    ストアの例外は TransactionAborted / Unavailable に変換する。
    """
    try:
        yield session
        await session.commit()
    except ShopError:
        await _abort(session)
        raise
    except (OSError, exc.InterfaceError, exc.DisconnectionError) as e:
        await _abort(session)
        raise Unavailable(f"Store unavailable: {e}") from e
    except exc.DBAPIError as e:
        await _abort(session)
        if e.connection_invalidated:
            raise Unavailable(f"Store unavailable: {e}") from e
        raise TransactionAborted(f"Transaction aborted: {e}") from e
    except exc.SQLAlchemyError as e:
        await _abort(session)
        raise TransactionAborted(f"Transaction aborted: {e}") from e
    except BaseException:
        await _abort(session)
        raise


def merge_lines(lines: Iterable[LineRequest]) -> dict[str, int]:
    """
    注文行を商品ごとにまとめる (同じ商品が複数行あれば数量を合算)。
    順序は最初に現れた順。数量は正の整数でなければならない。
    """
    merged: dict[str, int] = {}
    for line in lines:
        if line.quantity <= 0:
            raise InvalidArgument(
                f"Quantity must be a positive integer for product ID {line.product_id}"
            )
        merged[line.product_id] = merged.get(line.product_id, 0) + line.quantity
    if not merged:
        raise InvalidArgument("An order needs at least one product")
    return merged


async def place_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    customer_id: str,
    lines: list[LineRequest],
) -> Order:
    """
    注文確定コマンド

    1. 顧客の存在を確認
    2. 商品をまとめて取得し、見つからない ID をすべて列挙して失敗
    3. 全行の在庫を確認し、不足している商品をすべて列挙して失敗
    4. 現在価格を priceAtPurchase として記録し合計を計算
    5. 在庫を商品 ID 順に数量分だけ条件付きで減算 (同時注文に負けたら在庫不足)
    6. 注文を保存してコミット
    7. Redis Pub/Sub で OrderPlaced を発行 (設定されていれば)
    """
    requested = merge_lines(lines)

    try:
        async with transaction(session):
            if await catalog_store.get_customer(session, customer_id) is None:
                raise CustomerNotFound(customer_id)

            found = {
                p.id: p
                for p in await catalog_store.get_products_by_ids(session, list(requested))
            }
            missing = [pid for pid in requested if pid not in found]
            if missing:
                raise ProductsNotFound(missing)

            shortfalls = [
                Shortfall(pid, quantity, found[pid].stock)
                for pid, quantity in requested.items()
                if quantity > found[pid].stock
            ]
            if shortfalls:
                raise InsufficientStock(shortfalls)

            items = [
                LineItem(
                    product_id=pid,
                    quantity=quantity,
                    price_at_purchase=found[pid].price,
                )
                for pid, quantity in requested.items()
            ]
            total_amount = sum(item.quantity * item.price_at_purchase for item in items)

            # 行ロックは常に商品 ID 順で取る
            for item in sorted(items, key=lambda i: i.product_id):
                if not await catalog_store.decrement_stock(
                    session, item.product_id, item.quantity
                ):
                    current = await catalog_store.get_product(session, item.product_id)
                    raise InsufficientStock([
                        Shortfall(item.product_id, item.quantity, current.stock if current else 0)
                    ])

            order = Order(
                id=str(uuid4()),
                customer_id=customer_id,
                products=items,
                total_amount=total_amount,
                order_date=datetime.now(timezone.utc),
                status=COMPLETED,
            )
            await order_store.insert_order(session, order)
    except (CustomerNotFound, ProductsNotFound, InsufficientStock) as e:
        logger.warning("Order rejected for customer %s: %s", customer_id, e)
        raise
    except (TransactionAborted, Unavailable):
        logger.exception("Error placing order for customer %s", customer_id)
        raise

    logger.info(
        "Order %s placed for customer %s (total=%.2f)",
        order.id, customer_id, order.total_amount,
    )

    if redis is not None:
        try:
            await events.publish_order_placed(redis, order)
        except RedisError:
            logger.exception("Failed to publish OrderPlaced for order %s", order.id)

    return order


# ── 管理用コマンド (カタログ登録) ────────────────


async def create_customer(session: AsyncSession, data: CustomerCreate) -> Customer:
    if data.age < 0:
        raise InvalidArgument(f"age must not be negative: {data.age}")
    try:
        async with transaction(session):
            customer = await catalog_store.insert_customer(session, data)
    except TransactionAborted as e:
        if isinstance(e.__cause__, exc.IntegrityError):
            raise InvalidArgument(f"Email already registered: {data.email}") from e
        raise
    logger.info("Customer %s created", customer.id)
    return customer


async def create_product(session: AsyncSession, data: ProductCreate) -> Product:
    if data.stock < 0:
        raise InvalidArgument(f"stock must not be negative: {data.stock}")
    if data.price < 0:
        raise InvalidArgument(f"price must not be negative: {data.price}")
    async with transaction(session):
        product = await catalog_store.insert_product(session, data)
    logger.info("Product %s created", product.id)
    return product
