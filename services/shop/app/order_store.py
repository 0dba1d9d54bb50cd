"""
Shop Service — 注文ストア

注文は注文確定トランザクションの中で一度だけ INSERT され、
以後は更新も削除もされない。
"""

from datetime import datetime

from sqlalchemy import and_, insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import LineItem, Order
from .tables import as_utc, orders


def _to_order(row) -> Order:
    return Order(
        id=row.id,
        customer_id=row.customer_id,
        products=[LineItem.model_validate(item) for item in row.products],
        total_amount=row.total_amount,
        order_date=as_utc(row.order_date),
        status=row.status,
    )


async def insert_order(session: AsyncSession, order: Order) -> None:
    await session.execute(
        insert(orders).values(
            id=order.id,
            customer_id=order.customer_id,
            products=[item.model_dump() for item in order.products],
            total_amount=order.total_amount,
            order_date=as_utc(order.order_date),
            status=order.status,
        )
    )


async def get_order(session: AsyncSession, order_id: str) -> Order | None:
    result = await session.execute(select(orders).where(orders.c.id == order_id))
    row = result.first()
    if not row:
        return None
    return _to_order(row)


def _order_conditions(
    customer_id: str | None,
    start: datetime | None,
    end: datetime | None,
) -> list:
    conditions = []
    if customer_id is not None:
        conditions.append(orders.c.customer_id == customer_id)
    if start is not None:
        conditions.append(orders.c.order_date >= as_utc(start))
    if end is not None:
        conditions.append(orders.c.order_date <= as_utc(end))
    return conditions


async def find_orders(
    session: AsyncSession,
    *,
    customer_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[Order]:
    """
    条件に合う注文を id 順で返す。

    インデックスのある customer_id と日付範囲 (両端を含む) だけを
    ストア側で絞り込む。status などの残りの条件は集計パイプラインの match で行う。
    """
    conditions = _order_conditions(customer_id, start, end)
    result = await session.execute(
        select(orders).where(and_(True, *conditions)).order_by(orders.c.id)
    )
    return [_to_order(row) for row in result.fetchall()]
