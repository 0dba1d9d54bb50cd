"""
Shop Service — カタログストア (顧客・商品)

ロジックを持たない CRUD とインデックス検索のみ。
コミットは呼び出し側 (commands) の責務。
"""

from uuid import uuid4

from sqlalchemy import and_, func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    Customer,
    CustomerCreate,
    CustomerFilter,
    CustomerWithStats,
    Product,
    ProductCreate,
)
from .tables import customers, orders, products


# ── Customer ─────────────────────────────────────


async def insert_customer(session: AsyncSession, data: CustomerCreate) -> Customer:
    customer = Customer(id=str(uuid4()), **data.model_dump())
    await session.execute(insert(customers).values(**customer.model_dump()))
    return customer


async def get_customer(session: AsyncSession, customer_id: str) -> Customer | None:
    result = await session.execute(
        select(customers).where(customers.c.id == customer_id)
    )
    row = result.first()
    if not row:
        return None
    return Customer.model_validate(dict(row._mapping))


def _customer_conditions(flt: CustomerFilter) -> list:
    """name / email / location は大文字小文字を区別しない部分一致、gender は完全一致"""
    conditions = []
    for column, value in (
        (customers.c.name, flt.name),
        (customers.c.email, flt.email),
        (customers.c.location, flt.location),
    ):
        if value:
            conditions.append(func.lower(column).contains(value.lower(), autoescape=True))
    if flt.gender:
        conditions.append(customers.c.gender == flt.gender)
    if flt.min_age is not None:
        conditions.append(customers.c.age >= flt.min_age)
    if flt.max_age is not None:
        conditions.append(customers.c.age <= flt.max_age)
    return conditions


async def find_customers_with_stats(
    session: AsyncSession,
    flt: CustomerFilter,
    *,
    sort_field: str,
    descending: bool,
    offset: int,
    limit: int,
) -> list[CustomerWithStats]:
    """
    フィルタに合う顧客を 1 ページ分、全注文の合計金額・件数つきで返す。
    集計・並べ替え・ページングは SQL で行う。同順位は id の昇順。
    """
    totals = (
        select(
            orders.c.customer_id,
            func.sum(orders.c.total_amount).label("spent"),
            func.count().label("placed"),
        )
        .group_by(orders.c.customer_id)
        .subquery()
    )
    stats = {
        "total_spending": func.coalesce(totals.c.spent, 0.0),
        "total_orders": func.coalesce(totals.c.placed, 0),
    }
    sort_key = stats[sort_field] if sort_field in stats else customers.c[sort_field]

    result = await session.execute(
        select(
            customers,
            stats["total_spending"].label("total_spending"),
            stats["total_orders"].label("total_orders"),
        )
        .select_from(customers.outerjoin(totals, totals.c.customer_id == customers.c.id))
        .where(and_(True, *_customer_conditions(flt)))
        .order_by(sort_key.desc() if descending else sort_key.asc(), customers.c.id)
        .offset(offset)
        .limit(limit)
    )
    return [CustomerWithStats.model_validate(dict(row._mapping)) for row in result.fetchall()]


async def count_customers(session: AsyncSession, flt: CustomerFilter) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(customers)
        .where(and_(True, *_customer_conditions(flt)))
    )
    return result.scalar_one()


# ── Product ──────────────────────────────────────


async def insert_product(session: AsyncSession, data: ProductCreate) -> Product:
    product = Product(id=str(uuid4()), **data.model_dump())
    await session.execute(insert(products).values(**product.model_dump()))
    return product


async def get_product(session: AsyncSession, product_id: str) -> Product | None:
    result = await session.execute(
        select(products).where(products.c.id == product_id)
    )
    row = result.first()
    if not row:
        return None
    return Product.model_validate(dict(row._mapping))


async def get_products_by_ids(
    session: AsyncSession, product_ids: list[str]
) -> list[Product]:
    if not product_ids:
        return []
    result = await session.execute(
        select(products).where(products.c.id.in_(product_ids)).order_by(products.c.id)
    )
    return [Product.model_validate(dict(row._mapping)) for row in result.fetchall()]


async def list_products(session: AsyncSession) -> list[Product]:
    result = await session.execute(
        select(products).order_by(products.c.name, products.c.id)
    )
    return [Product.model_validate(dict(row._mapping)) for row in result.fetchall()]


async def decrement_stock(session: AsyncSession, product_id: str, quantity: int) -> bool:
    """
    在庫を quantity だけ減らす。

    WHERE stock >= :quantity 付きの条件付き UPDATE なので、
    同時に走る注文が先に在庫を消費していれば 0 行更新となり False を返す。
    (PostgreSQL は行ロック、SQLite は単一ライターで直列化される)
    """
    result = await session.execute(
        update(products)
        .where(products.c.id == product_id, products.c.stock >= quantity)
        .values(stock=products.c.stock - quantity)
    )
    return result.rowcount == 1
