"""
Shop Service — テーブル定義

customers / products / orders の 3 コレクション。
注文明細は orders.products に JSON ドキュメントとして埋め込む
(明細は注文と一緒に一度だけ書かれ、以後更新されない)。

インデックスは検索・集計で使う列に張る。
"""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

customers = Table(
    "customers",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(200), nullable=False, index=True),
    Column("email", String(320), nullable=False, unique=True),
    Column("age", Integer, nullable=False, index=True),
    Column("location", String(200), nullable=False, index=True),
    Column("gender", String(32), nullable=False),
    Index("ix_customers_name_location", "name", "location"),
)

products = Table(
    "products",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(200), nullable=False, index=True),
    Column("category", String(100), nullable=False, index=True),
    Column("price", Float, nullable=False, index=True),
    Column("stock", Integer, nullable=False),
    CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
    Index("ix_products_category_price", "category", "price"),
)

orders = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("customer_id", String(36), nullable=False, index=True),
    Column("products", JSON, nullable=False),
    Column("total_amount", Float, nullable=False),
    Column("order_date", DateTime(timezone=True), nullable=False, index=True),
    Column("status", String(32), nullable=False, index=True),
    Index("ix_orders_customer_id_order_date", "customer_id", "order_date"),
)


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


def as_utc(value: datetime) -> datetime:
    """タイムゾーンなしの日時は UTC とみなし、常に UTC の aware datetime を返す。"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
