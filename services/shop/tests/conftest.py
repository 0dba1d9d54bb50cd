"""
Shared pytest fixtures.

Each test gets its own SQLite file database (aiosqlite) with the schema
created, so transactions run on separate connections just like they do
against PostgreSQL.
"""

import os
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime
from uuid import uuid4

# app.main reads its configuration at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("CREATE_SCHEMA", "false")

import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app import commands, order_store
from app.models import (
    COMPLETED,
    Customer,
    CustomerCreate,
    LineItem,
    Order,
    Product,
    ProductCreate,
)
from app.tables import create_schema


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'shop.db'}", echo=False)
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def customers(session_factory) -> dict[str, Customer]:
    """alice / bob / carol / dave"""
    data = {
        "alice": CustomerCreate(
            name="Alice Smith", email="alice@example.com", age=30,
            location="New York", gender="female",
        ),
        "bob": CustomerCreate(
            name="Bob Jones", email="bob@example.com", age=45,
            location="Boston", gender="male",
        ),
        "carol": CustomerCreate(
            name="Carol White", email="carol@example.org", age=22,
            location="new orleans", gender="female",
        ),
        "dave": CustomerCreate(
            name="Dave Brown", email="dave@example.org", age=60,
            location="Chicago", gender="male",
        ),
    }
    created = {}
    for key, item in data.items():
        async with session_factory() as session:
            created[key] = await commands.create_customer(session, item)
    return created


@pytest_asyncio.fixture
async def products(session_factory) -> dict[str, Product]:
    """laptop / mouse (Electronics), book (Books), pen (Stationery, stock 3)"""
    data = {
        "laptop": ProductCreate(name="Laptop", category="Electronics", price=1000.0, stock=10),
        "mouse": ProductCreate(name="Mouse", category="Electronics", price=25.0, stock=100),
        "book": ProductCreate(name="Book", category="Books", price=15.0, stock=50),
        "pen": ProductCreate(name="Pen", category="Stationery", price=2.5, stock=3),
    }
    created = {}
    for key, item in data.items():
        async with session_factory() as session:
            created[key] = await commands.create_product(session, item)
    return created


AddOrder = Callable[..., Awaitable[Order]]


@pytest_asyncio.fixture
async def add_order(session_factory) -> AddOrder:
    """
    Insert an order directly (bypassing place_order) so tests can control
    order_date, status and prices.
    """

    async def _add(
        customer: Customer,
        lines: list[tuple[Product, int]],
        order_date: datetime,
        status: str = COMPLETED,
    ) -> Order:
        items = [
            LineItem(product_id=p.id, quantity=q, price_at_purchase=p.price)
            for p, q in lines
        ]
        order = Order(
            id=str(uuid4()),
            customer_id=customer.id,
            products=items,
            total_amount=sum(i.quantity * i.price_at_purchase for i in items),
            order_date=order_date,
            status=status,
        )
        async with session_factory() as session:
            await order_store.insert_order(session, order)
            await session.commit()
        return order

    return _add