"""
Shop Service — FastAPI エントリーポイント

CQRS パターンに従い、Command (POST) と Query (GET) のエンドポイントを分離。
注文確定はトランザクションで在庫と注文を同時に書き込み、
分析レポートは読み取り専用の集計パイプラインで返す。
"""

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from . import commands, queries
from .errors import (
    InsufficientStock,
    InvalidArgument,
    NotFound,
    ProductsNotFound,
    ShopError,
    TransactionAborted,
    Unavailable,
)
from .models import (
    Customer,
    CustomerCreate,
    CustomerFilter,
    CustomerPage,
    CustomerSpending,
    Order,
    OrderPage,
    PlaceOrderRequest,
    Product,
    ProductCreate,
    SalesAnalytics,
    TopSellingProduct,
)
from .tables import create_schema

logger = logging.getLogger(__name__)

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL")
CREATE_SCHEMA = os.environ.get("CREATE_SCHEMA", "true").lower() == "true"

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    if CREATE_SCHEMA:
        await create_schema(engine)
    if REDIS_URL:
        redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    yield
    if redis_pool is not None:
        await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Shop Service", lifespan=lifespan)


async def get_session() -> AsyncIterator[AsyncSession]:
    async with async_session() as session:
        yield session


def get_redis() -> aioredis.Redis | None:
    return redis_pool


# ── エラー変換 ───────────────────────────────────


def _status_for(error: ShopError) -> int:
    if isinstance(error, NotFound):
        return 404
    if isinstance(error, (InsufficientStock, TransactionAborted)):
        return 409
    if isinstance(error, InvalidArgument):
        return 422
    if isinstance(error, Unavailable):
        return 503
    return 500


@app.exception_handler(ShopError)
async def handle_shop_error(request: Request, error: ShopError):
    body: dict = {"detail": str(error), "error": type(error).__name__}
    if isinstance(error, ProductsNotFound):
        body["productIds"] = error.product_ids
    if isinstance(error, InsufficientStock):
        body["shortfalls"] = [
            {"productId": s.product_id, "requested": s.requested, "available": s.available}
            for s in error.shortfalls
        ]
    logger.info("%s %s failed: %s", request.method, request.url.path, error)
    return JSONResponse(status_code=_status_for(error), content=body)


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/commands/orders", response_model=Order)
async def cmd_place_order(
    req: PlaceOrderRequest,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis | None = Depends(get_redis),
):
    """注文確定コマンド"""
    return await commands.place_order(session, redis, req.customer_id, req.products)


@app.post("/commands/customers", response_model=Customer)
async def cmd_create_customer(
    req: CustomerCreate, session: AsyncSession = Depends(get_session)
):
    """顧客登録コマンド (管理用)"""
    return await commands.create_customer(session, req)


@app.post("/commands/products", response_model=Product)
async def cmd_create_product(
    req: ProductCreate, session: AsyncSession = Depends(get_session)
):
    """商品登録コマンド (管理用)"""
    return await commands.create_product(session, req)


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/queries/customers", response_model=CustomerPage)
async def query_customers(
    name: str | None = None,
    email: str | None = None,
    location: str | None = None,
    gender: str | None = None,
    min_age: int | None = Query(None, alias="minAge"),
    max_age: int | None = Query(None, alias="maxAge"),
    page: int = 1,
    limit: int = 10,
    sort_by: str = Query("name", alias="sortBy"),
    sort_order: str = Query("asc", alias="sortOrder"),
    session: AsyncSession = Depends(get_session),
):
    """顧客一覧 (絞り込み・並べ替え・ページング)"""
    flt = CustomerFilter(
        name=name,
        email=email,
        location=location,
        gender=gender,
        min_age=min_age,
        max_age=max_age,
    )
    return await queries.get_customers(session, flt, page, limit, sort_by, sort_order)


@app.get("/queries/customers/{customer_id}", response_model=Customer)
async def query_customer(customer_id: str, session: AsyncSession = Depends(get_session)):
    return await queries.get_customer(session, customer_id)


@app.get("/queries/customers/{customer_id}/spending", response_model=CustomerSpending | None)
async def query_customer_spending(
    customer_id: str, session: AsyncSession = Depends(get_session)
):
    """顧客の購入額サマリー。completed 注文がなければ null"""
    return await queries.get_customer_spending(session, customer_id)


@app.get("/queries/customers/{customer_id}/orders", response_model=OrderPage)
async def query_customer_orders(
    customer_id: str,
    page: int = 1,
    limit: int = 10,
    session: AsyncSession = Depends(get_session),
):
    """顧客の注文履歴 (新しい順)"""
    return await queries.get_customer_orders(session, customer_id, page, limit)


@app.get("/queries/products", response_model=list[Product])
async def query_products(session: AsyncSession = Depends(get_session)):
    return await queries.list_products(session)


@app.get("/queries/products/top-selling", response_model=list[TopSellingProduct])
async def query_top_selling_products(
    limit: int = 10, session: AsyncSession = Depends(get_session)
):
    """販売数量ランキング"""
    return await queries.get_top_selling_products(session, limit)


@app.get("/queries/products/{product_id}", response_model=Product)
async def query_product(product_id: str, session: AsyncSession = Depends(get_session)):
    return await queries.get_product(session, product_id)


@app.get("/queries/orders/{order_id}", response_model=Order)
async def query_order(order_id: str, session: AsyncSession = Depends(get_session)):
    return await queries.get_order(session, order_id)


@app.get("/queries/analytics/sales", response_model=SalesAnalytics)
async def query_sales_analytics(
    start_date: datetime = Query(alias="startDate"),
    end_date: datetime = Query(alias="endDate"),
    session: AsyncSession = Depends(get_session),
):
    """期間内の売上とカテゴリ別内訳"""
    return await queries.get_sales_analytics(session, start_date, end_date)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "shop-service"}
