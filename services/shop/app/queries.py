"""
Shop Service — クエリハンドラ (CQRS の Read 側)

5 つの分析レポートと、カタログ・注文の単純な参照。
どのレポートも読み取り専用で、ストアから取得したドキュメントを
pipeline のステージで 絞り込み → 結合 → 集計 → 整形 → 並べ替え → ページング する。

該当データがないのはエラーではない: 空リスト・ゼロ値・None を返す。
"""

from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from . import catalog_store, order_store
from .errors import CustomerNotFound, InvalidArgument, OrderNotFound, ProductsNotFound
from .models import (
    COMPLETED,
    CategoryRevenue,
    Customer,
    CustomerFilter,
    CustomerPage,
    CustomerSpending,
    Order,
    OrderDetails,
    OrderPage,
    Product,
    SalesAnalytics,
    TopSellingProduct,
)
from .pipeline import (
    ASC,
    DEFAULT_LIMIT,
    DEFAULT_PAGE,
    DESC,
    Pipeline,
    avg_of,
    first_of,
    group,
    lookup,
    match,
    max_of,
    page_stages,
    paginate,
    project,
    push,
    sort,
    sum_of,
    take,
    unwind,
    validate_paging,
)
from .tables import as_utc

# 並べ替えに使えるフィールド (API 名 → ドキュメントのフィールド)
CUSTOMER_SORT_FIELDS = {
    "name": "name",
    "email": "email",
    "age": "age",
    "location": "location",
    "gender": "gender",
    "totalSpending": "total_spending",
    "totalOrders": "total_orders",
}


def _docs(models) -> list[dict]:
    return [m.model_dump() for m in models]


def _is_completed(doc: dict) -> bool:
    return doc["status"] == COMPLETED


async def _product_docs(session: AsyncSession, orders: list[Order]) -> list[dict]:
    product_ids = sorted({item.product_id for order in orders for item in order.products})
    return _docs(await catalog_store.get_products_by_ids(session, product_ids))


# ── 分析レポート ─────────────────────────────────


async def get_customer_spending(
    session: AsyncSession, customer_id: str
) -> CustomerSpending | None:
    """顧客の completed 注文の合計・平均・最終注文日。注文がなければ None"""
    orders = await order_store.find_orders(session, customer_id=customer_id)
    customer = await catalog_store.get_customer(session, customer_id)
    customer_docs = _docs([customer]) if customer else []

    rows = Pipeline(
        match(_is_completed),
        lookup(customer_docs, "customer_id", "id", "customer_details"),
        unwind("customer_details"),
        group(
            "customer_id",
            customer_name=first_of("customer_details.name"),
            total_spent=sum_of("total_amount"),
            average_order_value=avg_of("total_amount"),
            last_order_date=max_of("order_date"),
        ),
    ).run(_docs(orders))

    if not rows:
        return None
    row = rows[0]
    return CustomerSpending(
        customer_id=row["_id"],
        customer_name=row["customer_name"],
        total_spent=row["total_spent"],
        average_order_value=row["average_order_value"],
        last_order_date=row["last_order_date"],
    )


async def get_top_selling_products(
    session: AsyncSession, limit: int
) -> list[TopSellingProduct]:
    """
    販売数量の多い商品を limit 件。

    同数の場合は productId の昇順。商品が既に存在しないグループは
    limit で切った後の結合で落ちるため、limit 件未満になることがある。
    """
    if limit <= 0:
        raise InvalidArgument(f"limit must be a positive integer: {limit}")

    orders = await order_store.find_orders(session)
    top = Pipeline(
        unwind("products"),
        group("products.product_id", total_sold=sum_of("products.quantity")),
        sort(("total_sold", DESC), ("_id", ASC)),
        take(limit),
    ).run(_docs(orders))

    products = await catalog_store.get_products_by_ids(session, [row["_id"] for row in top])
    rows = Pipeline(
        lookup(_docs(products), "_id", "id", "product_details"),
        unwind("product_details"),
        project(
            product_id="_id",
            name="product_details.name",
            total_sold="total_sold",
        ),
    ).run(top)
    return [TopSellingProduct(**row) for row in rows]


async def get_sales_analytics(
    session: AsyncSession, start: datetime, end: datetime
) -> SalesAnalytics:
    """
    期間 [start, end] (両端を含む) の completed 注文の売上集計。

    completedOrders は期間内の注文数。カテゴリ別内訳はカテゴリ名順。
    該当注文がなければゼロ値 (内訳は空) を返す。
    """
    start, end = as_utc(start), as_utc(end)
    if start > end:
        raise InvalidArgument("startDate must not be after endDate")

    orders = await order_store.find_orders(session, start=start, end=end)
    completed = Pipeline(match(_is_completed)).run(_docs(orders))
    if not completed:
        return SalesAnalytics()

    product_docs = await _product_docs(session, orders)
    by_category = Pipeline(
        unwind("products"),
        lookup(product_docs, "products.product_id", "id", "product_details"),
        unwind("product_details"),
        group(
            "product_details.category",
            revenue=sum_of(
                lambda d: d["products"]["quantity"] * d["products"]["price_at_purchase"]
            ),
        ),
        sort(("_id", ASC)),
    )
    totals = by_category.then(
        group(
            None,
            total_revenue=sum_of("revenue"),
            category_breakdown=push(
                lambda d: CategoryRevenue(category=d["_id"], revenue=d["revenue"])
            ),
        ),
    ).run(completed)

    if not totals:
        return SalesAnalytics(completed_orders=len(completed))
    return SalesAnalytics(
        total_revenue=totals[0]["total_revenue"],
        completed_orders=len(completed),
        category_breakdown=totals[0]["category_breakdown"],
    )


async def get_customers(
    session: AsyncSession,
    flt: CustomerFilter | None = None,
    page: int = DEFAULT_PAGE,
    limit: int = DEFAULT_LIMIT,
    sort_by: str = "name",
    sort_order: str = "asc",
) -> CustomerPage:
    """
    顧客一覧。totalSpending / totalOrders は顧客の全注文から算出する。
    pagination.total はページングを無視した該当件数。
    """
    validate_paging(page, limit)
    field = CUSTOMER_SORT_FIELDS.get(sort_by)
    if field is None:
        raise InvalidArgument(f"Cannot sort customers by {sort_by}")
    if sort_order not in ("asc", "desc"):
        raise InvalidArgument(f"sortOrder must be 'asc' or 'desc': {sort_order}")
    flt = flt or CustomerFilter()

    customers = await catalog_store.find_customers_with_stats(
        session,
        flt,
        sort_field=field,
        descending=sort_order == "desc",
        offset=(page - 1) * limit,
        limit=limit,
    )
    total = await catalog_store.count_customers(session, flt)

    return CustomerPage(customers=customers, pagination=paginate(total, page, limit))


async def get_customer_orders(
    session: AsyncSession,
    customer_id: str,
    page: int = DEFAULT_PAGE,
    limit: int = DEFAULT_LIMIT,
) -> OrderPage:
    """
    顧客の注文履歴 (新しい順)。明細には商品名とカテゴリを付ける。

    既に存在しない商品の明細は結合で落ちる。明細が 1 件も残らない注文は
    履歴に現れず、pagination.total にも数えない。
    """
    validate_paging(page, limit)

    orders = await order_store.find_orders(session, customer_id=customer_id)
    product_docs = await _product_docs(session, orders)

    history = Pipeline(
        unwind("products"),
        lookup(product_docs, "products.product_id", "id", "product_details"),
        unwind("product_details"),
        group(
            "id",
            customer_id=first_of("customer_id"),
            total_amount=first_of("total_amount"),
            order_date=first_of("order_date"),
            status=first_of("status"),
            products=push(lambda d: {
                "product_id": d["products"]["product_id"],
                "name": d["product_details"]["name"],
                "category": d["product_details"]["category"],
                "quantity": d["products"]["quantity"],
                "price_at_purchase": d["products"]["price_at_purchase"],
            }),
        ),
        sort(("order_date", DESC), ("_id", ASC)),
    ).run(_docs(orders))
    rows = Pipeline(*page_stages(page, limit)).run(history)

    return OrderPage(
        orders=[
            OrderDetails(order_id=row.pop("_id"), **row)
            for row in rows
        ],
        pagination=paginate(len(history), page, limit),
    )


# ── 単純な参照 ───────────────────────────────────


async def get_customer(session: AsyncSession, customer_id: str) -> Customer:
    customer = await catalog_store.get_customer(session, customer_id)
    if customer is None:
        raise CustomerNotFound(customer_id)
    return customer


async def get_product(session: AsyncSession, product_id: str) -> Product:
    product = await catalog_store.get_product(session, product_id)
    if product is None:
        raise ProductsNotFound([product_id])
    return product


async def list_products(session: AsyncSession) -> list[Product]:
    return await catalog_store.list_products(session)


async def get_order(session: AsyncSession, order_id: str) -> Order:
    order = await order_store.get_order(session, order_id)
    if order is None:
        raise OrderNotFound(order_id)
    return order
