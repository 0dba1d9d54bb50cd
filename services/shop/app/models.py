"""
Shop Service — ドメインモデル

ストアの行・コマンドの入力・レポートの出力をすべて pydantic で定義する。
フィールドは snake_case、JSON 出力は camelCase (totalAmount など)。
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

COMPLETED = "completed"


class ShopModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── カタログ ─────────────────────────────────────


class CustomerCreate(ShopModel):
    name: str
    email: str
    age: int
    location: str
    gender: str


class Customer(CustomerCreate):
    id: str


class ProductCreate(ShopModel):
    name: str
    category: str
    price: float
    stock: int


class Product(ProductCreate):
    id: str


# ── 注文 ─────────────────────────────────────────


class LineItem(ShopModel):
    """注文明細。price_at_purchase は注文時点の商品価格のスナップショット"""
    product_id: str
    quantity: int
    price_at_purchase: float


class Order(ShopModel):
    id: str
    customer_id: str
    products: list[LineItem]
    total_amount: float
    order_date: datetime
    status: str


class LineRequest(ShopModel):
    product_id: str
    quantity: int


class PlaceOrderRequest(ShopModel):
    customer_id: str
    products: list[LineRequest]


# ── レポート ─────────────────────────────────────


class CustomerSpending(ShopModel):
    customer_id: str
    customer_name: str
    total_spent: float
    average_order_value: float
    last_order_date: datetime


class TopSellingProduct(ShopModel):
    product_id: str
    name: str
    total_sold: int


class CategoryRevenue(ShopModel):
    category: str
    revenue: float


class SalesAnalytics(ShopModel):
    total_revenue: float = 0.0
    completed_orders: int = 0
    category_breakdown: list[CategoryRevenue] = []


class CustomerFilter(ShopModel):
    name: str | None = None
    email: str | None = None
    location: str | None = None
    gender: str | None = None
    min_age: int | None = None
    max_age: int | None = None


class CustomerWithStats(Customer):
    total_spending: float
    total_orders: int


class Pagination(ShopModel):
    total: int
    page: int
    limit: int
    total_pages: int


class CustomerPage(ShopModel):
    customers: list[CustomerWithStats]
    pagination: Pagination


class OrderProductDetail(ShopModel):
    product_id: str
    name: str
    category: str
    quantity: int
    price_at_purchase: float


class OrderDetails(ShopModel):
    order_id: str
    customer_id: str
    total_amount: float
    order_date: datetime
    status: str
    products: list[OrderProductDetail]


class OrderPage(ShopModel):
    orders: list[OrderDetails]
    pagination: Pagination
