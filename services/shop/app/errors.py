"""
Shop Service — ドメイン例外

呼び出し側がそのまま判断に使えるよう、例外は必要な情報
(欠けている商品 ID の一覧、在庫不足の内訳など) をすべて保持する。
自動リトライは行わない。
"""

from dataclasses import dataclass


class ShopError(Exception):
    """Shop Service の全例外の基底クラス"""


class NotFound(ShopError):
    pass


class ProductsNotFound(NotFound):
    def __init__(self, product_ids: list[str]) -> None:
        self.product_ids = list(product_ids)
        super().__init__(f"Products not found: {', '.join(self.product_ids)}")


class CustomerNotFound(NotFound):
    def __init__(self, customer_id: str) -> None:
        self.customer_id = customer_id
        super().__init__(f"Customer not found: {customer_id}")


class OrderNotFound(NotFound):
    def __init__(self, order_id: str) -> None:
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


@dataclass(frozen=True)
class Shortfall:
    """在庫不足 1 件分の内訳"""
    product_id: str
    requested: int
    available: int

    @property
    def missing(self) -> int:
        return self.requested - self.available


class InsufficientStock(ShopError):
    def __init__(self, shortfalls: list[Shortfall]) -> None:
        self.shortfalls = list(shortfalls)
        detail = ", ".join(
            f"{s.product_id} (requested={s.requested}, available={s.available})"
            for s in self.shortfalls
        )
        super().__init__(f"Insufficient stock for product ID {detail}")

    @property
    def product_ids(self) -> list[str]:
        return [s.product_id for s in self.shortfalls]


class InvalidArgument(ShopError):
    pass


class TransactionAborted(ShopError):
    """ストアのコミット失敗 (競合によるアボートを含む)"""


class Unavailable(ShopError):
    """ストアに接続できない"""
