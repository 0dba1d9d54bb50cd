"""
Shop Service — イベント定義

注文確定後に Redis Pub/Sub の order_events チャネルへ通知する。
通知はコミット後に行うので、購読側が受け取る注文は必ず永続化済み。
"""

import json
from datetime import datetime

import redis.asyncio as aioredis
from pydantic import BaseModel

from .models import LineItem, Order

ORDER_EVENTS = "order_events"


class OrderPlaced(BaseModel):
    """注文が確定された"""
    order_id: str
    customer_id: str
    products: list[LineItem]
    total_amount: float
    timestamp: datetime


async def publish_order_placed(redis: aioredis.Redis, order: Order) -> None:
    event = OrderPlaced(
        order_id=order.id,
        customer_id=order.customer_id,
        products=order.products,
        total_amount=order.total_amount,
        timestamp=order.order_date,
    )
    await redis.publish(ORDER_EVENTS, json.dumps({
        "event_type": "OrderPlaced",
        "data": event.model_dump(mode="json"),
    }, default=str))
