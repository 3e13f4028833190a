"""
POS Service — カタログのコマンドハンドラ (CQRS Write 側)

商品の登録・更新・削除。売上の作成は processor.OrderProcessor が担当する。
状態変更とイベントの追記は同じトランザクションで行い、
コミット後に product_events チャネルへ発行する。
"""

from datetime import datetime, timezone
from decimal import Decimal

import redis.asyncio as aioredis
from sqlalchemy import delete, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from . import event_store
from .errors import InvalidQuantity, ProductNotFound
from .events import ProductCreated, ProductDeleted, ProductUpdated
from .inventory import InventoryLedger
from .queries import product_to_dict
from .schema import products

PRODUCT_EVENTS_CHANNEL = "product_events"


async def create_product(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    name: str,
    price: Decimal,
    stock: int,
    category: str | None = None,
) -> dict:
    """商品登録コマンド"""
    if stock < 0:
        raise InvalidQuantity(None, stock)
    now = datetime.now(timezone.utc)
    category = category or "General"

    async with session.begin():
        result = await session.execute(
            insert(products)
            .values(
                name=name,
                price=price,
                stock=stock,
                category=category,
                created_at=now,
            )
            .returning(products)
        )
        row = result.one()
        event = ProductCreated(
            product_id=row.id,
            name=name,
            price=price,
            stock=stock,
            category=category,
            timestamp=now,
        )
        await event_store.append_event(session, row.id, "Product", event)

    await event_store.publish(redis, PRODUCT_EVENTS_CHANNEL, event)
    return product_to_dict(row)


async def update_product(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    product_id: int,
    changes: dict,
) -> dict:
    """
    商品更新コマンド

    changes に含まれる項目だけを更新する。在庫の変更は
    InventoryLedger.set_stock を通すので負の値は拒否される。
    """
    changes = {k: v for k, v in changes.items() if v is not None}
    stock = changes.pop("stock", None)

    async with session.begin():
        if stock is not None:
            await InventoryLedger().set_stock(session, product_id, stock)
        if changes:
            result = await session.execute(
                update(products).where(products.c.id == product_id).values(**changes)
            )
            if result.rowcount == 0:
                raise ProductNotFound(product_id)

        row = (
            await session.execute(select(products).where(products.c.id == product_id))
        ).first()
        if row is None:
            raise ProductNotFound(product_id)

        if stock is not None:
            changes["stock"] = stock
        event = ProductUpdated(
            product_id=product_id,
            changes=changes,
            timestamp=datetime.now(timezone.utc),
        )
        await event_store.append_event(session, product_id, "Product", event)

    await event_store.publish(redis, PRODUCT_EVENTS_CHANNEL, event)
    return product_to_dict(row)


async def delete_product(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    product_id: int,
) -> None:
    """商品削除コマンド。過去の売上明細はスナップショットなので影響しない。"""
    async with session.begin():
        result = await session.execute(
            delete(products).where(products.c.id == product_id)
        )
        if result.rowcount == 0:
            raise ProductNotFound(product_id)
        event = ProductDeleted(
            product_id=product_id, timestamp=datetime.now(timezone.utc)
        )
        await event_store.append_event(session, product_id, "Product", event)

    await event_store.publish(redis, PRODUCT_EVENTS_CHANNEL, event)
