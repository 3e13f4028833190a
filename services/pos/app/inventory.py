"""
POS Service — 在庫台帳 (Inventory Ledger)

在庫数の唯一の正。チェックと減算は 1 本の条件付き UPDATE で行う:

    UPDATE products SET stock = stock - :qty
    WHERE id = :id AND stock >= :qty

呼び出し側のトランザクション内で実行するので、途中の明細で失敗すれば
それまでの減算もロールバックされ、他の注文からは見えない。
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import InsufficientStock, InvalidQuantity, ProductNotFound
from .schema import products

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StockRequest:
    product_id: int
    quantity: int
    name: str | None = None


class InventoryLedger:
    async def reserve_for_order(
        self, session: AsyncSession, items: Iterable[StockRequest]
    ) -> None:
        """
        カート全体の在庫を引き当てる。

        商品 ID 順にロックを取るので、商品が重なる注文同士でデッドロックしない。
        失敗時は ProductNotFound / InsufficientStock を送出する。
        ロールバックは呼び出し側のトランザクションが行う。
        """
        for item in sorted(items, key=lambda i: i.product_id):
            result = await session.execute(
                update(products)
                .where(products.c.id == item.product_id)
                .where(products.c.stock >= item.quantity)
                .values(stock=products.c.stock - item.quantity)
            )
            if result.rowcount == 1:
                continue

            row = (
                await session.execute(
                    select(products.c.name, products.c.stock).where(
                        products.c.id == item.product_id
                    )
                )
            ).first()
            if row is None:
                raise ProductNotFound(item.product_id, item.name)
            logger.info(
                "Insufficient stock for product %s: requested=%d, available=%d",
                item.product_id,
                item.quantity,
                row.stock,
            )
            raise InsufficientStock(item.product_id, row.name, row.stock, item.quantity)

    async def get_stock(self, session: AsyncSession, product_id: int) -> int:
        result = await session.execute(
            select(products.c.stock).where(products.c.id == product_id)
        )
        stock = result.scalar_one_or_none()
        if stock is None:
            raise ProductNotFound(product_id)
        return stock

    async def set_stock(
        self, session: AsyncSession, product_id: int, quantity: int
    ) -> None:
        if quantity < 0:
            raise InvalidQuantity(product_id, quantity)
        result = await session.execute(
            update(products)
            .where(products.c.id == product_id)
            .values(stock=quantity)
        )
        if result.rowcount == 0:
            raise ProductNotFound(product_id)
