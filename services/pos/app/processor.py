"""
POS Service — 売上処理 (Order Processor)

1 回のチェックアウトを最初から最後まで制御する。

  ┌──────────────────────────────────────────────────────────┐
  │  1. カートを検証 (空カート・不正な明細は副作用なしで拒否) │
  │  ── ここから 1 トランザクション ──                       │
  │  2. 在庫を引き当て (InventoryLedger)                     │
  │  3. 小計・税額を計算 (税込合計から 19% を抽出)            │
  │  4. 請求書番号を採番 (InvoiceSequencer)                  │
  │  5. 伝票ヘッダ・明細・SaleRecorded イベントを書き込み     │
  │  6. コミット                                             │
  │  ── どこで失敗してもロールバック ──                      │
  │  7. コミット後に Redis Pub/Sub でイベントを発行           │
  └──────────────────────────────────────────────────────────┘

タイムアウト・キャンセルも例外としてトランザクションを抜けるので、
在庫・番号・伝票のどれも残らない。
"""

import asyncio
import logging
from collections.abc import Sequence
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

import redis.asyncio as aioredis
from sqlalchemy import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from . import event_store
from .aggregate import (
    COMMITTED,
    INVOICE_ALLOCATED,
    PERSISTED,
    STOCK_RESERVED,
    VALIDATED,
    SaleAggregate,
)
from .errors import (
    CheckoutTimeout,
    EmptyCart,
    InvalidCartLine,
    InvalidTotal,
    POSError,
    PersistenceFailure,
)
from .events import SaleLineRecorded, SaleRecorded
from .inventory import InventoryLedger, StockRequest
from .invoices import InvoiceSequencer
from .models import CartLine, Sale, SaleLine
from .schema import sale_lines, sales

logger = logging.getLogger(__name__)

VAT_DIVISOR = Decimal("1.19")
CENT = Decimal("0.01")
# sales.total の Numeric(12, 2) に収まる上限
MAX_TOTAL = Decimal("9999999999.99")

SALE_EVENTS_CHANNEL = "sale_events"


def split_tax(total: Decimal) -> tuple[Decimal, Decimal]:
    """税込合計を (小計, 税額) に分ける。小計 + 税額 は必ず合計と一致する。"""
    subtotal = (total / VAT_DIVISOR).quantize(CENT, rounding=ROUND_HALF_UP)
    return subtotal, total - subtotal


class OrderProcessor:
    def __init__(
        self,
        session_factory: sessionmaker,
        ledger: InventoryLedger,
        sequencer: InvoiceSequencer,
        redis: aioredis.Redis | None = None,
        default_payment_method: str = "Efectivo",
        timeout: float = 10.0,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.sequencer = sequencer
        self.redis = redis
        self.default_payment_method = default_payment_method
        self.timeout = timeout

    async def process_order(
        self,
        cart: Sequence[CartLine],
        declared_total: Decimal | float | str,
        payment_method: str | None = None,
    ) -> Sale:
        """
        カートから売上を作成する。

        成功時はコミット済みの Sale を返す。失敗時は副作用をすべて
        ロールバックした上で EmptyCart / InvalidCartLine / ProductNotFound /
        InsufficientStock / PersistenceFailure を送出する。
        """
        agg = SaleAggregate()
        try:
            total = self._validate(cart, declared_total)
        except POSError as e:
            agg.abort(str(e))
            raise
        agg.advance(VALIDATED)

        try:
            sale, event = await self._checkout(
                agg, cart, total, payment_method or self.default_payment_method
            )
        except asyncio.TimeoutError:
            agg.abort("timeout")
            logger.error("Sale timed out after %ss and was rolled back", self.timeout)
            raise CheckoutTimeout(self.timeout) from None
        except asyncio.CancelledError:
            if agg.status == COMMITTED:
                # コミット済みの売上は残る。イベント発行だけが行われない
                logger.warning(
                    "Sale %s committed but cancelled before publishing",
                    agg.invoice_number,
                )
            else:
                agg.abort("cancelled")
            raise
        except POSError as e:
            agg.abort(str(e))
            logger.info("Sale rejected: %s", e)
            raise
        except SQLAlchemyError as e:
            agg.abort(type(e).__name__)
            logger.exception("Sale failed in the storage layer and was rolled back")
            raise PersistenceFailure("Error processing the sale") from e

        logger.info(
            "Sale %s committed: total=%s, lines=%d",
            sale.invoice_number,
            sale.total,
            len(sale.lines),
        )
        await event_store.publish(self.redis, SALE_EVENTS_CHANNEL, event)
        return sale

    def _validate(
        self, cart: Sequence[CartLine], declared_total: Decimal | float | str
    ) -> Decimal:
        if not cart:
            raise EmptyCart()
        for index, line in enumerate(cart):
            if line.quantity <= 0:
                raise InvalidCartLine(index, "quantity must be positive")
            if line.unit_price < 0:
                raise InvalidCartLine(index, "unit price cannot be negative")

        try:
            total = Decimal(str(declared_total))
            if not total.is_finite() or total < 0:
                raise InvalidTotal(declared_total)
            total = total.quantize(CENT, rounding=ROUND_HALF_UP)
        except InvalidOperation:
            raise InvalidTotal(declared_total) from None
        if total > MAX_TOTAL:
            raise InvalidTotal(declared_total)

        line_sum = sum((line.line_total for line in cart), Decimal("0"))
        if line_sum != total:
            # 合計はクライアント申告値をそのまま採用する
            logger.warning(
                "Declared total %s differs from sum of lines %s", total, line_sum
            )
        return total

    async def _checkout(
        self,
        agg: SaleAggregate,
        cart: Sequence[CartLine],
        total: Decimal,
        payment_method: str,
    ) -> tuple[Sale, SaleRecorded]:
        # タイムアウトはトランザクション本体だけに掛ける。コミットと close は対象外
        async with self.session_factory() as session:
            async with session.begin():
                lines, event = await asyncio.wait_for(
                    self._write_sale(session, agg, cart, total, payment_method),
                    timeout=self.timeout,
                )
            agg.advance(COMMITTED)

        sale = Sale(
            id=agg.id,
            invoice_number=agg.invoice_number,
            created_at=event.timestamp,
            subtotal=agg.subtotal,
            tax=agg.tax,
            total=total,
            payment_method=payment_method,
            lines=lines,
        )
        return sale, event

    async def _write_sale(
        self,
        session: AsyncSession,
        agg: SaleAggregate,
        cart: Sequence[CartLine],
        total: Decimal,
        payment_method: str,
    ) -> tuple[list[SaleLine], SaleRecorded]:
        await self.ledger.reserve_for_order(
            session,
            [StockRequest(line.product_id, line.quantity, line.name) for line in cart],
        )
        agg.advance(STOCK_RESERVED)

        subtotal, tax = split_tax(total)
        agg.subtotal, agg.tax = subtotal, tax

        agg.invoice_number = await self.sequencer.next(session)
        agg.advance(INVOICE_ALLOCATED)

        now = datetime.now(timezone.utc)
        result = await session.execute(
            insert(sales)
            .values(
                invoice_number=agg.invoice_number,
                created_at=now,
                subtotal=subtotal,
                tax=tax,
                total=total,
                payment_method=payment_method,
            )
            .returning(sales.c.id)
        )
        agg.id = result.scalar_one()

        lines = [
            SaleLine(
                product_id=line.product_id,
                product_name=line.name,
                quantity=line.quantity,
                unit_price=line.unit_price,
                line_total=line.line_total,
            )
            for line in cart
        ]
        await session.execute(
            insert(sale_lines),
            [{"sale_id": agg.id, **line.model_dump()} for line in lines],
        )

        event = SaleRecorded(
            sale_id=agg.id,
            invoice_number=agg.invoice_number,
            subtotal=subtotal,
            tax=tax,
            total=total,
            payment_method=payment_method,
            lines=[SaleLineRecorded(**line.model_dump()) for line in lines],
            timestamp=now,
        )
        await event_store.append_event(session, agg.id, "Sale", event)
        agg.advance(PERSISTED)
        return lines, event
