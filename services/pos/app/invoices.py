"""
POS Service — 請求書番号の採番 (Invoice Sequencer)

番号は "FAC-<連番>" 形式。カウンタはプロセス内の変数ではなく
invoice_sequence テーブルの 1 行で持つ。採番は売上と同じトランザクション内の
UPDATE ... RETURNING なので:

- 売上がロールバックされれば番号も戻る (欠番にならない)
- 行ロックで直列化されるため、複数プロセスでも重複しない
"""

import logging

from sqlalchemy import insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import PersistenceFailure
from .schema import invoice_sequence, sales

logger = logging.getLogger(__name__)

SEQUENCE_NAME = "invoice"


class InvoiceSequencer:
    def __init__(self, prefix: str = "FAC", start: int = 1000) -> None:
        self.prefix = prefix
        self.start = start

    def format(self, value: int) -> str:
        return f"{self.prefix}-{value}"

    def parse(self, invoice_number: str) -> int:
        prefix, sep, number = invoice_number.rpartition("-")
        if not sep or not number.isdigit():
            raise PersistenceFailure(f"Malformed invoice number: {invoice_number!r}")
        return int(number)

    async def initialize(self, session: AsyncSession) -> int:
        """
        起動時に最後に発行した番号からカウンタを復元する。

        失敗した場合は例外をそのまま送出し、サービスを起動させない。
        不明な起点で採番を始めると番号が重複しうるため。
        """
        try:
            async with session.begin():
                last = (
                    await session.execute(
                        select(sales.c.invoice_number)
                        .order_by(sales.c.id.desc())
                        .limit(1)
                    )
                ).scalar_one_or_none()
                seed = self.parse(last) + 1 if last is not None else self.start

                current = (
                    await session.execute(
                        select(invoice_sequence.c.next_value).where(
                            invoice_sequence.c.name == SEQUENCE_NAME
                        )
                    )
                ).scalar_one_or_none()
                if current is None:
                    await session.execute(
                        insert(invoice_sequence).values(
                            name=SEQUENCE_NAME, next_value=seed
                        )
                    )
                elif current < seed:
                    await session.execute(
                        update(invoice_sequence)
                        .where(invoice_sequence.c.name == SEQUENCE_NAME)
                        .values(next_value=seed)
                    )
                else:
                    seed = current
        except (SQLAlchemyError, PersistenceFailure):
            logger.critical("Could not initialize invoice sequence", exc_info=True)
            raise

        logger.info("Invoice sequence starts at %s", self.format(seed))
        return seed

    async def next(self, session: AsyncSession) -> str:
        """呼び出し側のトランザクション内で次の番号を払い出す。"""
        result = await session.execute(
            update(invoice_sequence)
            .where(invoice_sequence.c.name == SEQUENCE_NAME)
            .values(next_value=invoice_sequence.c.next_value + 1)
            .returning(invoice_sequence.c.next_value)
        )
        advanced = result.scalar_one_or_none()
        if advanced is None:
            raise PersistenceFailure("Invoice sequence has not been initialized")
        return self.format(advanced - 1)
