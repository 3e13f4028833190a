"""
POS Service — テーブル定義

products (カタログ), sales / sale_lines (売上伝票), invoice_sequence
(請求書番号の採番), event_store (イベントログ) を SQLAlchemy Core で定義する。
PostgreSQL と SQLite の両方で同じ定義から DDL を生成できる。
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

products = Table(
    "products",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(200), nullable=False),
    Column("price", Numeric(10, 2), nullable=False),
    Column("stock", Integer, nullable=False, default=0),
    Column("category", String(100), nullable=False, default="General"),
    Column("created_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
    CheckConstraint("price > 0", name="ck_products_price_positive"),
)

sales = Table(
    "sales",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("invoice_number", String(40), nullable=False, unique=True),
    Column("created_at", DateTime(timezone=True), nullable=False, index=True),
    Column("subtotal", Numeric(12, 2), nullable=False),
    Column("tax", Numeric(12, 2), nullable=False),
    Column("total", Numeric(12, 2), nullable=False),
    Column("payment_method", String(50), nullable=False),
)

# 商品名・単価は販売時点のスナップショット。products への外部キーは持たない。
sale_lines = Table(
    "sale_lines",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "sale_id",
        Integer,
        ForeignKey("sales.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("product_id", Integer, nullable=False, index=True),
    Column("product_name", String(200), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", Numeric(10, 2), nullable=False),
    Column("line_total", Numeric(12, 2), nullable=False),
    CheckConstraint("quantity > 0", name="ck_sale_lines_quantity_positive"),
)

invoice_sequence = Table(
    "invoice_sequence",
    metadata,
    Column("name", String(40), primary_key=True),
    Column("next_value", Integer, nullable=False),
)

event_store = Table(
    "event_store",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("aggregate_id", String(64), nullable=False, index=True),
    Column("aggregate_type", String(50), nullable=False),
    Column("event_type", String(100), nullable=False),
    Column("event_data", Text, nullable=False),
    Column("version", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    # 同じ集約の同じバージョンは 1 件だけ。同時書き込みは後勝ちせず失敗する
    UniqueConstraint(
        "aggregate_type", "aggregate_id", "version", name="uq_event_store_version"
    ),
)


async def create_schema(engine: AsyncEngine) -> None:
    """存在しないテーブルだけを作成する。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
