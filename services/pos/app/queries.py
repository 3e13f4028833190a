"""
POS Service — クエリハンドラ (CQRS Read 側)

カタログ・売上・ダッシュボード・売上レポート。読み取りのみで状態は変更しない。
"""

from collections import defaultdict
from datetime import datetime, time, timedelta, timezone

from sqlalchemy import desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import products, sale_lines, sales


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _as_utc(value: datetime) -> datetime:
    # created_at は UTC で保存している。naive な値も UTC とみなす
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def product_to_dict(row) -> dict:
    return {
        "id": row.id,
        "name": row.name,
        "price": float(row.price),
        "stock": row.stock,
        "category": row.category,
        "created_at": _iso(row.created_at),
    }


def _line_to_dict(row) -> dict:
    return {
        "id": row.id,
        "product_id": row.product_id,
        "product_name": row.product_name,
        "quantity": row.quantity,
        "unit_price": float(row.unit_price),
        "line_total": float(row.line_total),
    }


def _sale_to_dict(row, lines: list[dict]) -> dict:
    return {
        "id": row.id,
        "invoice_number": row.invoice_number,
        "created_at": _iso(row.created_at),
        "subtotal": float(row.subtotal),
        "tax": float(row.tax),
        "total": float(row.total),
        "payment_method": row.payment_method,
        "total_items": len(lines),
        "lines": lines,
    }


async def get_product(session: AsyncSession, product_id: int) -> dict | None:
    result = await session.execute(select(products).where(products.c.id == product_id))
    row = result.first()
    if not row:
        return None
    return product_to_dict(row)


async def list_products(session: AsyncSession) -> list[dict]:
    result = await session.execute(select(products).order_by(products.c.id.desc()))
    return [product_to_dict(row) for row in result.fetchall()]


async def _lines_by_sale(session: AsyncSession, sale_ids: list[int]) -> dict:
    grouped: dict[int, list[dict]] = defaultdict(list)
    if not sale_ids:
        return grouped
    result = await session.execute(
        select(sale_lines)
        .where(sale_lines.c.sale_id.in_(sale_ids))
        .order_by(sale_lines.c.id.asc())
    )
    for row in result.fetchall():
        grouped[row.sale_id].append(_line_to_dict(row))
    return grouped


async def _fetch_sales(session: AsyncSession, stmt) -> list[dict]:
    rows = (await session.execute(stmt)).fetchall()
    lines = await _lines_by_sale(session, [row.id for row in rows])
    return [_sale_to_dict(row, lines[row.id]) for row in rows]


async def get_sale(session: AsyncSession, sale_id: int) -> dict | None:
    sales_found = await _fetch_sales(session, select(sales).where(sales.c.id == sale_id))
    return sales_found[0] if sales_found else None


async def list_sales(session: AsyncSession) -> list[dict]:
    """全売上を新しい順に、明細付きで返す。"""
    return await _fetch_sales(
        session, select(sales).order_by(sales.c.created_at.desc(), sales.c.id.desc())
    )


async def sales_report(
    session: AsyncSession,
    start: datetime | None = None,
    end: datetime | None = None,
) -> dict:
    """期間指定の売上レポート。start / end はどちらも省略可能で、両端を含む。"""
    stmt = select(sales)
    if start is not None:
        stmt = stmt.where(sales.c.created_at >= _as_utc(start))
    if end is not None:
        stmt = stmt.where(sales.c.created_at <= _as_utc(end))
    stmt = stmt.order_by(sales.c.created_at.desc(), sales.c.id.desc())

    found = await _fetch_sales(session, stmt)
    return {
        "sales": found,
        "sales_count": len(found),
        "total_amount": round(sum(s["total"] for s in found), 2),
    }


async def get_dashboard(session: AsyncSession, low_stock_threshold: int = 20) -> dict:
    """
    ダッシュボード用の集計

    - 売上合計・件数・平均
    - 本日 (UTC) の件数と売上
    - 販売数量トップ 5 の商品
    - 在庫が閾値未満の商品 (在庫の少ない順)
    """
    totals = (
        await session.execute(
            select(func.coalesce(func.sum(sales.c.total), 0), func.count(sales.c.id))
        )
    ).one()
    total_revenue, sales_count = float(totals[0]), totals[1]

    today = datetime.now(timezone.utc).date()
    day_start = datetime.combine(today, time.min, tzinfo=timezone.utc)
    day_end = day_start + timedelta(days=1)
    today_totals = (
        await session.execute(
            select(
                func.count(sales.c.id), func.coalesce(func.sum(sales.c.total), 0)
            ).where(sales.c.created_at >= day_start, sales.c.created_at < day_end)
        )
    ).one()

    quantity_sold = func.sum(sale_lines.c.quantity).label("quantity_sold")
    top = await session.execute(
        select(
            products.c.id,
            products.c.name,
            products.c.category,
            products.c.price,
            quantity_sold,
        )
        .join(sale_lines, products.c.id == sale_lines.c.product_id)
        .group_by(products.c.id, products.c.name, products.c.category, products.c.price)
        .order_by(desc("quantity_sold"))
        .limit(5)
    )

    low_stock = await session.execute(
        select(products)
        .where(products.c.stock < low_stock_threshold)
        .order_by(products.c.stock.asc())
    )
    product_count = (
        await session.execute(select(func.count(products.c.id)))
    ).scalar_one()

    return {
        "total_revenue": total_revenue,
        "sales_count": sales_count,
        "today_sales_count": today_totals[0],
        "today_revenue": float(today_totals[1]),
        "average_sale": round(total_revenue / sales_count, 2) if sales_count else 0,
        "top_products": [
            {
                "id": row.id,
                "name": row.name,
                "category": row.category,
                "price": float(row.price),
                "quantity_sold": int(row.quantity_sold),
            }
            for row in top.fetchall()
        ],
        "low_stock": [product_to_dict(row) for row in low_stock.fetchall()],
        "product_count": product_count,
    }
