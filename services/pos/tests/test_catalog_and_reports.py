"""カタログのコマンドと Read 側のクエリ"""

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import insert
from sqlalchemy.exc import IntegrityError

from app import commands, event_store, queries
from app.errors import InvalidQuantity, ProductNotFound
from app.events import ProductDeleted
from app.models import CartLine
from app.schema import event_store as event_store_table

from conftest import RecordingRedis


def _cart(product_id, quantity, price="1000", name="Cuaderno"):
    return [
        CartLine(
            product_id=product_id,
            name=name,
            quantity=quantity,
            unit_price=Decimal(price),
        )
    ]


_NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _event_row(version):
    return {
        "aggregate_id": "1",
        "aggregate_type": "Product",
        "event_type": "ProductUpdated",
        "event_data": "{}",
        "version": version,
        "created_at": _NOW,
    }


class TestCatalogCommands:
    async def test_create_product_defaults_category(self, session_factory):
        async with session_factory() as session:
            product = await commands.create_product(
                session, None, "Carpeta", Decimal("2500"), 8
            )

        assert product["category"] == "General"
        assert product["price"] == 2500.0
        assert product["stock"] == 8

    async def test_create_product_rejects_negative_stock(self, session_factory):
        async with session_factory() as session:
            with pytest.raises(InvalidQuantity):
                await commands.create_product(session, None, "Carpeta", Decimal("1"), -3)

    async def test_partial_update(self, session_factory, add_product):
        product_id = await add_product(name="Cuaderno", price="1000", stock=5)

        async with session_factory() as session:
            updated = await commands.update_product(
                session, None, product_id, {"price": Decimal("1200"), "name": None}
            )

        assert updated["name"] == "Cuaderno"
        assert updated["price"] == 1200.0
        assert updated["stock"] == 5

    async def test_update_stock_goes_through_ledger(self, session_factory, add_product):
        product_id = await add_product(stock=5)

        async with session_factory() as session:
            with pytest.raises(InvalidQuantity):
                await commands.update_product(session, None, product_id, {"stock": -1})
        async with session_factory() as session:
            updated = await commands.update_product(session, None, product_id, {"stock": 40})

        assert updated["stock"] == 40

    async def test_update_missing_product(self, session_factory):
        async with session_factory() as session:
            with pytest.raises(ProductNotFound):
                await commands.update_product(session, None, 99, {"name": "X"})

    async def test_delete_product_keeps_sale_history(
        self, session_factory, processor, add_product
    ):
        product_id = await add_product(stock=5)
        sale = await processor.process_order(_cart(product_id, 1), "1000")

        async with session_factory() as session:
            await commands.delete_product(session, None, product_id)
        async with session_factory() as session:
            assert await queries.get_product(session, product_id) is None
            stored = await queries.get_sale(session, sale.id)

        assert stored["lines"][0]["product_name"] == "Cuaderno"

    async def test_delete_missing_product(self, session_factory):
        async with session_factory() as session:
            with pytest.raises(ProductNotFound):
                await commands.delete_product(session, None, 99)

    async def test_commands_append_and_publish_events(self, session_factory):
        redis = RecordingRedis()
        async with session_factory() as session:
            product = await commands.create_product(
                session, redis, "Carpeta", Decimal("2500"), 8
            )
        async with session_factory() as session:
            await commands.update_product(session, redis, product["id"], {"stock": 3})
        async with session_factory() as session:
            await commands.delete_product(session, redis, product["id"])
        async with session_factory() as session:
            events = await event_store.load_events(session, "Product", product["id"])

        assert [e["event_type"] for e in events] == [
            "ProductCreated",
            "ProductUpdated",
            "ProductDeleted",
        ]
        assert [e["version"] for e in events] == [1, 2, 3]
        assert [json.loads(m)["event_type"] for _, m in redis.messages] == [
            "ProductCreated",
            "ProductUpdated",
            "ProductDeleted",
        ]


class TestQueries:
    async def test_list_products_newest_first(self, session_factory, add_product):
        first = await add_product(name="A")
        second = await add_product(name="B")

        async with session_factory() as session:
            listed = await queries.list_products(session)

        assert [p["id"] for p in listed] == [second, first]

    async def test_list_sales_with_lines(self, session_factory, processor, add_product):
        product_id = await add_product(stock=10)
        await processor.process_order(_cart(product_id, 1), "1000")
        await processor.process_order(_cart(product_id, 2), "2000")

        async with session_factory() as session:
            listed = await queries.list_sales(session)

        assert [s["invoice_number"] for s in listed] == ["FAC-1001", "FAC-1000"]
        assert listed[0]["lines"][0]["quantity"] == 2

    async def test_sales_report_filters_by_date(
        self, session_factory, processor, add_product
    ):
        product_id = await add_product(stock=10)
        await processor.process_order(_cart(product_id, 1), "1000")
        await processor.process_order(_cart(product_id, 1), "1500")
        now = datetime.now(timezone.utc)

        async with session_factory() as session:
            everything = await queries.sales_report(session)
            window = await queries.sales_report(
                session, now - timedelta(hours=1), now + timedelta(hours=1)
            )
            future = await queries.sales_report(session, start=now + timedelta(days=1))

        assert everything["sales_count"] == 2
        assert everything["total_amount"] == 2500.0
        assert window["sales_count"] == 2
        assert future == {"sales": [], "sales_count": 0, "total_amount": 0}

    async def test_dashboard(self, session_factory, processor, add_product):
        notebook = await add_product(name="Cuaderno", stock=30)
        pencil = await add_product(name="Lápiz", price="500", stock=100)
        await add_product(name="Regla", stock=3)
        await processor.process_order(_cart(notebook, 12), "12000")
        await processor.process_order(_cart(pencil, 4, "500", "Lápiz"), "2000")

        async with session_factory() as session:
            dashboard = await queries.get_dashboard(session, low_stock_threshold=20)

        assert dashboard["total_revenue"] == 14000.0
        assert dashboard["sales_count"] == 2
        assert dashboard["today_sales_count"] == 2
        assert dashboard["today_revenue"] == 14000.0
        assert dashboard["average_sale"] == 7000.0
        assert [p["name"] for p in dashboard["top_products"]] == ["Cuaderno", "Lápiz"]
        assert dashboard["top_products"][0]["quantity_sold"] == 12
        assert [p["name"] for p in dashboard["low_stock"]] == ["Regla", "Cuaderno"]
        assert dashboard["product_count"] == 3

    async def test_empty_dashboard(self, session_factory):
        async with session_factory() as session:
            dashboard = await queries.get_dashboard(session)

        assert dashboard["sales_count"] == 0
        assert dashboard["average_sale"] == 0
        assert dashboard["top_products"] == []

    async def test_sales_report_normalizes_offset_bounds(
        self, session_factory, processor, add_product
    ):
        product_id = await add_product(stock=10)
        await processor.process_order(_cart(product_id, 1), "1000")
        now = datetime.now(timezone.utc)
        tokyo = timezone(timedelta(hours=9))
        bogota = timezone(timedelta(hours=-5))

        async with session_factory() as session:
            window = await queries.sales_report(
                session,
                (now - timedelta(hours=1)).astimezone(tokyo),
                (now + timedelta(hours=1)).astimezone(tokyo),
            )
            later = await queries.sales_report(
                session, start=(now + timedelta(minutes=30)).astimezone(bogota)
            )

        assert window["sales_count"] == 1
        assert later["sales_count"] == 0


class TestEventStore:
    async def test_duplicate_version_is_rejected(self, session_factory):
        async with session_factory() as session:
            async with session.begin():
                await session.execute(insert(event_store_table).values(**_event_row(1)))

        async with session_factory() as session:
            with pytest.raises(IntegrityError):
                async with session.begin():
                    await session.execute(
                        insert(event_store_table).values(**_event_row(1))
                    )

    async def test_versions_are_per_aggregate(self, session_factory):
        async with session_factory() as session:
            async with session.begin():
                await event_store.append_event(
                    session, 1, "Product", ProductDeleted(product_id=1, timestamp=_NOW)
                )
                await event_store.append_event(
                    session, 2, "Product", ProductDeleted(product_id=2, timestamp=_NOW)
                )
            stored = await event_store.load_all_events(session)

        assert [(e["aggregate_id"], e["version"]) for e in stored] == [("1", 1), ("2", 1)]
