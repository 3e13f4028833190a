import os
import tempfile
from decimal import Decimal
from pathlib import Path

import pytest

# app.main は import 時に DATABASE_URL を読むので、テスト収集より前に設定する
API_DB_PATH = Path(tempfile.mkdtemp(prefix="pos-tests-")) / "api.db"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{API_DB_PATH}"
os.environ.pop("REDIS_URL", None)

from sqlalchemy import select  # noqa: E402

from app import commands  # noqa: E402
from app.database import create_engine, create_session_factory  # noqa: E402
from app.inventory import InventoryLedger  # noqa: E402
from app.invoices import InvoiceSequencer  # noqa: E402
from app.processor import OrderProcessor  # noqa: E402
from app.schema import create_schema, invoice_sequence, products  # noqa: E402


class RecordingRedis:
    """publish された (channel, message) を記録するだけのテスト用 Redis"""

    def __init__(self):
        self.messages = []

    async def publish(self, channel, message):
        self.messages.append((channel, message))
        return 1


@pytest.fixture()
async def engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'pos.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture()
async def sequencer(session_factory):
    sequencer = InvoiceSequencer()
    async with session_factory() as session:
        await sequencer.initialize(session)
    return sequencer


@pytest.fixture()
def processor(session_factory, sequencer):
    return OrderProcessor(session_factory, InventoryLedger(), sequencer)


@pytest.fixture()
def add_product(session_factory):
    async def _add(name="Cuaderno", price="1000", stock=5, category="Papelería"):
        async with session_factory() as session:
            product = await commands.create_product(
                session, None, name, Decimal(price), stock, category
            )
        return product["id"]

    return _add


@pytest.fixture()
def stock_of(session_factory):
    async def _stock(product_id):
        async with session_factory() as session:
            result = await session.execute(
                select(products.c.stock).where(products.c.id == product_id)
            )
            return result.scalar_one()

    return _stock


@pytest.fixture()
def sequence_value(session_factory):
    async def _value():
        async with session_factory() as session:
            result = await session.execute(select(invoice_sequence.c.next_value))
            return result.scalar_one()

    return _value
