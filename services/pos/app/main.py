"""
POS Service — FastAPI エントリーポイント

商品カタログ・売上・レポートを提供する POS バックエンド。
Command (POST/PUT/DELETE) と Query (GET) のエンドポイントを分離する。

売上作成は OrderProcessor が 1 トランザクションで在庫引き当て・採番・
伝票書き込みを行う。起動時に請求書番号のカウンタを DB から復元し、
失敗した場合はサービスを起動しない。
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal

import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import commands, event_store, queries
from .database import create_engine, create_session_factory
from .errors import (
    CartError,
    CheckoutTimeout,
    InsufficientStock,
    InvalidQuantity,
    PersistenceFailure,
    ProductNotFound,
)
from .inventory import InventoryLedger
from .invoices import InvoiceSequencer
from .models import CartLine, Sale
from .processor import OrderProcessor
from .schema import create_schema

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL")
INVOICE_PREFIX = os.environ.get("POS_INVOICE_PREFIX", "FAC")
INVOICE_START = int(os.environ.get("POS_INVOICE_START", "1000"))
DEFAULT_PAYMENT_METHOD = os.environ.get("POS_DEFAULT_PAYMENT_METHOD", "Efectivo")
CHECKOUT_TIMEOUT = float(os.environ.get("POS_CHECKOUT_TIMEOUT", "10"))
LOW_STOCK_THRESHOLD = int(os.environ.get("POS_LOW_STOCK_THRESHOLD", "20"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

engine = create_engine(DATABASE_URL)
async_session = create_session_factory(engine)
redis_pool: aioredis.Redis | None = None

sequencer = InvoiceSequencer(prefix=INVOICE_PREFIX, start=INVOICE_START)
processor = OrderProcessor(
    async_session,
    InventoryLedger(),
    sequencer,
    default_payment_method=DEFAULT_PAYMENT_METHOD,
    timeout=CHECKOUT_TIMEOUT,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    await create_schema(engine)
    # 採番の起点が不明なまま売上を受け付けないよう、失敗時は起動を中断する
    async with async_session() as session:
        await sequencer.initialize(session)

    if REDIS_URL:
        redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    processor.redis = redis_pool
    logger.info("POS service started")
    yield
    if redis_pool is not None:
        await redis_pool.aclose()
        redis_pool = None
    processor.redis = None
    await engine.dispose()


app = FastAPI(title="POS Service", lifespan=lifespan)


# ── Error Handlers ───────────────────────────────


@app.exception_handler(CartError)
async def cart_error_handler(request: Request, exc: CartError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(ProductNotFound)
async def product_not_found_handler(request: Request, exc: ProductNotFound):
    return JSONResponse(
        status_code=404,
        content={"detail": str(exc), "product_id": exc.product_id},
    )


@app.exception_handler(InsufficientStock)
async def insufficient_stock_handler(request: Request, exc: InsufficientStock):
    return JSONResponse(
        status_code=409,
        content={
            "detail": str(exc),
            "product_id": exc.product_id,
            "product_name": exc.product_name,
            "available": exc.available,
            "requested": exc.requested,
        },
    )


@app.exception_handler(InvalidQuantity)
async def invalid_quantity_handler(request: Request, exc: InvalidQuantity):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(PersistenceFailure)
async def persistence_failure_handler(request: Request, exc: PersistenceFailure):
    # 詳細はログにのみ残し、呼び出し側には汎用メッセージを返す
    if isinstance(exc, CheckoutTimeout):
        return JSONResponse(status_code=504, content={"detail": "Sale timed out"})
    return JSONResponse(status_code=503, content={"detail": "Error processing the sale"})


# ── Request Models ───────────────────────────────


class CreateSaleRequest(BaseModel):
    items: list[CartLine]
    total: Decimal
    payment_method: str | None = None


class CreateProductRequest(BaseModel):
    name: str = Field(min_length=1)
    price: Decimal = Field(gt=0)
    stock: int
    category: str | None = None


class UpdateProductRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    price: Decimal | None = Field(default=None, gt=0)
    stock: int | None = None
    category: str | None = None


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/commands/sales", status_code=201, response_model=Sale)
async def cmd_create_sale(req: CreateSaleRequest):
    """売上作成コマンド"""
    return await processor.process_order(req.items, req.total, req.payment_method)


@app.post("/commands/products", status_code=201)
async def cmd_create_product(req: CreateProductRequest):
    """商品登録コマンド"""
    async with async_session() as session:
        return await commands.create_product(
            session, redis_pool, req.name, req.price, req.stock, req.category
        )


@app.put("/commands/products/{product_id}")
async def cmd_update_product(product_id: int, req: UpdateProductRequest):
    """商品更新コマンド(指定した項目のみ)"""
    async with async_session() as session:
        return await commands.update_product(
            session, redis_pool, product_id, req.model_dump(exclude_unset=True)
        )


@app.delete("/commands/products/{product_id}")
async def cmd_delete_product(product_id: int):
    """商品削除コマンド"""
    async with async_session() as session:
        await commands.delete_product(session, redis_pool, product_id)
    return {"detail": "Product deleted"}


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/queries/products")
async def query_list_products():
    async with async_session() as session:
        return await queries.list_products(session)


@app.get("/queries/products/{product_id}")
async def query_get_product(product_id: int):
    async with async_session() as session:
        product = await queries.get_product(session, product_id)
        if not product:
            raise HTTPException(404, "Product not found")
        return product


@app.get("/queries/sales")
async def query_list_sales():
    async with async_session() as session:
        return await queries.list_sales(session)


@app.get("/queries/sales/{sale_id}")
async def query_get_sale(sale_id: int):
    async with async_session() as session:
        sale = await queries.get_sale(session, sale_id)
        if not sale:
            raise HTTPException(404, "Sale not found")
        return sale


@app.get("/queries/dashboard")
async def query_dashboard():
    async with async_session() as session:
        return await queries.get_dashboard(session, LOW_STOCK_THRESHOLD)


@app.get("/queries/reports/sales")
async def query_sales_report(start: datetime | None = None, end: datetime | None = None):
    async with async_session() as session:
        return await queries.sales_report(session, start, end)


# ── Event Store (デバッグ用) ─────────────────────


@app.get("/events")
async def get_all_events():
    async with async_session() as session:
        return await event_store.load_all_events(session)


@app.get("/events/{aggregate_type}/{aggregate_id}")
async def get_aggregate_events(aggregate_type: str, aggregate_id: str):
    async with async_session() as session:
        return await event_store.load_events(session, aggregate_type, aggregate_id)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "pos-service"}
