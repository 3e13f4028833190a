"""
POS Service — イベント定義

売上の確定やカタログの変更など、発生した事実を過去形で定義する。
イベントは不変(immutable)として扱う。
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel


class SaleLineRecorded(BaseModel):
    product_id: int
    product_name: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal


class SaleRecorded(BaseModel):
    """売上が確定した"""
    sale_id: int
    invoice_number: str
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    payment_method: str
    lines: list[SaleLineRecorded]
    timestamp: datetime


class ProductCreated(BaseModel):
    """商品が登録された"""
    product_id: int
    name: str
    price: Decimal
    stock: int
    category: str
    timestamp: datetime


class ProductUpdated(BaseModel):
    """商品情報が更新された"""
    product_id: int
    changes: dict
    timestamp: datetime


class ProductDeleted(BaseModel):
    """商品が削除された"""
    product_id: int
    timestamp: datetime
