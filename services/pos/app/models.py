"""
POS Service — ドメインモデル

CartLine はクライアントから受け取るカートの明細。
Sale / SaleLine は確定した売上伝票で、作成後は変更しない。
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, field_serializer


class CartLine(BaseModel):
    product_id: int
    name: str
    quantity: int
    unit_price: Decimal

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class SaleLine(BaseModel):
    """販売時点の商品名・単価のスナップショット"""
    product_id: int
    product_name: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal

    @field_serializer("unit_price", "line_total", when_used="json")
    def _serialize_money(self, value: Decimal) -> float:
        return float(value)


class Sale(BaseModel):
    id: int
    invoice_number: str
    created_at: datetime
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    payment_method: str
    lines: list[SaleLine]

    @field_serializer("subtotal", "tax", "total", when_used="json")
    def _serialize_money(self, value: Decimal) -> float:
        return float(value)
