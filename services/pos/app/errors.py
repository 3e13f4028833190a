"""
POS Service — 例外定義

- CartError: 入力エラー。副作用が発生する前に拒否する。
- BusinessRuleError: 商品なし・在庫不足。部分的な在庫引き当てはロールバックされる。
- PersistenceFailure: ストレージ層のエラー。呼び出し側には汎用メッセージを返す。
"""


class POSError(Exception):
    """POS Service の例外の基底クラス"""


class CartError(POSError):
    pass


class EmptyCart(CartError):
    def __init__(self) -> None:
        super().__init__("Sale must contain at least one product")


class InvalidCartLine(CartError):
    def __init__(self, index: int, reason: str) -> None:
        self.index = index
        self.reason = reason
        super().__init__(f"Invalid cart line {index}: {reason}")


class InvalidTotal(CartError):
    def __init__(self, total) -> None:
        self.total = total
        super().__init__(f"Invalid sale total: {total}")


class BusinessRuleError(POSError):
    pass


class ProductNotFound(BusinessRuleError):
    def __init__(self, product_id: int, product_name: str | None = None) -> None:
        self.product_id = product_id
        self.product_name = product_name
        label = product_name or f"#{product_id}"
        super().__init__(f"Product {label} not found")


class InsufficientStock(BusinessRuleError):
    def __init__(
        self, product_id: int, product_name: str, available: int, requested: int
    ) -> None:
        self.product_id = product_id
        self.product_name = product_name
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for {product_name}. Available: {available}"
        )


class InvalidQuantity(BusinessRuleError):
    def __init__(self, product_id: int | None, quantity: int) -> None:
        self.product_id = product_id
        self.quantity = quantity
        super().__init__(f"Stock cannot be negative: {quantity}")


class PersistenceFailure(POSError):
    pass


class CheckoutTimeout(PersistenceFailure):
    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Checkout did not finish within {timeout}s")


class InvalidTransition(POSError):
    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Cannot move sale from {current} to {target}")
