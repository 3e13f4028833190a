"""
POS Service — 売上集約 (Sale Aggregate)

1 回のチェックアウトの状態遷移を管理する。

状態遷移:
    RECEIVED → VALIDATED → STOCK_RESERVED → INVOICE_ALLOCATED
             → PERSISTED → COMMITTED
    (COMMITTED 以外の任意の状態) → ABORTED
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal

from .errors import InvalidTransition

logger = logging.getLogger(__name__)

RECEIVED = "RECEIVED"
VALIDATED = "VALIDATED"
STOCK_RESERVED = "STOCK_RESERVED"
INVOICE_ALLOCATED = "INVOICE_ALLOCATED"
PERSISTED = "PERSISTED"
COMMITTED = "COMMITTED"
ABORTED = "ABORTED"

TERMINAL_STATES = frozenset({COMMITTED, ABORTED})

_NEXT_STATE = {
    RECEIVED: VALIDATED,
    VALIDATED: STOCK_RESERVED,
    STOCK_RESERVED: INVOICE_ALLOCATED,
    INVOICE_ALLOCATED: PERSISTED,
    PERSISTED: COMMITTED,
}


class SaleAggregate:
    def __init__(self) -> None:
        self.id: int | None = None
        self.invoice_number: str | None = None
        self.subtotal: Decimal | None = None
        self.tax: Decimal | None = None
        self.status: str = RECEIVED
        self.failure: str | None = None
        self.history: list[dict] = [self._entry(RECEIVED)]

    @staticmethod
    def _entry(status: str) -> dict:
        return {"status": status, "timestamp": datetime.now(timezone.utc)}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    def advance(self, target: str) -> None:
        """次の状態に進める。順番を飛ばす遷移は InvalidTransition。"""
        if _NEXT_STATE.get(self.status) != target:
            raise InvalidTransition(self.status, target)
        logger.debug("Sale %s: %s -> %s", self.invoice_number, self.status, target)
        self.status = target
        self.history.append(self._entry(target))

    def abort(self, reason: str) -> None:
        if self.is_terminal:
            raise InvalidTransition(self.status, ABORTED)
        logger.debug("Sale aborted in %s: %s", self.status, reason)
        self.status = ABORTED
        self.failure = reason
        entry = self._entry(ABORTED)
        entry["error"] = reason
        self.history.append(entry)
