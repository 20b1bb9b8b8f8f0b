"""Unleveraged spot holdings bought from a wallet balance."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import Any, Callable

from tradedesk.config.constants import SPOT_NAMESPACE, TradeAction
from tradedesk.config.settings import SpotSettings
from tradedesk.core import quantities as q
from tradedesk.core.book import Book
from tradedesk.core.results import OpError, OpResult
from tradedesk.data.models import SpotPosition, SpotSnapshot
from tradedesk.data.serialization import spot_from_document, spot_to_document

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SpotStats:
    total_value: float
    total_cost: float
    total_pnl: float
    available_balance: float
    total_portfolio_value: float
    total_fund: float


class SpotBook(Book):
    """Spot positions; closing one realizes its whole value into the wallet.

    The available balance is ``wallet - Σ total_cost`` of open positions.
    """

    namespace = SPOT_NAMESPACE

    def __init__(
        self,
        settings: SpotSettings | None = None,
        wallet: float | None = None,
        fee_rate_percent: float | None = None,
        clock: Callable[[], int] | None = None,
    ) -> None:
        super().__init__(clock)
        self._settings = settings or SpotSettings()
        self._wallet = wallet if wallet is not None else self._settings.default_wallet
        self._fee_rate = (
            fee_rate_percent if fee_rate_percent is not None else self._settings.fee_rate_percent
        )
        self._positions: list[SpotPosition] = []

    @property
    def wallet(self) -> float:
        return self._wallet

    @property
    def fee_rate_percent(self) -> float:
        return self._fee_rate

    @property
    def positions(self) -> list[SpotPosition]:
        return copy.deepcopy(self._positions)

    def get(self, pos_id: int) -> SpotPosition | None:
        position = self._find(pos_id)
        return copy.deepcopy(position) if position is not None else None

    def stats(self) -> SpotStats:
        total_value = sum(p.value for p in self._positions)
        total_cost = sum(p.total_cost for p in self._positions)
        total_pnl = sum(p.unrealized_pnl for p in self._positions)
        return SpotStats(
            total_value=total_value,
            total_cost=total_cost,
            total_pnl=total_pnl,
            available_balance=self._wallet - total_cost,
            total_portfolio_value=self._wallet + total_pnl,
            total_fund=self._wallet,
        )

    def snapshot(self, last_updated: int = 0) -> SpotSnapshot:
        return SpotSnapshot(
            wallet=self._wallet,
            trading_fee=self._fee_rate,
            positions=copy.deepcopy(self._positions),
            last_updated=last_updated,
        )

    def to_document(self, last_updated: int = 0) -> dict[str, Any]:
        return spot_to_document(self.snapshot(last_updated))

    def _load_document(self, document: Any) -> None:
        snapshot = spot_from_document(
            document,
            wallet=self._settings.default_wallet,
            trading_fee=self._settings.fee_rate_percent,
        )
        self._wallet = snapshot.wallet
        self._fee_rate = snapshot.trading_fee
        self._positions = snapshot.positions

    def _clear(self) -> None:
        self._wallet = self._settings.default_wallet
        self._fee_rate = self._settings.fee_rate_percent
        self._positions = []

    # -- Mutations -----------------------------------------------------------

    def open_position(
        self,
        symbol: str,
        entry_price: Any,
        quantity: Any,
        action: TradeAction = TradeAction.BUY,
    ) -> OpResult:
        symbol = (symbol or "").strip().upper()
        if not symbol:
            return OpResult.fail(OpError.MISSING_SYMBOL, "Symbol is required")
        price = q.parse_price(entry_price)
        if price is None:
            return OpResult.fail(OpError.INVALID_PRICE, "Entry price must be a positive number")
        qty = q.parse_price(quantity)
        if qty is None:
            return OpResult.fail(OpError.INVALID_QUANTITY, "Quantity must be a positive number")

        value = qty * price
        open_fee = q.fee(value, self._fee_rate)
        total_cost = value + open_fee
        available = self.stats().available_balance
        if total_cost > available:
            logger.info(
                "Rejected spot buy of %s: cost %.2f exceeds available %.2f",
                symbol,
                total_cost,
                available,
            )
            return OpResult.fail(
                OpError.INSUFFICIENT_FUNDS,
                f"Insufficient balance: need {total_cost:.2f}, available {available:.2f}",
            )

        now = self._clock()
        highest = max((p.id for p in self._positions), default=0)
        position = SpotPosition(
            id=max(now, highest + 1),
            symbol=symbol,
            type=action,
            entry_price=price,
            current_price=price,
            quantity=qty,
            value=value,
            total_cost=total_cost,
            unrealized_pnl=0.0,
            total_fees=open_fee,
            auto_update=True,
            timestamp=now,
        )
        self._positions.append(position)
        logger.info("Bought %.8g %s @ %.6g (fee %.4f)", qty, symbol, price, open_fee)
        self._notify()
        return OpResult.success(copy.deepcopy(position))

    def update_current_price(self, pos_id: int, price: Any) -> OpResult:
        new_price = q.parse_price(price)
        if new_price is None:
            return OpResult.fail(OpError.INVALID_PRICE, "Price must be a positive number")
        current = self._find(pos_id)
        if current is None:
            return self._unknown(pos_id, "update_current_price")

        position = copy.deepcopy(current)
        position.current_price = new_price
        position.value = position.quantity * new_price
        position.unrealized_pnl = position.value - position.total_cost
        self._swap(position)
        self._notify()
        return OpResult.success(copy.deepcopy(position))

    def remove_position(self, pos_id: int) -> OpResult:
        """Sell the whole holding and credit ``value - fee(value)`` to the wallet."""
        current = self._find(pos_id)
        if current is None:
            return self._unknown(pos_id, "remove_position")
        proceeds = current.value - q.fee(current.value, self._fee_rate)
        self._positions = [p for p in self._positions if p.id != pos_id]
        self._wallet += proceeds
        logger.info("Closed %s (id=%d): proceeds %.4f, wallet %.2f", current.symbol, pos_id, proceeds, self._wallet)
        self._notify()
        return OpResult.success(proceeds)

    def toggle_auto_update(self, pos_id: int, enabled: bool | None = None) -> OpResult:
        current = self._find(pos_id)
        if current is None:
            return self._unknown(pos_id, "toggle_auto_update")
        position = copy.deepcopy(current)
        position.auto_update = (not position.auto_update) if enabled is None else enabled
        self._swap(position)
        self._notify()
        return OpResult.success(copy.deepcopy(position))

    def set_wallet(self, wallet: Any) -> OpResult:
        value = q.parse_price(wallet)
        if value is None:
            return OpResult.fail(OpError.INVALID_AMOUNT, "Wallet must be a positive number")
        self._wallet = value
        self._notify()
        return OpResult.success(value)

    # -- Internals -----------------------------------------------------------

    def _find(self, pos_id: int) -> SpotPosition | None:
        return next((p for p in self._positions if p.id == pos_id), None)

    def _swap(self, position: SpotPosition) -> None:
        self._positions = [position if p.id == position.id else p for p in self._positions]

    @staticmethod
    def _unknown(pos_id: int, operation: str) -> OpResult:
        logger.warning("%s: no spot position with id %s", operation, pos_id)
        return OpResult.fail(OpError.UNKNOWN_POSITION, f"No spot position with id {pos_id}")
