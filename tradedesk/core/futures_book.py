"""Leveraged futures positions: open, DCA, take-profit, stop and margin edits."""

from __future__ import annotations

import copy
import logging
from typing import Any, Callable

from tradedesk.config.constants import DCA_LEVELS, FUTURES_NAMESPACE, TP_LEVELS, Direction, LevelStatus
from tradedesk.config.settings import StrategySettings
from tradedesk.core import quantities as q
from tradedesk.core.book import Book
from tradedesk.core.results import OpError, OpResult
from tradedesk.data.models import FuturesSnapshot, LadderLevel, Position
from tradedesk.data.serialization import futures_from_document, futures_to_document

logger = logging.getLogger(__name__)


def _parse_direction(value: Any) -> Direction | None:
    if isinstance(value, Direction):
        return value
    try:
        return Direction(str(value).strip().upper())
    except ValueError:
        return None


class FuturesBook(Book):
    """The futures position store.

    Each operation validates its input, computes the new record on a copy
    and swaps it in only when everything succeeded, so a rejected call
    leaves the book untouched. Expected failures come back as ``OpResult``.

    Parameters
    ----------
    settings:
        Allocation ratios, ladder offsets and take-profit defaults.
    wallet:
        Account balance the allocation is computed from.
    fee_rate_percent:
        Trading fee as a percentage of notional (0.05 → 0.05%).
    """

    namespace = FUTURES_NAMESPACE

    def __init__(
        self,
        settings: StrategySettings | None = None,
        wallet: float | None = None,
        fee_rate_percent: float | None = None,
        clock: Callable[[], int] | None = None,
    ) -> None:
        super().__init__(clock)
        self._settings = settings or StrategySettings()
        self._offsets = q.LadderOffsets.from_settings(self._settings)
        self._wallet = wallet if wallet is not None else self._settings.default_wallet
        self._fee_rate = (
            fee_rate_percent if fee_rate_percent is not None else self._settings.fee_rate_percent
        )
        self._positions: list[Position] = []

    # -- Read access ---------------------------------------------------------

    @property
    def wallet(self) -> float:
        return self._wallet

    @property
    def fee_rate_percent(self) -> float:
        return self._fee_rate

    @property
    def positions(self) -> list[Position]:
        """Copies of the open positions, in creation order."""
        return copy.deepcopy(self._positions)

    @property
    def allocation(self) -> q.Allocation:
        return q.allocate(self._wallet, self._settings)

    def get(self, pos_id: int) -> Position | None:
        position = self._find(pos_id)
        return copy.deepcopy(position) if position is not None else None

    def stats(self) -> q.AccountStats:
        return q.account_stats(self._positions, self._wallet, self._settings)

    def snapshot(self, last_updated: int = 0) -> FuturesSnapshot:
        return FuturesSnapshot(
            wallet=self._wallet,
            trading_fee=self._fee_rate,
            positions=copy.deepcopy(self._positions),
            last_updated=last_updated,
        )

    # -- Document sync -------------------------------------------------------

    def to_document(self, last_updated: int = 0) -> dict[str, Any]:
        return futures_to_document(self.snapshot(last_updated))

    def _load_document(self, document: Any) -> None:
        snapshot = futures_from_document(
            document,
            self._offsets,
            wallet=self._settings.default_wallet,
            trading_fee=self._settings.fee_rate_percent,
            leverage=self._settings.default_leverage,
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
        direction: Direction | str,
        entry_price: Any,
        leverage: int | None = None,
        margin_override: float | None = None,
    ) -> OpResult:
        """Open a new position at *entry_price*.

        The margin is ``margin_override`` or the per-trade initial allocation;
        the opening fee is charged on ``margin * leverage`` and deducted from
        the margin, so ``actual_margin + fee == base_margin``.
        """
        symbol = (symbol or "").strip().upper()
        if not symbol:
            return OpResult.fail(OpError.MISSING_SYMBOL, "Symbol is required")
        side = _parse_direction(direction)
        if side is None:
            return OpResult.fail(OpError.INVALID_DIRECTION, f"Unknown direction: {direction!r}")
        ladder = q.price_ladder(entry_price, side, self._offsets)
        if ladder is None:
            return OpResult.fail(OpError.INVALID_PRICE, "Entry price must be a positive number")
        lev = self._settings.default_leverage if leverage is None else leverage
        if not self._valid_leverage(lev):
            return OpResult.fail(
                OpError.INVALID_LEVERAGE,
                f"Leverage must be between 1 and {self._settings.max_leverage}",
            )
        if margin_override is not None:
            base_margin = q.parse_price(margin_override)
            if base_margin is None:
                return OpResult.fail(OpError.INVALID_AMOUNT, "Margin must be a positive number")
        else:
            base_margin = self.allocation.per_trade_initial

        open_fee = q.fee(base_margin * lev, self._fee_rate)
        actual_margin = base_margin - open_fee

        position = Position(
            id=self._next_id(),
            symbol=symbol,
            direction=side,
            entry=ladder.entry,
            avg_entry=ladder.entry,
            current_price=ladder.entry,
            sl=ladder.sl,
            r=ladder.r,
            leverage=lev,
            initial_margin=actual_margin,
            position_size=actual_margin * lev,
            dca_levels=[LadderLevel(index=i, price=p) for i, p in zip(DCA_LEVELS, ladder.dca_prices)],
            tp_levels=[LadderLevel(index=i, price=p) for i, p in zip(TP_LEVELS, ladder.tp_prices)],
            unrealized_pnl=0.0,
            remaining_percent=100.0,
            total_fees=open_fee,
            auto_update=True,
        )
        self._positions.append(position)

        logger.info(
            "Opened %s %s @ %.6g margin=%.4f leverage=%dx fee=%.4f (id=%d)",
            side.value,
            symbol,
            position.entry,
            actual_margin,
            lev,
            open_fee,
            position.id,
        )
        self._notify()
        return OpResult.success(copy.deepcopy(position))

    def execute_dca(
        self,
        pos_id: int,
        level: int,
        margin_override: float | None = None,
    ) -> OpResult:
        """Add to a position at its stored DCA price.

        A level executes once; calling it again is a no-op. The stop-loss
        stays where it is, so ``R`` and the take-profit ladder are recomputed
        from the new average entry and the unchanged stop.
        """
        if level not in DCA_LEVELS:
            return OpResult.fail(OpError.INVALID_LEVEL, f"DCA level must be one of {DCA_LEVELS}")
        current = self._find(pos_id)
        if current is None:
            return self._unknown(pos_id, "execute_dca")
        if not current.dca_level(level).is_pending:
            logger.debug("DCA%d already executed on position %d", level, pos_id)
            return OpResult.noop(f"DCA{level} already executed")

        if margin_override is not None:
            dca_margin = q.parse_price(margin_override)
            if dca_margin is None:
                return OpResult.fail(OpError.INVALID_AMOUNT, "Margin must be a positive number")
        else:
            dca_margin = self.allocation.per_trade_dca(level)

        position = copy.deepcopy(current)
        dca_level = position.dca_level(level)
        dca_fee = q.fee(dca_margin * position.leverage, self._fee_rate)
        actual_dca_margin = dca_margin - dca_fee
        dca_position_value = actual_dca_margin * position.leverage

        position.avg_entry = q.weighted_average(
            position.position_size,
            position.avg_entry,
            dca_position_value,
            dca_level.price,
        )
        position.position_size += dca_position_value
        position.initial_margin += actual_dca_margin
        position.total_fees += dca_fee
        dca_level.status = LevelStatus.EXECUTED
        self._retarget(position)
        self._refresh_pnl(position)
        self._swap(position)

        logger.info(
            "DCA%d on %s (id=%d) @ %.6g: new avg=%.6g, size=%.4f",
            level,
            position.symbol,
            pos_id,
            dca_level.price,
            position.avg_entry,
            position.position_size,
        )
        self._notify()
        return OpResult.success(copy.deepcopy(position))

    def close_take_profit(
        self,
        pos_id: int,
        level: int,
        sell_percent_override: float | None = None,
    ) -> OpResult:
        """Close part of the position at a take-profit level.

        Defaults close 40/30/30 percent for levels 1/2/3. The remaining
        percentage never drops below 0; entry, size and ladder are unchanged.
        """
        if level not in TP_LEVELS:
            return OpResult.fail(OpError.INVALID_LEVEL, f"TP level must be one of {TP_LEVELS}")
        current = self._find(pos_id)
        if current is None:
            return self._unknown(pos_id, "close_take_profit")
        if not current.tp_level(level).is_pending:
            logger.debug("TP%d already closed on position %d", level, pos_id)
            return OpResult.noop(f"TP{level} already closed")

        if sell_percent_override is not None:
            close_percent = q.parse_price(sell_percent_override)
            if close_percent is None or close_percent > 100:
                return OpResult.fail(OpError.INVALID_AMOUNT, "Sell percent must be in (0, 100]")
        else:
            close_percent = self._settings.tp_close_percents[level - 1]

        position = copy.deepcopy(current)
        position.remaining_percent = max(0.0, position.remaining_percent - close_percent)
        position.tp_level(level).status = LevelStatus.CLOSED
        self._refresh_pnl(position)
        self._swap(position)

        logger.info(
            "TP%d on %s (id=%d): closed %.1f%%, remaining %.1f%%",
            level,
            position.symbol,
            pos_id,
            close_percent,
            position.remaining_percent,
        )
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
        self._refresh_pnl(position)
        self._swap(position)
        logger.debug("%s (id=%d) price=%.6g uPnL=%.4f", position.symbol, pos_id, new_price, position.unrealized_pnl)
        self._notify()
        return OpResult.success(copy.deepcopy(position))

    def update_stop_loss(self, pos_id: int, new_sl: Any) -> OpResult:
        """Move the stop-loss and re-derive ``R`` and the take-profit ladder.

        Moving the stop against the position is allowed; keeping stops
        risk-reducing is left to the user.
        """
        sl = q.parse_price(new_sl)
        if sl is None:
            return OpResult.fail(OpError.INVALID_PRICE, "Stop-loss must be a positive number")
        current = self._find(pos_id)
        if current is None:
            return self._unknown(pos_id, "update_stop_loss")
        return self._apply_stop_loss(current, sl)

    def update_stop_loss_by_percent(self, pos_id: int, percent: Any) -> OpResult:
        """Set ``sl = avg_entry * (1 + percent / 100)``, e.g. ``-5`` for a LONG."""
        try:
            pct = float(percent)
        except (TypeError, ValueError):
            pct = 0.0
        if pct == 0.0 or pct <= -100:
            return OpResult.fail(OpError.INVALID_AMOUNT, "Percent must be a non-zero number above -100")
        current = self._find(pos_id)
        if current is None:
            return self._unknown(pos_id, "update_stop_loss_by_percent")
        return self._apply_stop_loss(current, current.avg_entry * (1 + pct / 100))

    def update_margin(self, pos_id: int, new_margin: Any) -> OpResult:
        """Overwrite the committed margin. A correction, so no fee is charged."""
        margin = q.parse_price(new_margin)
        if margin is None:
            return OpResult.fail(OpError.INVALID_AMOUNT, "Margin must be a positive number")
        current = self._find(pos_id)
        if current is None:
            return self._unknown(pos_id, "update_margin")

        position = copy.deepcopy(current)
        position.initial_margin = margin
        position.position_size = margin * position.leverage
        self._refresh_pnl(position)
        self._swap(position)
        logger.info("Margin of %s (id=%d) set to %.4f", position.symbol, pos_id, margin)
        self._notify()
        return OpResult.success(copy.deepcopy(position))

    def update_leverage(self, pos_id: int, new_leverage: int) -> OpResult:
        """Overwrite the leverage and resize; no fee is charged."""
        if not self._valid_leverage(new_leverage):
            return OpResult.fail(
                OpError.INVALID_LEVERAGE,
                f"Leverage must be between 1 and {self._settings.max_leverage}",
            )
        current = self._find(pos_id)
        if current is None:
            return self._unknown(pos_id, "update_leverage")

        position = copy.deepcopy(current)
        position.leverage = new_leverage
        position.position_size = position.initial_margin * new_leverage
        self._refresh_pnl(position)
        self._swap(position)
        logger.info("Leverage of %s (id=%d) set to %dx", position.symbol, pos_id, new_leverage)
        self._notify()
        return OpResult.success(copy.deepcopy(position))

    def remove_position(self, pos_id: int) -> OpResult:
        current = self._find(pos_id)
        if current is None:
            return self._unknown(pos_id, "remove_position")
        self._positions = [p for p in self._positions if p.id != pos_id]
        logger.info("Removed %s position (id=%d)", current.symbol, pos_id)
        self._notify()
        return OpResult.success(current)

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
        logger.info("Futures wallet set to %.2f", value)
        self._notify()
        return OpResult.success(value)

    def set_fee_rate(self, fee_rate_percent: Any) -> OpResult:
        try:
            value = float(fee_rate_percent)
        except (TypeError, ValueError):
            return OpResult.fail(OpError.INVALID_AMOUNT, "Fee rate must be a number")
        if not 0 <= value < 100:
            return OpResult.fail(OpError.INVALID_AMOUNT, "Fee rate must be in [0, 100)")
        self._fee_rate = value
        self._notify()
        return OpResult.success(value)

    # -- Internals -----------------------------------------------------------

    def _find(self, pos_id: int) -> Position | None:
        for position in self._positions:
            if position.id == pos_id:
                return position
        return None

    def _swap(self, position: Position) -> None:
        self._positions = [position if p.id == position.id else p for p in self._positions]

    def _next_id(self) -> int:
        highest = max((p.id for p in self._positions), default=0)
        return max(self._clock(), highest + 1)

    def _valid_leverage(self, leverage: Any) -> bool:
        return (
            isinstance(leverage, int)
            and not isinstance(leverage, bool)
            and 1 <= leverage <= self._settings.max_leverage
        )

    def _apply_stop_loss(self, current: Position, sl: float) -> OpResult:
        position = copy.deepcopy(current)
        position.sl = sl
        self._retarget(position)
        self._swap(position)
        logger.info(
            "Stop-loss of %s (id=%d) moved to %.6g, R=%.6g",
            position.symbol,
            position.id,
            sl,
            position.r,
        )
        self._notify()
        return OpResult.success(copy.deepcopy(position))

    @staticmethod
    def _retarget(position: Position) -> None:
        """Recompute R and take-profit prices from avg entry and stop."""
        r, tps = q.take_profit_targets(position.avg_entry, position.sl, position.direction)
        position.r = r
        for level in position.tp_levels:
            level.price = tps[level.index - 1]

    @staticmethod
    def _refresh_pnl(position: Position) -> None:
        position.unrealized_pnl = q.unrealized_pnl(
            position.position_size,
            position.direction,
            position.avg_entry,
            position.current_price,
            position.remaining_percent,
        )

    @staticmethod
    def _unknown(pos_id: int, operation: str) -> OpResult:
        logger.warning("%s: no position with id %s", operation, pos_id)
        return OpResult.fail(OpError.UNKNOWN_POSITION, f"No position with id {pos_id}")
