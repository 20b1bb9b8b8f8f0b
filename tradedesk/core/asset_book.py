"""Long-term holdings built from a trade log, with TP/DCA plans and cash."""

from __future__ import annotations

import copy
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from tradedesk.config.constants import (
    POSITION_TRADING_NAMESPACE,
    AssetStatus,
    DCAStatus,
    TakeProfitStatus,
    TradeAction,
)
from tradedesk.config.settings import AssetRuleSettings
from tradedesk.core import quantities as q
from tradedesk.core.alerts import build_alerts, carry_read_flags
from tradedesk.core.book import Book
from tradedesk.core.results import OpError, OpResult
from tradedesk.data.models import (
    Alert,
    Asset,
    DCALevel,
    PortfolioMetrics,
    PositionTradingSnapshot,
    TakeProfitLevel,
    TradeLog,
)
from tradedesk.data.serialization import position_trading_from_document, position_trading_to_document

logger = logging.getLogger(__name__)

_BUYS = (TradeAction.BUY, TradeAction.DCA)


def _parse_action(value: Any) -> TradeAction | None:
    if isinstance(value, TradeAction):
        return value
    try:
        return TradeAction(str(value).strip().upper())
    except ValueError:
        return None


def _iso_date(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).date().isoformat()


def valuate(asset: Asset, now: int) -> None:
    """Refresh value, P&L and status of *asset* at its current market price.

    P&L is measured against the cost basis ``average_buy_price * quantity``;
    fees are part of ``total_invested`` but not of the basis.
    """
    asset.current_value = asset.current_quantity * asset.current_market_price
    asset.unrealized_pnl = asset.current_value - asset.average_buy_price * asset.current_quantity
    if asset.average_buy_price > 0:
        asset.unrealized_pnl_percent = (
            (asset.current_market_price - asset.average_buy_price) / asset.average_buy_price * 100
        )
    else:
        asset.unrealized_pnl_percent = 0.0
    if asset.unrealized_pnl > 0:
        asset.status = AssetStatus.PROFIT
    elif asset.unrealized_pnl < 0:
        asset.status = AssetStatus.LOSS
    else:
        asset.status = AssetStatus.BREAKEVEN
    asset.last_updated = now


def replay_trades(trades: Iterable[TradeLog]) -> tuple[float, float, float]:
    """Rebuild ``(quantity, average_buy_price, total_invested)`` from fills.

    A SELL that empties the holding resets the cost basis, so a later BUY
    starts a fresh average, exactly as recording the trades one by one does.
    """
    quantity = average = invested = 0.0
    for trade in trades:
        if trade.action in _BUYS:
            average = q.weighted_average(quantity, average, trade.quantity, trade.price)
            quantity += trade.quantity
            invested += trade.total_value + trade.fees
        else:
            quantity -= trade.quantity
            if quantity <= 0:
                quantity = average = invested = 0.0
    return quantity, average, invested


class AssetBook(Book):
    """The position-trading store.

    Every BUY/DCA/SELL is appended to an immutable trade log and folded into
    one ``Asset`` per ticker. Take-profit and DCA plans are generated when an
    asset is created; completing a level is always a user action. Portfolio
    weights, metrics and alerts are recomputed after every mutation.
    """

    namespace = POSITION_TRADING_NAMESPACE

    def __init__(
        self,
        rules: AssetRuleSettings | None = None,
        initial_capital: float | None = None,
        clock: Callable[[], int] | None = None,
    ) -> None:
        super().__init__(clock)
        self._rules = rules or AssetRuleSettings()
        capital = initial_capital if initial_capital is not None else self._rules.initial_capital
        self._state = PositionTradingSnapshot(initial_capital=capital, available_cash=capital)
        self._state.portfolio_metrics = self._compute_metrics(self._state)

    # -- Read access ---------------------------------------------------------

    @property
    def initial_capital(self) -> float:
        return self._state.initial_capital

    @property
    def available_cash(self) -> float:
        return self._state.available_cash

    @property
    def trade_logs(self) -> list[TradeLog]:
        return list(self._state.trade_logs)

    @property
    def assets(self) -> list[Asset]:
        return copy.deepcopy(self._state.assets)

    @property
    def take_profit_levels(self) -> list[TakeProfitLevel]:
        return copy.deepcopy(self._state.take_profit_levels)

    @property
    def dca_levels(self) -> list[DCALevel]:
        return copy.deepcopy(self._state.dca_levels)

    @property
    def alerts(self) -> list[Alert]:
        return copy.deepcopy(self._state.alerts)

    def get_asset(self, ticker: str) -> Asset | None:
        asset = self._asset_by_ticker(self._state, ticker.strip().upper())
        return copy.deepcopy(asset) if asset is not None else None

    def metrics(self) -> PortfolioMetrics:
        return copy.deepcopy(self._state.portfolio_metrics)

    def snapshot(self, last_updated: int = 0) -> PositionTradingSnapshot:
        state = copy.deepcopy(self._state)
        state.last_updated = last_updated
        return state

    def to_document(self, last_updated: int = 0) -> dict[str, Any]:
        return position_trading_to_document(self.snapshot(last_updated))

    def _load_document(self, document: Any) -> None:
        self._state = position_trading_from_document(document, self._rules.initial_capital)

    def _clear(self) -> None:
        capital = self._rules.initial_capital
        self._state = PositionTradingSnapshot(initial_capital=capital, available_cash=capital)
        self._state.portfolio_metrics = self._compute_metrics(self._state)

    # -- Trades --------------------------------------------------------------

    def record_trade(
        self,
        ticker: str,
        action: TradeAction | str,
        price: Any,
        quantity: Any,
        fees: Any = 0.0,
        notes: str = "",
        date: str | None = None,
    ) -> OpResult:
        """Append a fill to the trade log and fold it into the asset.

        BUY/DCA need ``available_cash >= price * quantity + fees`` and create
        the asset if the ticker is new. SELL lowers the quantity at an
        unchanged average cost and deletes the asset with its TP/DCA plans
        once nothing is left.
        """
        ticker = (ticker or "").strip().upper()
        if not ticker:
            return OpResult.fail(OpError.MISSING_SYMBOL, "Ticker is required")
        trade_action = _parse_action(action)
        if trade_action is None:
            return OpResult.fail(OpError.INVALID_AMOUNT, f"Unknown trade action: {action!r}")
        fill_price = q.parse_price(price)
        if fill_price is None:
            return OpResult.fail(OpError.INVALID_PRICE, "Price must be a positive number")
        fill_quantity = q.parse_price(quantity)
        if fill_quantity is None:
            return OpResult.fail(OpError.INVALID_QUANTITY, "Quantity must be a positive number")
        try:
            fill_fees = float(fees or 0.0)
        except (TypeError, ValueError):
            fill_fees = -1.0
        if fill_fees < 0:
            return OpResult.fail(OpError.INVALID_AMOUNT, "Fees must be zero or a positive number")

        total_value = fill_price * fill_quantity
        cash = self._state.available_cash
        if trade_action in _BUYS and cash < total_value + fill_fees:
            logger.info(
                "Rejected %s %s: need %.2f, available %.2f",
                trade_action.value,
                ticker,
                total_value + fill_fees,
                cash,
            )
            return OpResult.fail(
                OpError.INSUFFICIENT_FUNDS,
                f"Insufficient cash: need {total_value + fill_fees:,.2f}, available {cash:,.2f}",
            )
        if trade_action == TradeAction.SELL and self._asset_by_ticker(self._state, ticker) is None:
            return OpResult.fail(OpError.UNKNOWN_ASSET, f"No holding of {ticker} to sell")

        now = self._clock()
        state = copy.deepcopy(self._state)
        trade = TradeLog(
            id=self._new_id(t.id for t in state.trade_logs),
            date=date or _iso_date(now),
            ticker=ticker,
            action=trade_action,
            price=fill_price,
            quantity=fill_quantity,
            total_value=total_value,
            fees=fill_fees,
            notes=notes,
            timestamp=now,
        )
        self._apply_trade(state, trade, now)
        if trade_action in _BUYS:
            state.available_cash = max(0.0, cash - (total_value + fill_fees))
        else:
            state.available_cash = max(0.0, cash + (total_value - fill_fees))
        state.trade_logs.append(trade)

        logger.info(
            "Recorded %s %.8g %s @ %.6g (fees %.4f), cash %.2f",
            trade_action.value,
            fill_quantity,
            ticker,
            fill_price,
            fill_fees,
            state.available_cash,
        )
        self._commit(state)
        return OpResult.success(trade)

    def delete_trade(self, trade_id: str) -> OpResult:
        """Remove a trade and rebuild its asset from the remaining history.

        The asset keeps its id, market price and TP/DCA plans; it is deleted
        when the remaining trades leave nothing held. Cash is not touched;
        ``recalculate_cash`` re-derives it from the log.
        """
        target = next((t for t in self._state.trade_logs if t.id == trade_id), None)
        if target is None:
            logger.warning("delete_trade: no trade with id %s", trade_id)
            return OpResult.fail(OpError.UNKNOWN_TRADE, f"No trade with id {trade_id}")

        now = self._clock()
        state = copy.deepcopy(self._state)
        state.trade_logs = [t for t in state.trade_logs if t.id != trade_id]
        remaining = sorted(
            (t for t in state.trade_logs if t.ticker == target.ticker),
            key=lambda t: t.timestamp,
        )
        quantity, average, invested = replay_trades(remaining)
        existing = self._asset_by_ticker(state, target.ticker)

        if quantity <= 0:
            self._drop_asset(state, target.ticker)
            logger.info("Deleted trade %s; %s no longer held", trade_id, target.ticker)
        else:
            if existing is None:
                existing = Asset(
                    id=self._new_id(a.id for a in state.assets),
                    ticker=target.ticker,
                    average_buy_price=average,
                    current_quantity=quantity,
                    current_market_price=remaining[-1].price,
                    current_value=0.0,
                    total_invested=invested,
                )
                state.assets.append(existing)
                self._generate_levels(state, existing, state.available_cash)
            existing.current_quantity = quantity
            existing.average_buy_price = average
            existing.total_invested = invested
            valuate(existing, now)
            logger.info(
                "Deleted trade %s; rebuilt %s from %d trades: qty=%.8g avg=%.6g",
                trade_id,
                target.ticker,
                len(remaining),
                quantity,
                average,
            )
        self._commit(state)
        return OpResult.success(target)

    def update_market_price(self, asset_ref: str, price: Any) -> OpResult:
        """Set the market price of an asset, looked up by id or ticker."""
        new_price = q.parse_price(price)
        if new_price is None:
            return OpResult.fail(OpError.INVALID_PRICE, "Price must be a positive number")
        state = copy.deepcopy(self._state)
        asset = next((a for a in state.assets if a.id == asset_ref), None) or self._asset_by_ticker(
            state, str(asset_ref).strip().upper()
        )
        if asset is None:
            logger.warning("update_market_price: no asset %s", asset_ref)
            return OpResult.fail(OpError.UNKNOWN_ASSET, f"No asset {asset_ref}")

        asset.current_market_price = new_price
        valuate(asset, self._clock())
        self._commit(state)
        return OpResult.success(copy.deepcopy(asset))

    # -- Plans ---------------------------------------------------------------

    def complete_take_profit(self, level_id: str) -> OpResult:
        """Mark a take-profit level as taken. Recording the SELL is separate."""
        state = copy.deepcopy(self._state)
        level = next((tp for tp in state.take_profit_levels if tp.id == level_id), None)
        if level is None:
            logger.warning("complete_take_profit: no level %s", level_id)
            return OpResult.fail(OpError.INVALID_LEVEL, f"No take-profit level {level_id}")
        if level.status == TakeProfitStatus.COMPLETED:
            return OpResult.noop(f"{level.level} of {level.ticker} already completed")
        level.status = TakeProfitStatus.COMPLETED
        level.is_checked = True
        logger.info("%s of %s completed", level.level, level.ticker)
        self._commit(state)
        return OpResult.success(copy.deepcopy(level))

    def execute_dca_level(self, level_id: str) -> OpResult:
        """Mark a DCA level as executed. Recording the DCA fill is separate."""
        state = copy.deepcopy(self._state)
        level = next((d for d in state.dca_levels if d.id == level_id), None)
        if level is None:
            logger.warning("execute_dca_level: no level %s", level_id)
            return OpResult.fail(OpError.INVALID_LEVEL, f"No DCA level {level_id}")
        if level.status == DCAStatus.EXECUTED:
            return OpResult.noop(f"{level.level} of {level.ticker} already executed")
        level.status = DCAStatus.EXECUTED
        logger.info("%s of %s executed", level.level, level.ticker)
        self._commit(state)
        return OpResult.success(copy.deepcopy(level))

    # -- Capital -------------------------------------------------------------

    def deposit(self, amount: Any) -> OpResult:
        value = q.parse_price(amount)
        if value is None:
            return OpResult.fail(OpError.INVALID_AMOUNT, "Amount must be a positive number")
        state = copy.deepcopy(self._state)
        state.initial_capital += value
        state.available_cash += value
        logger.info("Deposited %.2f, cash %.2f", value, state.available_cash)
        self._commit(state)
        return OpResult.success(state.available_cash)

    def withdraw(self, amount: Any) -> OpResult:
        value = q.parse_price(amount)
        if value is None:
            return OpResult.fail(OpError.INVALID_AMOUNT, "Amount must be a positive number")
        if self._state.available_cash - value < 0:
            return OpResult.fail(
                OpError.INSUFFICIENT_FUNDS,
                f"Cannot withdraw {value:,.2f}, available {self._state.available_cash:,.2f}",
            )
        state = copy.deepcopy(self._state)
        state.initial_capital -= value
        state.available_cash -= value
        logger.info("Withdrew %.2f, cash %.2f", value, state.available_cash)
        self._commit(state)
        return OpResult.success(state.available_cash)

    def adjust_initial_capital(self, amount: Any) -> OpResult:
        """Restate the starting capital; cash becomes capital minus what is invested."""
        value = q.parse_price(amount)
        if value is None:
            return OpResult.fail(OpError.INVALID_AMOUNT, "Capital must be a positive number")
        state = copy.deepcopy(self._state)
        invested = sum(a.total_invested for a in state.assets)
        state.initial_capital = value
        state.available_cash = max(0.0, value - invested)
        self._commit(state)
        return OpResult.success(state.available_cash)

    def recalculate_cash(self) -> OpResult:
        """Re-derive cash from the trade log.

        Formula::

            cash = initial_capital - Σ(buy value + fees) + Σ(sell value - fees)
        """
        state = copy.deepcopy(self._state)
        spent = sum(t.total_value + t.fees for t in state.trade_logs if t.action in _BUYS)
        received = sum(
            t.total_value - t.fees for t in state.trade_logs if t.action == TradeAction.SELL
        )
        state.available_cash = max(0.0, state.initial_capital - spent + received)
        logger.info("Recalculated cash: %.2f", state.available_cash)
        self._commit(state)
        return OpResult.success(state.available_cash)

    def mark_alert_read(self, alert_id: str) -> OpResult:
        state = copy.deepcopy(self._state)
        alert = next((a for a in state.alerts if a.id == alert_id), None)
        if alert is None:
            return OpResult.fail(OpError.INVALID_LEVEL, f"No alert {alert_id}")
        if alert.is_read:
            return OpResult.noop("Alert already read")
        alert.is_read = True
        self._commit(state)
        return OpResult.success(copy.deepcopy(alert))

    # -- Internals -----------------------------------------------------------

    def _apply_trade(self, state: PositionTradingSnapshot, trade: TradeLog, now: int) -> None:
        asset = self._asset_by_ticker(state, trade.ticker)
        if asset is None:
            asset = Asset(
                id=self._new_id(a.id for a in state.assets),
                ticker=trade.ticker,
                average_buy_price=trade.price,
                current_quantity=trade.quantity,
                current_market_price=trade.price,
                current_value=trade.total_value,
                total_invested=trade.total_value + trade.fees,
            )
            valuate(asset, now)
            state.assets.append(asset)
            self._generate_levels(state, asset, state.available_cash)
            return

        if trade.action in _BUYS:
            asset.average_buy_price = q.weighted_average(
                asset.current_quantity, asset.average_buy_price, trade.quantity, trade.price
            )
            asset.current_quantity += trade.quantity
            asset.total_invested += trade.total_value + trade.fees
        else:
            asset.current_quantity -= trade.quantity
            if asset.current_quantity <= 0:
                self._drop_asset(state, trade.ticker)
                logger.info("%s fully sold, holding removed", trade.ticker)
                return
        valuate(asset, now)

    def _generate_levels(
        self,
        state: PositionTradingSnapshot,
        asset: Asset,
        available_cash: float,
    ) -> None:
        base = asset.average_buy_price
        for i, rule in enumerate(self._rules.take_profit, start=1):
            target = base * (1 + rule.percent / 100)
            quantity = asset.current_quantity * rule.sell_percent / 100
            state.take_profit_levels.append(
                TakeProfitLevel(
                    id=f"tp{i}-{asset.id}",
                    asset_id=asset.id,
                    ticker=asset.ticker,
                    level=f"TP{i}",
                    target_price=target,
                    sell_percentage=rule.sell_percent,
                    quantity_to_sell=quantity,
                    expected_value=target * quantity,
                    price_increase=rule.percent,
                )
            )
        for i, rule in enumerate(self._rules.dca, start=1):
            trigger = base * (1 + rule.percent / 100)
            amount = available_cash * rule.capital_percent / 100
            state.dca_levels.append(
                DCALevel(
                    id=f"dca{i}-{asset.id}",
                    asset_id=asset.id,
                    ticker=asset.ticker,
                    level=f"DCA{i}",
                    trigger_price=trigger,
                    price_decrease=abs(rule.percent),
                    dca_amount=amount,
                    quantity_to_buy=amount / trigger if trigger > 0 else 0.0,
                    capital_allocation=rule.capital_percent,
                )
            )

    @staticmethod
    def _drop_asset(state: PositionTradingSnapshot, ticker: str) -> None:
        state.assets = [a for a in state.assets if a.ticker != ticker]
        state.take_profit_levels = [tp for tp in state.take_profit_levels if tp.ticker != ticker]
        state.dca_levels = [d for d in state.dca_levels if d.ticker != ticker]

    @staticmethod
    def _asset_by_ticker(state: PositionTradingSnapshot, ticker: str) -> Asset | None:
        return next((a for a in state.assets if a.ticker == ticker), None)

    def _new_id(self, existing: Iterable[str]) -> str:
        used = set(existing)
        candidate = self._clock()
        while str(candidate) in used:
            candidate += 1
        return str(candidate)

    def _commit(self, state: PositionTradingSnapshot) -> None:
        weights = q.portfolio_weights(a.current_value for a in state.assets)
        for asset, weight in zip(state.assets, weights):
            asset.portfolio_weight = weight
        state.portfolio_metrics = self._compute_metrics(state)
        state.alerts = carry_read_flags(
            state.alerts,
            build_alerts(
                state.assets,
                state.take_profit_levels,
                state.dca_levels,
                self._rules,
                self._clock(),
            ),
        )
        self._state = state
        self._notify()

    @staticmethod
    def _compute_metrics(state: PositionTradingSnapshot) -> PortfolioMetrics:
        total_value = sum(a.current_value for a in state.assets)
        total_invested = sum(a.total_invested for a in state.assets)
        total_pnl = sum(a.unrealized_pnl for a in state.assets)
        sells = [t for t in state.trade_logs if t.action == TradeAction.SELL]
        winners = [t for t in sells if t.total_value > 0]
        return PortfolioMetrics(
            total_initial_capital=state.initial_capital,
            total_current_value=total_value,
            total_pnl=total_pnl,
            total_pnl_percent=q.roi_percent(total_pnl, total_invested),
            available_cash=state.available_cash,
            total_invested=total_invested,
            win_rate=len(winners) / len(sells) * 100 if sells else 0.0,
            total_trades=len(state.trade_logs),
        )
