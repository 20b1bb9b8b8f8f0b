"""Dataclass models for everything the tracker stores and syncs."""

from __future__ import annotations

from dataclasses import dataclass, field

from tradedesk.config.constants import (
    AlertSeverity,
    AlertType,
    AssetStatus,
    DCAStatus,
    Direction,
    LevelStatus,
    TakeProfitStatus,
    TradeAction,
)


@dataclass
class LadderLevel:
    """One rung of a position's DCA or take-profit ladder."""

    index: int
    price: float
    status: LevelStatus = LevelStatus.PENDING

    @property
    def is_pending(self) -> bool:
        return self.status == LevelStatus.PENDING


@dataclass
class Position:
    """A leveraged futures position tracked by hand or by price feed.

    ``entry`` is the first fill and never changes; ``avg_entry`` moves only
    when a DCA level is executed. ``r`` and the take-profit prices are always
    derived from ``avg_entry`` and ``sl``.
    """

    id: int
    symbol: str
    direction: Direction
    entry: float
    avg_entry: float
    current_price: float
    sl: float
    r: float
    leverage: int = 10
    initial_margin: float = 0.0
    position_size: float = 0.0
    dca_levels: list[LadderLevel] = field(default_factory=list)
    tp_levels: list[LadderLevel] = field(default_factory=list)
    unrealized_pnl: float = 0.0
    remaining_percent: float = 100.0
    total_fees: float = 0.0
    auto_update: bool = False

    def dca_level(self, index: int) -> LadderLevel | None:
        return _find_level(self.dca_levels, index)

    def tp_level(self, index: int) -> LadderLevel | None:
        return _find_level(self.tp_levels, index)


def _find_level(levels: list[LadderLevel], index: int) -> LadderLevel | None:
    for level in levels:
        if level.index == index:
            return level
    return None


@dataclass
class SpotPosition:
    """An unleveraged spot holding; closing it realizes the whole value."""

    id: int
    symbol: str
    entry_price: float
    current_price: float
    quantity: float
    value: float
    total_cost: float
    type: TradeAction = TradeAction.BUY
    unrealized_pnl: float = 0.0
    total_fees: float = 0.0
    auto_update: bool = False
    timestamp: int = 0


@dataclass(frozen=True)
class TradeLog:
    """One fill in the long-term trade log. Never edited, only deleted."""

    id: str
    ticker: str
    action: TradeAction
    price: float
    quantity: float
    total_value: float
    fees: float
    timestamp: int
    date: str = ""
    notes: str = ""


@dataclass
class Asset:
    """Aggregate of all BUY/DCA fills of one ticker."""

    id: str
    ticker: str
    average_buy_price: float
    current_quantity: float
    current_market_price: float
    current_value: float
    total_invested: float
    unrealized_pnl: float = 0.0
    unrealized_pnl_percent: float = 0.0
    portfolio_weight: float = 0.0
    status: AssetStatus = AssetStatus.BREAKEVEN
    last_updated: int = 0


@dataclass
class TakeProfitLevel:
    id: str
    asset_id: str
    ticker: str
    level: str  # "TP1".."TP4"
    target_price: float
    sell_percentage: float
    quantity_to_sell: float
    expected_value: float
    price_increase: float
    status: TakeProfitStatus = TakeProfitStatus.PENDING
    is_checked: bool = False


@dataclass
class DCALevel:
    id: str
    asset_id: str
    ticker: str
    level: str  # "DCA1".."DCA4"
    trigger_price: float
    price_decrease: float
    dca_amount: float
    quantity_to_buy: float
    capital_allocation: float
    status: DCAStatus = DCAStatus.WAITING
    additional_conditions: str | None = None


@dataclass
class PortfolioMetrics:
    total_initial_capital: float = 0.0
    total_current_value: float = 0.0
    total_pnl: float = 0.0
    total_pnl_percent: float = 0.0
    available_cash: float = 0.0
    total_invested: float = 0.0
    win_rate: float = 0.0
    average_gain: float = 0.0
    average_loss: float = 0.0
    best_trade: float = 0.0
    worst_trade: float = 0.0
    total_trades: int = 0
    sharpe_ratio: float | None = None


@dataclass
class Alert:
    id: str
    type: AlertType
    message: str
    timestamp: int
    severity: AlertSeverity
    ticker: str | None = None
    level: str | None = None
    is_read: bool = False


# ---------------------------------------------------------------------------
# Book snapshots (one per synced document)
# ---------------------------------------------------------------------------

@dataclass
class FuturesSnapshot:
    wallet: float
    trading_fee: float
    positions: list[Position] = field(default_factory=list)
    last_updated: int = 0


@dataclass
class SpotSnapshot:
    wallet: float
    trading_fee: float
    positions: list[SpotPosition] = field(default_factory=list)
    last_updated: int = 0


@dataclass
class PositionTradingSnapshot:
    initial_capital: float
    available_cash: float
    trade_logs: list[TradeLog] = field(default_factory=list)
    assets: list[Asset] = field(default_factory=list)
    take_profit_levels: list[TakeProfitLevel] = field(default_factory=list)
    dca_levels: list[DCALevel] = field(default_factory=list)
    portfolio_metrics: PortfolioMetrics = field(default_factory=PortfolioMetrics)
    alerts: list[Alert] = field(default_factory=list)
    last_updated: int = 0
