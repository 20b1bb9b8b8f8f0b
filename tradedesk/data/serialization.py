"""Snapshot <-> document conversion.

Documents are plain JSON-compatible dicts whose field names match the
documents already stored by the web tool (``avgEntry``, ``dca1Executed``,
``tradeLogs``...), so they must round-trip exactly. Parsing is tolerant:
missing or malformed fields fall back to documented defaults and a
malformed record is skipped instead of aborting the load.
"""

from __future__ import annotations

import logging
import math
from enum import Enum
from typing import Any, TypeVar

from tradedesk.config.constants import (
    AlertSeverity,
    AlertType,
    AssetStatus,
    DCA_LEVELS,
    DCAStatus,
    Direction,
    LevelStatus,
    TP_LEVELS,
    TakeProfitStatus,
    TradeAction,
)
from tradedesk.core.quantities import LadderOffsets, price_ladder, take_profit_targets
from tradedesk.data.models import (
    Alert,
    Asset,
    DCALevel,
    FuturesSnapshot,
    LadderLevel,
    PortfolioMetrics,
    Position,
    PositionTradingSnapshot,
    SpotPosition,
    SpotSnapshot,
    TakeProfitLevel,
    TradeLog,
)

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Enum)

DEFAULT_LEVERAGE = 10
DEFAULT_FUTURES_WALLET = 906.3
DEFAULT_FUTURES_FEE = 0.05
DEFAULT_SPOT_WALLET = 1000.0
DEFAULT_SPOT_FEE = 0.1
DEFAULT_INITIAL_CAPITAL = 10000.0


# -- Field helpers -----------------------------------------------------------

def _num(data: dict, key: str, default: float = 0.0) -> float:
    value = data.get(key)
    if value is None or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


def _positive(data: dict, key: str) -> float | None:
    """Like ``value || fallback`` in the web tool: 0 and junk count as missing."""
    number = _num(data, key, 0.0)
    return number if number > 0 else None


def _int(data: dict, key: str, default: int = 0) -> int:
    return int(_num(data, key, float(default)))


def _str(data: dict, key: str, default: str = "") -> str:
    value = data.get(key)
    return str(value) if value is not None else default


def _bool(data: dict, key: str, default: bool = False) -> bool:
    value = data.get(key)
    return bool(value) if value is not None else default


def _enum(enum_cls: type[E], value: Any, default: E) -> E:
    try:
        return enum_cls(value)
    except ValueError:
        return default


def _list(data: dict, key: str) -> list:
    value = data.get(key)
    return value if isinstance(value, list) else []


def _parse_records(raw: list, parser, kind: str) -> list:
    records = []
    for item in raw:
        if not isinstance(item, dict):
            logger.warning("Skipping malformed %s record: %r", kind, item)
            continue
        try:
            record = parser(item)
        except (KeyError, TypeError, ValueError):
            logger.warning("Skipping malformed %s record: %r", kind, item)
            continue
        if record is not None:
            records.append(record)
    return records


# -- Futures positions -------------------------------------------------------

def position_to_dict(position: Position) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": position.id,
        "symbol": position.symbol,
        "direction": position.direction.value,
        "entry": position.entry,
        "currentPrice": position.current_price,
        "avgEntry": position.avg_entry,
        "sl": position.sl,
        "R": position.r,
        "leverage": position.leverage,
        "initialMargin": position.initial_margin,
        "positionSize": position.position_size,
        "unrealizedPNL": position.unrealized_pnl,
        "remainingPercent": position.remaining_percent,
        "autoUpdate": position.auto_update,
        "totalFees": position.total_fees,
        "editingMargin": False,
    }
    for level in position.dca_levels:
        data[f"dca{level.index}"] = level.price
        data[f"dca{level.index}Executed"] = level.status == LevelStatus.EXECUTED
    for level in position.tp_levels:
        data[f"tp{level.index}"] = level.price
        data[f"tp{level.index}Closed"] = level.status == LevelStatus.CLOSED
    return data


def position_from_dict(
    data: dict,
    offsets: LadderOffsets | None = None,
    default_leverage: int = DEFAULT_LEVERAGE,
) -> Position | None:
    """Build a Position from a stored document entry.

    Defaults: ``avgEntry ?? entry``, ``currentPrice ?? avgEntry ?? entry``,
    missing ``sl``/``dca*`` from the default ladder of ``entry``,
    ``leverage ?? default_leverage``, ``positionSize ?? initialMargin * leverage``,
    ``remainingPercent ?? 100``. ``R`` and the take-profit prices are always
    recomputed from ``avgEntry`` and ``sl``. ``autoUpdate`` is reset to False.
    Returns None when there is no usable entry price.
    """
    entry = _positive(data, "entry") or _positive(data, "avgEntry")
    if entry is None:
        logger.warning("Skipping position without entry price: %r", data.get("id"))
        return None
    direction = _enum(Direction, data.get("direction"), Direction.LONG)
    avg_entry = _positive(data, "avgEntry") or entry
    current = _positive(data, "currentPrice") or avg_entry

    ladder = price_ladder(entry, direction, offsets)
    sl = _positive(data, "sl") or ladder.sl
    r, tps = take_profit_targets(avg_entry, sl, direction)

    leverage = _int(data, "leverage", default_leverage) or default_leverage
    initial_margin = _num(data, "initialMargin")
    position_size = _positive(data, "positionSize") or initial_margin * leverage
    remaining = min(100.0, max(0.0, _num(data, "remainingPercent", 100.0)))

    dca_defaults = ladder.dca_prices
    dca_levels = [
        LadderLevel(
            index=i,
            price=_positive(data, f"dca{i}") or dca_defaults[i - 1],
            status=LevelStatus.EXECUTED if _bool(data, f"dca{i}Executed") else LevelStatus.PENDING,
        )
        for i in DCA_LEVELS
    ]
    tp_levels = [
        LadderLevel(
            index=i,
            price=tps[i - 1],
            status=LevelStatus.CLOSED if _bool(data, f"tp{i}Closed") else LevelStatus.PENDING,
        )
        for i in TP_LEVELS
    ]

    return Position(
        id=_int(data, "id"),
        symbol=_str(data, "symbol").upper(),
        direction=direction,
        entry=entry,
        avg_entry=avg_entry,
        current_price=current,
        sl=sl,
        r=r,
        leverage=leverage,
        initial_margin=initial_margin,
        position_size=position_size,
        dca_levels=dca_levels,
        tp_levels=tp_levels,
        unrealized_pnl=_num(data, "unrealizedPNL"),
        remaining_percent=remaining,
        total_fees=_num(data, "totalFees"),
        auto_update=False,
    )


def futures_to_document(snapshot: FuturesSnapshot) -> dict[str, Any]:
    return {
        "wallet": snapshot.wallet,
        "tradingFee": snapshot.trading_fee,
        "positions": [position_to_dict(p) for p in snapshot.positions],
        "lastUpdated": snapshot.last_updated,
    }


def futures_from_document(
    data: Any,
    offsets: LadderOffsets | None = None,
    wallet: float = DEFAULT_FUTURES_WALLET,
    trading_fee: float = DEFAULT_FUTURES_FEE,
    leverage: int = DEFAULT_LEVERAGE,
) -> FuturesSnapshot:
    """Parse a futures document; *wallet*, *trading_fee* and *leverage*
    fill whatever the document lacks."""
    if not isinstance(data, dict):
        logger.warning("Malformed futures document, using empty snapshot")
        return FuturesSnapshot(wallet=wallet, trading_fee=trading_fee)
    return FuturesSnapshot(
        wallet=_positive(data, "wallet") or wallet,
        trading_fee=_num(data, "tradingFee", trading_fee),
        positions=_parse_records(
            _list(data, "positions"),
            lambda item: position_from_dict(item, offsets, leverage),
            "position",
        ),
        last_updated=_int(data, "lastUpdated"),
    )


# -- Spot positions ----------------------------------------------------------

def spot_position_to_dict(position: SpotPosition) -> dict[str, Any]:
    return {
        "id": position.id,
        "symbol": position.symbol,
        "type": position.type.value,
        "entryPrice": position.entry_price,
        "currentPrice": position.current_price,
        "quantity": position.quantity,
        "value": position.value,
        "totalCost": position.total_cost,
        "unrealizedPNL": position.unrealized_pnl,
        "autoUpdate": position.auto_update,
        "totalFees": position.total_fees,
        "timestamp": position.timestamp,
    }


def spot_position_from_dict(data: dict) -> SpotPosition | None:
    entry = _positive(data, "entryPrice")
    quantity = _positive(data, "quantity")
    if entry is None or quantity is None:
        logger.warning("Skipping spot position without price/quantity: %r", data.get("id"))
        return None
    current = _positive(data, "currentPrice") or entry
    value = quantity * current
    total_fees = _num(data, "totalFees")
    total_cost = _positive(data, "totalCost") or quantity * entry + total_fees
    return SpotPosition(
        id=_int(data, "id"),
        symbol=_str(data, "symbol").upper(),
        type=_enum(TradeAction, data.get("type"), TradeAction.BUY),
        entry_price=entry,
        current_price=current,
        quantity=quantity,
        value=value,
        total_cost=total_cost,
        unrealized_pnl=value - total_cost,
        total_fees=total_fees,
        auto_update=False,
        timestamp=_int(data, "timestamp"),
    )


def spot_to_document(snapshot: SpotSnapshot) -> dict[str, Any]:
    return {
        "wallet": snapshot.wallet,
        "tradingFee": snapshot.trading_fee,
        "positions": [spot_position_to_dict(p) for p in snapshot.positions],
        "lastUpdated": snapshot.last_updated,
    }


def spot_from_document(
    data: Any,
    wallet: float = DEFAULT_SPOT_WALLET,
    trading_fee: float = DEFAULT_SPOT_FEE,
) -> SpotSnapshot:
    if not isinstance(data, dict):
        logger.warning("Malformed spot document, using empty snapshot")
        return SpotSnapshot(wallet=wallet, trading_fee=trading_fee)
    return SpotSnapshot(
        wallet=_num(data, "wallet", wallet),
        trading_fee=_num(data, "tradingFee", trading_fee),
        positions=_parse_records(_list(data, "positions"), spot_position_from_dict, "spot position"),
        last_updated=_int(data, "lastUpdated"),
    )


# -- Position trading (long-term assets) -------------------------------------

def trade_log_to_dict(trade: TradeLog) -> dict[str, Any]:
    return {
        "id": trade.id,
        "date": trade.date,
        "ticker": trade.ticker,
        "action": trade.action.value,
        "price": trade.price,
        "quantity": trade.quantity,
        "totalValue": trade.total_value,
        "fees": trade.fees,
        "notes": trade.notes,
        "timestamp": trade.timestamp,
    }


def trade_log_from_dict(data: dict) -> TradeLog:
    price = _num(data, "price")
    quantity = _num(data, "quantity")
    return TradeLog(
        id=_str(data, "id"),
        date=_str(data, "date"),
        ticker=_str(data, "ticker").upper(),
        action=TradeAction(data["action"]),
        price=price,
        quantity=quantity,
        total_value=_num(data, "totalValue", price * quantity),
        fees=_num(data, "fees"),
        notes=_str(data, "notes"),
        timestamp=_int(data, "timestamp"),
    )


def asset_to_dict(asset: Asset) -> dict[str, Any]:
    return {
        "id": asset.id,
        "ticker": asset.ticker,
        "averageBuyPrice": asset.average_buy_price,
        "currentQuantity": asset.current_quantity,
        "currentMarketPrice": asset.current_market_price,
        "currentValue": asset.current_value,
        "unrealizedPnL": asset.unrealized_pnl,
        "unrealizedPnLPercent": asset.unrealized_pnl_percent,
        "portfolioWeight": asset.portfolio_weight,
        "status": asset.status.value,
        "totalInvested": asset.total_invested,
        "lastUpdated": asset.last_updated,
    }


def asset_from_dict(data: dict) -> Asset:
    average = _num(data, "averageBuyPrice")
    quantity = _num(data, "currentQuantity")
    market = _positive(data, "currentMarketPrice") or average
    return Asset(
        id=_str(data, "id"),
        ticker=_str(data, "ticker").upper(),
        average_buy_price=average,
        current_quantity=quantity,
        current_market_price=market,
        current_value=_num(data, "currentValue", quantity * market),
        total_invested=_num(data, "totalInvested", quantity * average),
        unrealized_pnl=_num(data, "unrealizedPnL"),
        unrealized_pnl_percent=_num(data, "unrealizedPnLPercent"),
        portfolio_weight=_num(data, "portfolioWeight"),
        status=_enum(AssetStatus, data.get("status"), AssetStatus.BREAKEVEN),
        last_updated=_int(data, "lastUpdated"),
    )


def tp_level_to_dict(level: TakeProfitLevel) -> dict[str, Any]:
    return {
        "id": level.id,
        "assetId": level.asset_id,
        "ticker": level.ticker,
        "level": level.level,
        "targetPrice": level.target_price,
        "sellPercentage": level.sell_percentage,
        "quantityToSell": level.quantity_to_sell,
        "expectedValue": level.expected_value,
        "status": level.status.value,
        "isChecked": level.is_checked,
        "priceIncrease": level.price_increase,
    }


def tp_level_from_dict(data: dict) -> TakeProfitLevel:
    return TakeProfitLevel(
        id=_str(data, "id"),
        asset_id=_str(data, "assetId"),
        ticker=_str(data, "ticker").upper(),
        level=_str(data, "level"),
        target_price=_num(data, "targetPrice"),
        sell_percentage=_num(data, "sellPercentage"),
        quantity_to_sell=_num(data, "quantityToSell"),
        expected_value=_num(data, "expectedValue"),
        price_increase=_num(data, "priceIncrease"),
        status=_enum(TakeProfitStatus, data.get("status"), TakeProfitStatus.PENDING),
        is_checked=_bool(data, "isChecked"),
    )


def dca_level_to_dict(level: DCALevel) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": level.id,
        "assetId": level.asset_id,
        "ticker": level.ticker,
        "level": level.level,
        "triggerPrice": level.trigger_price,
        "priceDecrease": level.price_decrease,
        "dcaAmount": level.dca_amount,
        "quantityToBuy": level.quantity_to_buy,
        "status": level.status.value,
        "capitalAllocation": level.capital_allocation,
    }
    if level.additional_conditions is not None:
        data["additionalConditions"] = level.additional_conditions
    return data


def dca_level_from_dict(data: dict) -> DCALevel:
    conditions = data.get("additionalConditions")
    return DCALevel(
        id=_str(data, "id"),
        asset_id=_str(data, "assetId"),
        ticker=_str(data, "ticker").upper(),
        level=_str(data, "level"),
        trigger_price=_num(data, "triggerPrice"),
        price_decrease=_num(data, "priceDecrease"),
        dca_amount=_num(data, "dcaAmount"),
        quantity_to_buy=_num(data, "quantityToBuy"),
        capital_allocation=_num(data, "capitalAllocation"),
        status=_enum(DCAStatus, data.get("status"), DCAStatus.WAITING),
        additional_conditions=str(conditions) if conditions is not None else None,
    )


_METRIC_FIELDS = {
    "totalInitialCapital": "total_initial_capital",
    "totalCurrentValue": "total_current_value",
    "totalPnL": "total_pnl",
    "totalPnLPercent": "total_pnl_percent",
    "availableCash": "available_cash",
    "totalInvested": "total_invested",
    "winRate": "win_rate",
    "averageGain": "average_gain",
    "averageLoss": "average_loss",
    "bestTrade": "best_trade",
    "worstTrade": "worst_trade",
}


def metrics_to_dict(metrics: PortfolioMetrics) -> dict[str, Any]:
    data: dict[str, Any] = {key: getattr(metrics, attr) for key, attr in _METRIC_FIELDS.items()}
    data["totalTrades"] = metrics.total_trades
    if metrics.sharpe_ratio is not None:
        data["sharpeRatio"] = metrics.sharpe_ratio
    return data


def metrics_from_dict(data: Any) -> PortfolioMetrics:
    if not isinstance(data, dict):
        return PortfolioMetrics()
    sharpe = data.get("sharpeRatio")
    return PortfolioMetrics(
        **{attr: _num(data, key) for key, attr in _METRIC_FIELDS.items()},
        total_trades=_int(data, "totalTrades"),
        sharpe_ratio=float(sharpe) if isinstance(sharpe, (int, float)) else None,
    )


def alert_to_dict(alert: Alert) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": alert.id,
        "type": alert.type.value,
        "message": alert.message,
        "timestamp": alert.timestamp,
        "isRead": alert.is_read,
        "severity": alert.severity.value,
    }
    if alert.ticker is not None:
        data["ticker"] = alert.ticker
    if alert.level is not None:
        data["level"] = alert.level
    return data


def alert_from_dict(data: dict) -> Alert:
    return Alert(
        id=_str(data, "id"),
        type=AlertType(data["type"]),
        message=_str(data, "message"),
        timestamp=_int(data, "timestamp"),
        severity=_enum(AlertSeverity, data.get("severity"), AlertSeverity.LOW),
        ticker=data.get("ticker"),
        level=data.get("level"),
        is_read=_bool(data, "isRead"),
    )


def position_trading_to_document(snapshot: PositionTradingSnapshot) -> dict[str, Any]:
    return {
        "tradeLogs": [trade_log_to_dict(t) for t in snapshot.trade_logs],
        "assets": [asset_to_dict(a) for a in snapshot.assets],
        "takeProfitLevels": [tp_level_to_dict(t) for t in snapshot.take_profit_levels],
        "dcaLevels": [dca_level_to_dict(d) for d in snapshot.dca_levels],
        "portfolioMetrics": metrics_to_dict(snapshot.portfolio_metrics),
        "alerts": [alert_to_dict(a) for a in snapshot.alerts],
        "initialCapital": snapshot.initial_capital,
        "availableCash": snapshot.available_cash,
        "lastUpdated": snapshot.last_updated,
    }


def position_trading_from_document(
    data: Any,
    initial_capital: float = DEFAULT_INITIAL_CAPITAL,
) -> PositionTradingSnapshot:
    """Parse a position-trading document.

    ``initialCapital`` defaults to *initial_capital* and ``availableCash``
    to the initial capital; a stored cash balance of 0 is kept as 0.
    """
    if not isinstance(data, dict):
        logger.warning("Malformed position trading document, using empty snapshot")
        return PositionTradingSnapshot(
            initial_capital=initial_capital,
            available_cash=initial_capital,
        )
    initial_capital = _positive(data, "initialCapital") or initial_capital
    return PositionTradingSnapshot(
        initial_capital=initial_capital,
        available_cash=max(0.0, _num(data, "availableCash", initial_capital)),
        trade_logs=_parse_records(_list(data, "tradeLogs"), trade_log_from_dict, "trade log"),
        assets=_parse_records(_list(data, "assets"), asset_from_dict, "asset"),
        take_profit_levels=_parse_records(
            _list(data, "takeProfitLevels"), tp_level_from_dict, "take-profit level"
        ),
        dca_levels=_parse_records(_list(data, "dcaLevels"), dca_level_from_dict, "DCA level"),
        portfolio_metrics=metrics_from_dict(data.get("portfolioMetrics")),
        alerts=_parse_records(_list(data, "alerts"), alert_from_dict, "alert"),
        last_updated=_int(data, "lastUpdated"),
    )
