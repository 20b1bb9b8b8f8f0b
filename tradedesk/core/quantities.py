"""Closed-form position arithmetic.

Everything here is a pure function of its arguments: capital allocation,
stop-loss / DCA / take-profit ladders, fees, weighted-average entries,
unrealized P&L and portfolio weights. The books call into this module and
never keep state here.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterable

from tradedesk.config.constants import Direction, LevelStatus, MarginBand

if TYPE_CHECKING:
    from tradedesk.config.settings import StrategySettings
    from tradedesk.data.models import Position


@dataclass(frozen=True)
class Allocation:
    """Split of a wallet under the 45/40/15 strategy."""

    initial: float
    dca: float
    emergency: float
    per_trade_initial: float
    per_trade_dca1: float
    per_trade_dca2: float

    def per_trade_dca(self, level: int) -> float:
        return self.per_trade_dca1 if level == 1 else self.per_trade_dca2


@dataclass(frozen=True)
class LadderOffsets:
    """Fractional distances of the stop-loss and DCA prices from entry."""

    sl: float = 0.05
    dca1: float = 0.03
    dca2: float = 0.06

    @classmethod
    def from_settings(cls, settings: "StrategySettings") -> "LadderOffsets":
        return cls(
            sl=settings.sl_offset,
            dca1=settings.dca1_offset,
            dca2=settings.dca2_offset,
        )


@dataclass(frozen=True)
class PriceLadder:
    entry: float
    sl: float
    dca1: float
    dca2: float
    r: float
    tp1: float
    tp2: float
    tp3: float

    @property
    def dca_prices(self) -> tuple[float, float]:
        return (self.dca1, self.dca2)

    @property
    def tp_prices(self) -> tuple[float, float, float]:
        return (self.tp1, self.tp2, self.tp3)


@dataclass(frozen=True)
class AccountStats:
    total_used_margin: float
    total_pnl: float
    equity: float
    free_margin: float
    margin_level: float
    used_margin_percent: float

    @property
    def band(self) -> MarginBand:
        return margin_band(self.margin_level)


def parse_price(value: Any) -> float | None:
    """Return *value* as a positive finite float, or None.

    Accepts numbers and numeric strings (form input).
    """
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number <= 0:
        return None
    return number


def allocate(wallet: float, settings: "StrategySettings | None" = None) -> Allocation:
    """Split *wallet* into initial / DCA / emergency buckets and per-trade sizes.

    Formula (defaults)::

        initial   = 0.45 * wallet      per_trade_initial = 0.045 * wallet
        dca       = 0.40 * wallet      per_trade_dca1    = 0.024 * wallet
        emergency = 0.15 * wallet      per_trade_dca2    = 0.016 * wallet
    """
    if settings is None:
        return Allocation(
            initial=wallet * 0.45,
            dca=wallet * 0.40,
            emergency=wallet * 0.15,
            per_trade_initial=wallet * 0.045,
            per_trade_dca1=wallet * 0.024,
            per_trade_dca2=wallet * 0.016,
        )
    return Allocation(
        initial=wallet * settings.initial_ratio,
        dca=wallet * settings.dca_ratio,
        emergency=wallet * settings.emergency_ratio,
        per_trade_initial=wallet * settings.per_trade_initial_ratio,
        per_trade_dca1=wallet * settings.per_trade_dca1_ratio,
        per_trade_dca2=wallet * settings.per_trade_dca2_ratio,
    )


def take_profit_targets(
    avg_entry: float,
    sl: float,
    direction: Direction,
) -> tuple[float, tuple[float, float, float]]:
    """Return ``(R, (tp1, tp2, tp3))`` for an entry and stop.

    ``R = |avg_entry - sl|``; ``tp_k = avg_entry ± k * R`` signed by direction.
    """
    r = abs(avg_entry - sl)
    sign = 1.0 if direction == Direction.LONG else -1.0
    return r, tuple(avg_entry + sign * k * r for k in (1, 2, 3))  # type: ignore[return-value]


def price_ladder(
    entry: Any,
    direction: Direction,
    offsets: LadderOffsets | None = None,
) -> PriceLadder | None:
    """Compute the stop-loss, DCA and take-profit prices for a new position.

    Returns None if *entry* is not a positive finite number.

    For LONG the stop and DCA prices sit below entry
    (``sl = entry * (1 - sl_offset)``), for SHORT they mirror above it.
    """
    entry_price = parse_price(entry)
    if entry_price is None:
        return None
    offsets = offsets or LadderOffsets()

    if direction == Direction.LONG:
        sl = entry_price * (1 - offsets.sl)
        dca1 = entry_price * (1 - offsets.dca1)
        dca2 = entry_price * (1 - offsets.dca2)
    else:
        sl = entry_price * (1 + offsets.sl)
        dca1 = entry_price * (1 + offsets.dca1)
        dca2 = entry_price * (1 + offsets.dca2)

    r, (tp1, tp2, tp3) = take_profit_targets(entry_price, sl, direction)
    return PriceLadder(
        entry=entry_price, sl=sl, dca1=dca1, dca2=dca2, r=r, tp1=tp1, tp2=tp2, tp3=tp3
    )


def fee(notional_value: float, fee_rate_percent: float = 0.05) -> float:
    """Trading fee on a notional value; the rate is a percentage (0.05 → 0.05%)."""
    return notional_value * fee_rate_percent / 100


def weighted_average(
    prev_size: float,
    prev_price: float,
    add_size: float,
    add_price: float,
) -> float:
    """Size-weighted average price after adding to a position.

    Formula::

        avg = (prev_size * prev_price + add_size * add_price)
              / (prev_size + add_size)
    """
    total_size = prev_size + add_size
    if total_size == 0:
        return 0.0
    return (prev_size * prev_price + add_size * add_price) / total_size


def signed_change(direction: Direction, entry: float, current: float) -> float:
    """Fractional price move in the position's favour."""
    if entry == 0:
        return 0.0
    if direction == Direction.LONG:
        return (current - entry) / entry
    return (entry - current) / entry


def unrealized_pnl(
    position_size: float,
    direction: Direction,
    entry: float,
    current: float,
    remaining_percent: float = 100.0,
) -> float:
    """P&L of the still-open part of a position at *current*."""
    return position_size * signed_change(direction, entry, current) * (remaining_percent / 100)


def roi_percent(pnl: float, invested: float) -> float:
    if invested == 0:
        return 0.0
    return pnl / invested * 100


def portfolio_weights(values: Iterable[float]) -> list[float]:
    """Share of each value in the total, in percent. All zeros if the total is 0."""
    values = list(values)
    total = sum(values)
    if total <= 0:
        return [0.0 for _ in values]
    return [v / total * 100 for v in values]


def account_stats(
    positions: Iterable["Position"],
    wallet: float,
    settings: "StrategySettings | None" = None,
) -> AccountStats:
    """Margin usage and solvency of a futures account.

    Used margin is counted from the allocation plan rather than the margin
    actually posted: every position commits ``per_trade_initial`` plus
    ``per_trade_dca1`` / ``per_trade_dca2`` for each executed DCA level.
    ``margin_level = equity / used_margin * 100`` and is 0 with no margin in use.
    """
    positions = list(positions)
    plan = allocate(wallet, settings)
    used = 0.0
    for position in positions:
        used += plan.per_trade_initial
        if _executed(position, 1):
            used += plan.per_trade_dca1
        if _executed(position, 2):
            used += plan.per_trade_dca2
    total_pnl = sum(p.unrealized_pnl or 0.0 for p in positions)
    equity = wallet + total_pnl
    return AccountStats(
        total_used_margin=used,
        total_pnl=total_pnl,
        equity=equity,
        free_margin=equity - used,
        margin_level=(equity / used) * 100 if used > 0 else 0.0,
        used_margin_percent=(used / wallet) * 100 if wallet > 0 else 0.0,
    )


def margin_band(level: float) -> MarginBand:
    if level >= 150:
        return MarginBand.SAFE
    if level >= 130:
        return MarginBand.CAUTION
    if level >= 110:
        return MarginBand.WARNING
    return MarginBand.DANGER


def _executed(position: "Position", index: int) -> bool:
    level = position.dca_level(index)
    return level is not None and level.status == LevelStatus.EXECUTED
