"""Rule-based alerts for long-term holdings."""

from __future__ import annotations

import logging
from typing import Iterable

from tradedesk.config.constants import AlertSeverity, AlertType, DCAStatus, TakeProfitStatus
from tradedesk.config.settings import AssetRuleSettings
from tradedesk.data.models import Alert, Asset, DCALevel, TakeProfitLevel

logger = logging.getLogger(__name__)


def build_alerts(
    assets: Iterable[Asset],
    take_profit_levels: Iterable[TakeProfitLevel],
    dca_levels: Iterable[DCALevel],
    rules: AssetRuleSettings,
    now: int,
) -> list[Alert]:
    """Evaluate every alert rule against the current holdings.

    Alert ids are stable per (asset, rule) so a caller can carry the
    ``is_read`` flag over from the previous evaluation. Levels trigger on a
    plain price comparison; a completed or executed level never alerts.
    """
    take_profit_levels = list(take_profit_levels)
    dca_levels = list(dca_levels)
    alerts: list[Alert] = []

    for asset in assets:
        for threshold in rules.high_gain_thresholds:
            if asset.unrealized_pnl_percent >= threshold:
                alerts.append(
                    Alert(
                        id=f"gain-{asset.id}-{threshold:g}",
                        type=AlertType.HIGH_GAIN,
                        message=f"{asset.ticker} is up {threshold:g}%. Consider taking profit.",
                        timestamp=now,
                        severity=AlertSeverity.MEDIUM,
                        ticker=asset.ticker,
                    )
                )

        if asset.unrealized_pnl_percent <= -rules.high_loss_threshold:
            alerts.append(
                Alert(
                    id=f"loss-{asset.id}",
                    type=AlertType.HIGH_LOSS,
                    message=(
                        f"{asset.ticker} is down {abs(asset.unrealized_pnl_percent):.1f}%. "
                        "Review the position."
                    ),
                    timestamp=now,
                    severity=AlertSeverity.HIGH,
                    ticker=asset.ticker,
                )
            )

        if asset.portfolio_weight > rules.rebalance_threshold:
            alerts.append(
                Alert(
                    id=f"rebalance-{asset.id}",
                    type=AlertType.REBALANCE_NEEDED,
                    message=(
                        f"{asset.ticker} is {asset.portfolio_weight:.1f}% of the portfolio. "
                        "Rebalance needed."
                    ),
                    timestamp=now,
                    severity=AlertSeverity.MEDIUM,
                    ticker=asset.ticker,
                )
            )

        for tp in take_profit_levels:
            if tp.asset_id != asset.id or tp.status != TakeProfitStatus.PENDING:
                continue
            if asset.current_market_price >= tp.target_price:
                alerts.append(
                    Alert(
                        id=f"tp-{tp.id}",
                        type=AlertType.TP_REACHED,
                        message=(
                            f"{asset.ticker} reached {tp.level} at {tp.target_price:g}. "
                            f"Sell {tp.sell_percentage:g}%."
                        ),
                        timestamp=now,
                        severity=AlertSeverity.HIGH,
                        ticker=asset.ticker,
                        level=tp.level,
                    )
                )

        for dca in dca_levels:
            if dca.asset_id != asset.id or dca.status != DCAStatus.WAITING:
                continue
            if asset.current_market_price <= dca.trigger_price:
                alerts.append(
                    Alert(
                        id=f"dca-{dca.id}",
                        type=AlertType.DCA_ZONE,
                        message=(
                            f"{asset.ticker} entered the {dca.level} zone at "
                            f"{dca.trigger_price:g}. Consider buying."
                        ),
                        timestamp=now,
                        severity=AlertSeverity.MEDIUM,
                        ticker=asset.ticker,
                        level=dca.level,
                    )
                )

    logger.debug("Evaluated alerts: %d active", len(alerts))
    return alerts


def carry_read_flags(previous: Iterable[Alert], current: list[Alert]) -> list[Alert]:
    """Keep ``is_read`` and the first-seen timestamp of alerts that persist."""
    seen = {alert.id: alert for alert in previous}
    merged = []
    for alert in current:
        old = seen.get(alert.id)
        if old is not None:
            alert.is_read = old.is_read
            alert.timestamp = old.timestamp
        merged.append(alert)
    return merged
