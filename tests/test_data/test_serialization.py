"""Tests for snapshot/document conversion."""

import pytest

from tradedesk.config.constants import AlertType, Direction, LevelStatus, TradeAction
from tradedesk.core.quantities import LadderOffsets
from tradedesk.data.serialization import (
    DEFAULT_FUTURES_WALLET,
    futures_from_document,
    position_from_dict,
    position_to_dict,
    position_trading_from_document,
    spot_from_document,
)


def _legacy_position(**overrides) -> dict:
    data = {
        "id": 1700000000000,
        "symbol": "xpl",
        "direction": "LONG",
        "entry": 100,
        "avgEntry": 100,
        "currentPrice": 104,
        "sl": 95,
        "R": 5,
        "leverage": 10,
        "initialMargin": 44.775,
        "positionSize": 447.75,
        "dca1": 97,
        "dca2": 94,
        "dca1Executed": True,
        "dca2Executed": False,
        "tp1": 105,
        "tp2": 110,
        "tp3": 115,
        "tp1Closed": False,
        "tp2Closed": False,
        "tp3Closed": False,
        "unrealizedPNL": 17.91,
        "remainingPercent": 100,
        "autoUpdate": True,
        "totalFees": 0.225,
        "editingMargin": False,
    }
    data.update(overrides)
    return data


class TestPositionDocument:
    def test_reads_stored_fields(self):
        pos = position_from_dict(_legacy_position())

        assert pos.symbol == "XPL"
        assert pos.direction == Direction.LONG
        assert pos.current_price == 104
        assert pos.dca_level(1).status == LevelStatus.EXECUTED
        assert pos.dca_level(2).status == LevelStatus.PENDING
        assert pos.tp_level(3).price == pytest.approx(115)

    def test_auto_update_resets_on_load(self):
        assert position_from_dict(_legacy_position()).auto_update is False

    def test_write_uses_flat_level_fields(self):
        data = position_to_dict(position_from_dict(_legacy_position(tp1Closed=True)))

        assert data["dca1Executed"] is True
        assert data["tp1Closed"] is True
        assert data["dca2"] == 94
        assert data["R"] == pytest.approx(5)
        assert data["direction"] == "LONG"

    def test_missing_fields_get_defaults(self):
        pos = position_from_dict({"id": 3, "symbol": "eth", "direction": "SHORT", "entry": 200})

        assert pos.avg_entry == 200
        assert pos.current_price == 200
        assert pos.sl == pytest.approx(210)
        assert pos.leverage == 10
        assert pos.remaining_percent == 100
        assert [level.price for level in pos.dca_levels] == pytest.approx([206, 212])
        assert [level.price for level in pos.tp_levels] == pytest.approx([190, 180, 170])

    def test_current_price_falls_back_to_avg_entry(self):
        pos = position_from_dict(_legacy_position(currentPrice=None, avgEntry=98))
        assert pos.current_price == 98

    def test_missing_stop_uses_configured_offset(self):
        pos = position_from_dict({"entry": 100}, LadderOffsets(sl=0.07))
        assert pos.sl == pytest.approx(93)

    def test_take_profits_recomputed_from_stop(self):
        pos = position_from_dict(_legacy_position(tp1=999, avgEntry=98, sl=94))
        assert pos.r == pytest.approx(4)
        assert pos.tp_level(1).price == pytest.approx(102)

    def test_position_size_from_margin(self):
        pos = position_from_dict(_legacy_position(positionSize=None, initialMargin=50, leverage=5))
        assert pos.position_size == pytest.approx(250)

    def test_no_entry_price_skips_record(self):
        assert position_from_dict({"symbol": "XPL"}) is None


class TestFuturesDocument:
    def test_malformed_document_gives_empty_snapshot(self):
        snapshot = futures_from_document("garbage")
        assert snapshot.positions == []
        assert snapshot.wallet == DEFAULT_FUTURES_WALLET

    def test_bad_records_are_skipped(self):
        doc = {
            "wallet": 500,
            "tradingFee": 0.02,
            "positions": [_legacy_position(), "oops", {"symbol": "NOENTRY"}],
            "lastUpdated": 123,
        }
        snapshot = futures_from_document(doc)
        assert len(snapshot.positions) == 1
        assert snapshot.wallet == 500
        assert snapshot.trading_fee == 0.02
        assert snapshot.last_updated == 123

    def test_zero_wallet_uses_default(self):
        assert futures_from_document({"wallet": 0}).wallet == DEFAULT_FUTURES_WALLET

    def test_caller_defaults_fill_gaps(self):
        snapshot = futures_from_document(
            {"positions": [{"entry": 100}]}, wallet=2000, trading_fee=0.02, leverage=5
        )
        assert snapshot.wallet == 2000
        assert snapshot.trading_fee == pytest.approx(0.02)
        assert snapshot.positions[0].leverage == 5


class TestSpotDocument:
    def test_values_recomputed(self):
        doc = {
            "wallet": 800,
            "positions": [
                {"id": 1, "symbol": "btc", "entryPrice": 100, "currentPrice": 120, "quantity": 2, "totalFees": 0.2}
            ],
        }
        snapshot = spot_from_document(doc)
        pos = snapshot.positions[0]
        assert pos.value == pytest.approx(240)
        assert pos.total_cost == pytest.approx(200.2)
        assert pos.unrealized_pnl == pytest.approx(39.8)
        assert pos.type == TradeAction.BUY
        assert snapshot.trading_fee == pytest.approx(0.1)


class TestPositionTradingDocument:
    def test_defaults(self):
        snapshot = position_trading_from_document({})
        assert snapshot.initial_capital == 10000
        assert snapshot.available_cash == 10000
        assert snapshot.trade_logs == []

    def test_zero_cash_is_kept(self):
        snapshot = position_trading_from_document({"initialCapital": 5000, "availableCash": 0})
        assert snapshot.available_cash == 0

    def test_records_parsed(self):
        doc = {
            "tradeLogs": [
                {"id": "1", "ticker": "btc", "action": "BUY", "price": 100, "quantity": 2, "fees": 1},
                {"id": "2", "ticker": "btc", "action": "HODL", "price": 100, "quantity": 2},
            ],
            "alerts": [
                {"id": "a", "type": "HIGH_GAIN", "message": "up", "timestamp": 1, "severity": "MEDIUM", "isRead": True}
            ],
            "portfolioMetrics": {"winRate": 50, "totalTrades": 4, "sharpeRatio": 1.2},
        }
        snapshot = position_trading_from_document(doc)

        assert len(snapshot.trade_logs) == 1
        trade = snapshot.trade_logs[0]
        assert trade.ticker == "BTC"
        assert trade.total_value == pytest.approx(200)
        assert snapshot.alerts[0].type == AlertType.HIGH_GAIN
        assert snapshot.alerts[0].is_read is True
        assert snapshot.portfolio_metrics.win_rate == 50
        assert snapshot.portfolio_metrics.sharpe_ratio == 1.2
