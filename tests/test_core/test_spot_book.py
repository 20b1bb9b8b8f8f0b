"""Tests for the spot holdings book."""

import pytest

from tradedesk.config.settings import SpotSettings
from tradedesk.core.results import OpError
from tradedesk.core.spot_book import SpotBook


class TestSpotBook:
    def test_open_position_charges_fee(self, spot_book):
        result = spot_book.open_position("btc", 100, 2)

        assert result.ok
        pos = result.value
        assert pos.symbol == "BTC"
        assert pos.value == pytest.approx(200)
        assert pos.total_fees == pytest.approx(0.2)
        assert pos.total_cost == pytest.approx(200.2)
        assert pos.auto_update is True
        assert spot_book.stats().available_balance == pytest.approx(799.8)

    def test_insufficient_balance(self, spot_book):
        result = spot_book.open_position("BTC", 100, 10)
        assert result.error == OpError.INSUFFICIENT_FUNDS
        assert spot_book.positions == []

    @pytest.mark.parametrize(
        "symbol, price, qty, error",
        [
            ("", 100, 1, OpError.MISSING_SYMBOL),
            ("BTC", 0, 1, OpError.INVALID_PRICE),
            ("BTC", 100, "abc", OpError.INVALID_QUANTITY),
        ],
    )
    def test_validation(self, spot_book, symbol, price, qty, error):
        assert spot_book.open_position(symbol, price, qty).error == error

    def test_price_update_revalues(self, spot_book):
        pos = spot_book.open_position("BTC", 100, 2).value
        after = spot_book.update_current_price(pos.id, 110).value
        assert after.value == pytest.approx(220)
        assert after.unrealized_pnl == pytest.approx(19.8)

        stats = spot_book.stats()
        assert stats.total_pnl == pytest.approx(19.8)
        assert stats.total_portfolio_value == pytest.approx(1019.8)
        assert stats.total_fund == pytest.approx(1000)

    def test_remove_realizes_value_minus_fee(self, spot_book):
        pos = spot_book.open_position("BTC", 100, 2).value
        spot_book.update_current_price(pos.id, 110)

        result = spot_book.remove_position(pos.id)

        assert result.value == pytest.approx(219.78)
        assert spot_book.wallet == pytest.approx(1219.78)
        assert spot_book.positions == []

    def test_unknown_position(self, spot_book):
        assert spot_book.remove_position(7).error == OpError.UNKNOWN_POSITION
        assert spot_book.update_current_price(7, 1).error == OpError.UNKNOWN_POSITION

    def test_toggle_auto_update(self, spot_book):
        pos = spot_book.open_position("BTC", 100, 1).value
        assert spot_book.toggle_auto_update(pos.id).value.auto_update is False

    def test_document_round_trip(self, spot_book):
        spot_book.open_position("BTC", 100, 1)
        doc = spot_book.to_document(last_updated=5)
        assert doc["lastUpdated"] == 5
        assert doc["wallet"] == 1000

        spot_book.reset()
        assert spot_book.positions == []
        spot_book.replace_from_document(doc)
        assert len(spot_book.positions) == 1
        assert spot_book.fee_rate_percent == pytest.approx(0.1)

    def test_load_fills_gaps_from_settings(self, clock):
        book = SpotBook(SpotSettings(default_wallet=250, fee_rate_percent=0.2), clock=clock)

        book.replace_from_document({"positions": []})

        assert book.wallet == 250
        assert book.fee_rate_percent == pytest.approx(0.2)
