"""Async ccxt wrapper for public ticker prices."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import ccxt.pro as ccxt_pro

if TYPE_CHECKING:
    from tradedesk.config.settings import FeedSettings

logger = logging.getLogger(__name__)


def to_market_symbol(symbol: str, quote: str = "USDT") -> str:
    """Map a tracker symbol to a ccxt linear-perpetual symbol.

    ``XPL``, ``XPLUSDT``, ``XPL-USDT`` and ``XPL/USDT`` all become
    ``XPL/USDT:USDT``; a symbol that already names a settle currency is
    returned unchanged.
    """
    raw = symbol.strip().upper()
    if ":" in raw:
        return raw
    if "/" in raw:
        base, _, market_quote = raw.partition("/")
    elif "-" in raw:
        base, _, market_quote = raw.partition("-")
    elif raw.endswith(quote) and len(raw) > len(quote):
        base, market_quote = raw[: -len(quote)], quote
    else:
        base, market_quote = raw, quote
    return f"{base}/{market_quote}:{market_quote}"


def ticker_price(ticker: dict[str, Any] | None) -> float | None:
    """Last traded price of a ccxt ticker, falling back to ``close``."""
    if not ticker:
        return None
    for key in ("last", "close"):
        value = ticker.get(key)
        if value is not None:
            return value
    return None


class TickerClient:
    """Public market-data client on ccxt's async streaming exchanges.

    No credentials are used: the feed only reads tickers.

    Parameters
    ----------
    settings:
        Exchange id and quote currency.
    """

    def __init__(self, settings: "FeedSettings") -> None:
        self._settings = settings
        self._exchange: Any = None

    @property
    def exchange(self) -> Any:
        if self._exchange is None:
            raise RuntimeError("Client not connected. Call connect() first.")
        return self._exchange

    @property
    def supports_streaming(self) -> bool:
        return bool(self.exchange.has.get("watchTicker"))

    def market_symbol(self, symbol: str) -> str:
        return to_market_symbol(symbol, self._settings.quote)

    async def connect(self) -> None:
        exchange_cls = getattr(ccxt_pro, self._settings.exchange, None)
        if exchange_cls is None:
            raise ValueError(f"Unsupported exchange: {self._settings.exchange}")
        self._exchange = exchange_cls(
            {
                "enableRateLimit": True,
                "options": {"defaultType": "swap"},
            }
        )
        await self._exchange.load_markets()
        logger.info(
            "Connected to %s price feed (%d markets, streaming=%s)",
            self._settings.exchange,
            len(self._exchange.markets),
            self.supports_streaming,
        )

    async def disconnect(self) -> None:
        if self._exchange is not None:
            await self._exchange.close()
            self._exchange = None
            logger.info("Disconnected from %s price feed", self._settings.exchange)

    async def fetch_price(self, symbol: str) -> float | None:
        """One REST ticker request."""
        ticker = await self.exchange.fetch_ticker(self.market_symbol(symbol))
        return ticker_price(ticker)

    async def watch_price(self, symbol: str) -> float | None:
        """Wait for the next streamed ticker update."""
        ticker = await self.exchange.watch_ticker(self.market_symbol(symbol))
        return ticker_price(ticker)

    async def __aenter__(self) -> "TickerClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.disconnect()
