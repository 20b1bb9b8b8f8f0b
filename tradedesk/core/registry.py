"""Book construction by document namespace."""

from __future__ import annotations

from typing import TYPE_CHECKING, Callable

from tradedesk.config.constants import FUTURES_NAMESPACE, POSITION_TRADING_NAMESPACE, SPOT_NAMESPACE
from tradedesk.core.asset_book import AssetBook
from tradedesk.core.futures_book import FuturesBook
from tradedesk.core.spot_book import SpotBook

if TYPE_CHECKING:
    from tradedesk.config.settings import Settings
    from tradedesk.core.book import Book

NAMESPACES = (FUTURES_NAMESPACE, SPOT_NAMESPACE, POSITION_TRADING_NAMESPACE)


def make_book(
    namespace: str,
    settings: "Settings",
    clock: Callable[[], int] | None = None,
) -> "Book":
    """Build an empty book for *namespace* configured from *settings*."""
    if namespace == FUTURES_NAMESPACE:
        return FuturesBook(settings.strategy, clock=clock)
    if namespace == SPOT_NAMESPACE:
        return SpotBook(settings.spot, clock=clock)
    if namespace == POSITION_TRADING_NAMESPACE:
        return AssetBook(settings.assets, clock=clock)
    raise ValueError(f"Unknown namespace: {namespace!r} (expected one of {', '.join(NAMESPACES)})")
