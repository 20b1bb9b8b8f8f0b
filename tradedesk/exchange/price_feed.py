"""Live price subscriptions for positions with auto-update on."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Hashable, Mapping, Protocol

import ccxt

from tradedesk.core.quantities import parse_price

if TYPE_CHECKING:
    from tradedesk.config.constants import ChangeOrigin
    from tradedesk.core.book import Book
    from tradedesk.exchange.client import TickerClient

logger = logging.getLogger(__name__)

TickHandler = Callable[[float], None]


class PriceSubscription:
    """Handle of one live symbol stream. ``close()`` releases it for good."""

    def __init__(self, symbol: str, on_close: Callable[[], None] | None = None) -> None:
        self.symbol = symbol
        self._on_close = on_close
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._on_close is not None:
            self._on_close()


class PriceSource(ABC):
    @abstractmethod
    def subscribe(self, symbol: str, on_tick: TickHandler) -> PriceSubscription:
        """Start delivering prices of *symbol* to *on_tick*."""

    async def aclose(self) -> None:
        """Release shared connections."""


class CcxtPriceSource(PriceSource):
    """One background task per subscription on a shared ``TickerClient``.

    Streams with ``watch_ticker`` when the exchange supports it and polls
    ``fetch_ticker`` otherwise. Exchange errors are logged and retried after
    ``reconnect_delay`` seconds; they never reach the tick handler.
    """

    def __init__(self, client: "TickerClient", reconnect_delay: float = 3.0, poll_interval: float = 2.0) -> None:
        self._client = client
        self._reconnect_delay = reconnect_delay
        self._poll_interval = poll_interval
        self._tasks: set[asyncio.Task] = set()  # type: ignore[type-arg]

    def subscribe(self, symbol: str, on_tick: TickHandler) -> PriceSubscription:
        task = asyncio.create_task(self._run(symbol, on_tick))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.debug("Subscribed to %s", symbol)
        return PriceSubscription(symbol, on_close=task.cancel)

    async def _run(self, symbol: str, on_tick: TickHandler) -> None:
        while True:
            try:
                if self._client.supports_streaming:
                    price = await self._client.watch_price(symbol)
                else:
                    price = await self._client.fetch_price(symbol)
                    await asyncio.sleep(self._poll_interval)
            except ccxt.BaseError as exc:
                logger.warning("Price stream for %s failed (%s), retrying in %.1fs", symbol, exc, self._reconnect_delay)
                await asyncio.sleep(self._reconnect_delay)
                continue
            if price is not None:
                on_tick(price)

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)


@dataclass
class ReconcileResult:
    opened: list[Hashable] = field(default_factory=list)
    closed: list[Hashable] = field(default_factory=list)
    kept: list[Hashable] = field(default_factory=list)


class SubscriptionManager:
    """Keeps exactly one subscription per key for a desired ``{key: symbol}`` map.

    Each ``reconcile`` opens subscriptions for new keys, closes those of
    keys that disappeared, reopens keys whose symbol changed and leaves the
    rest alone.
    """

    def __init__(self, source: PriceSource) -> None:
        self._source = source
        self._active: dict[Hashable, PriceSubscription] = {}

    @property
    def active(self) -> dict[Hashable, str]:
        return {key: sub.symbol for key, sub in self._active.items()}

    def reconcile(
        self,
        desired: Mapping[Hashable, str],
        handler_for: Callable[[Hashable], TickHandler],
    ) -> ReconcileResult:
        result = ReconcileResult()
        for key in list(self._active):
            if key not in desired or desired[key] != self._active[key].symbol:
                self._active.pop(key).close()
                result.closed.append(key)

        for key, symbol in desired.items():
            if key in self._active:
                result.kept.append(key)
                continue
            self._active[key] = self._guarded_subscribe(key, symbol, handler_for(key))
            result.opened.append(key)

        if result.opened or result.closed:
            logger.info(
                "Price subscriptions: +%d -%d (=%d active)",
                len(result.opened),
                len(result.closed),
                len(self._active),
            )
        return result

    def _guarded_subscribe(self, key: Hashable, symbol: str, handler: TickHandler) -> PriceSubscription:
        holder: list[PriceSubscription] = []

        def _on_tick(raw: Any) -> None:
            # Late ticks from a closed stream must not reach the book.
            if holder and holder[0].closed:
                return
            price = parse_price(raw)
            if price is None:
                logger.debug("Dropping invalid tick %r for %s", raw, symbol)
                return
            handler(price)

        subscription = self._source.subscribe(symbol, _on_tick)
        holder.append(subscription)
        return subscription

    def close_all(self) -> None:
        for subscription in self._active.values():
            subscription.close()
        self._active.clear()


class _PricedBook(Protocol):
    @property
    def positions(self) -> list[Any]: ...

    def update_current_price(self, pos_id: int, price: Any) -> Any: ...


class LivePriceFeed:
    """Routes live prices into a futures or spot book.

    Subscriptions follow the book: every change re-reconciles the set of
    ``{position id: symbol}`` for positions with ``auto_update`` on.
    """

    def __init__(self, book: "Book", source: PriceSource) -> None:
        self._book = book
        self._manager = SubscriptionManager(source)
        self._remove_listener: Callable[[], None] | None = None

    @property
    def subscriptions(self) -> dict[Hashable, str]:
        return self._manager.active

    def attach(self) -> None:
        if self._remove_listener is None:
            self._remove_listener = self._book.add_listener(self._on_book_change)
        self.refresh()

    def detach(self) -> None:
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None
        self._manager.close_all()

    def refresh(self) -> ReconcileResult:
        book: _PricedBook = self._book  # type: ignore[assignment]
        desired = {p.id: p.symbol for p in book.positions if p.auto_update}
        return self._manager.reconcile(desired, self._handler_for)

    def _handler_for(self, pos_id: Hashable) -> TickHandler:
        def _apply(price: float) -> None:
            self._book.update_current_price(pos_id, price)  # type: ignore[attr-defined]

        return _apply

    def _on_book_change(self, book: "Book", origin: "ChangeOrigin") -> None:
        self.refresh()
