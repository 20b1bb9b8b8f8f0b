"""Tests for the sync coordinator: cache restore, debounced pushes,
last-writer-wins, echo suppression and multi-device sync."""

from __future__ import annotations

import asyncio

import pytest

from tradedesk.config.constants import ChangeOrigin, SyncState
from tradedesk.config.settings import SyncSettings
from tradedesk.core.futures_book import FuturesBook
from tradedesk.sync.coordinator import SyncCoordinator
from tradedesk.sync.remote import InMemoryDocumentStore

USER = "user-1"
FAST = SyncSettings(debounce_seconds=0.01)
SLOW = SyncSettings(debounce_seconds=30)


class CountingStore(InMemoryDocumentStore):
    def __init__(self) -> None:
        super().__init__()
        self.saved: list[dict] = []

    async def save(self, user_id, namespace, document):
        self.saved.append(document)
        return await super().save(user_id, namespace, document)


class GatedStore(InMemoryDocumentStore):
    """Holds every save until ``gate`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()
        self.saves = 0

    async def save(self, user_id, namespace, document):
        self.saves += 1
        await self.gate.wait()
        return await super().save(user_id, namespace, document)

    async def save_from_other_device(self, user_id, namespace, document):
        return await super().save(user_id, namespace, document)


class DeafStore(InMemoryDocumentStore):
    """Never delivers pushes, as if the subscription missed them."""

    def subscribe(self, user_id, namespace, callback):
        return lambda: None


def _make_book(wallet: float = 1000.0) -> FuturesBook:
    return FuturesBook(wallet=wallet)


def _remote_document(version: int, symbol: str = "ETH", wallet: float = 2000.0) -> dict:
    book = _make_book(wallet)
    book.open_position(symbol, "LONG", 100)
    return book.to_document(last_updated=version)


async def _settle(seconds: float = 0.1) -> None:
    await asyncio.sleep(seconds)


class TestStart:
    @pytest.mark.asyncio
    async def test_empty_remote(self):
        store = InMemoryDocumentStore()
        coordinator = SyncCoordinator(_make_book(), store, settings=FAST)

        state = await coordinator.start(USER)

        assert state == SyncState.SYNCED
        assert coordinator.user_id == USER
        assert store.subscriber_count(USER, "futures") == 1
        assert store.peek(USER, "futures") is None

    @pytest.mark.asyncio
    async def test_remote_document_replaces_book(self):
        store = InMemoryDocumentStore()
        await store.save(USER, "futures", _remote_document(1000))
        book = _make_book()
        coordinator = SyncCoordinator(book, store, settings=FAST)

        await coordinator.start(USER)

        assert book.wallet == 2000
        assert [p.symbol for p in book.positions] == ["ETH"]
        assert coordinator.local_version == 1000
        assert coordinator.synced_version == 1000

    @pytest.mark.asyncio
    async def test_newer_remote_replaces_cached_state(self, cache):
        await cache.save_local("futures", _remote_document(500, symbol="OLD"))
        store = InMemoryDocumentStore()
        await store.save(USER, "futures", _remote_document(1000, symbol="NEW"))
        book = _make_book()
        coordinator = SyncCoordinator(book, store, cache=cache, settings=FAST)

        await coordinator.start(USER)
        await coordinator.drain()

        assert [p.symbol for p in book.positions] == ["NEW"]
        assert (await cache.load_local("futures"))["lastUpdated"] == 1000
        assert await cache.get_synced_at("futures") == 1000

    @pytest.mark.asyncio
    async def test_newer_cache_is_pushed(self, cache):
        await cache.save_local("futures", _remote_document(2000, symbol="OFFLINE"))
        store = InMemoryDocumentStore()
        await store.save(USER, "futures", _remote_document(1000, symbol="STALE"))
        book = _make_book()
        coordinator = SyncCoordinator(book, store, cache=cache, settings=FAST)

        state = await coordinator.start(USER)

        assert state == SyncState.SYNCED
        assert [p.symbol for p in book.positions] == ["OFFLINE"]
        stored = store.peek(USER, "futures")
        assert stored["lastUpdated"] == 2000
        assert stored["positions"][0]["symbol"] == "OFFLINE"

    @pytest.mark.asyncio
    async def test_cache_seeds_empty_remote(self, cache):
        await cache.save_local("futures", _remote_document(700))
        store = InMemoryDocumentStore()
        coordinator = SyncCoordinator(_make_book(), store, cache=cache, settings=FAST)

        await coordinator.start(USER)

        assert store.peek(USER, "futures")["lastUpdated"] == 700
        assert coordinator.synced_version == 700

    @pytest.mark.asyncio
    async def test_unreachable_remote_keeps_local_state(self, cache):
        await cache.save_local("futures", _remote_document(700))
        store = InMemoryDocumentStore()
        store.online = False
        book = _make_book()
        coordinator = SyncCoordinator(book, store, cache=cache, settings=FAST)

        state = await coordinator.start(USER)

        assert state == SyncState.ERROR
        assert len(book.positions) == 1

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self):
        store = InMemoryDocumentStore()
        coordinator = SyncCoordinator(_make_book(), store, settings=FAST)
        await coordinator.start(USER)
        await coordinator.start(USER)
        assert store.subscriber_count(USER, "futures") == 1


class TestLastWriterWins:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("remote_version, applied", [(1500, False), (2000, False), (2500, True)])
    async def test_remote_applied_only_when_newer(self, remote_version, applied):
        store = InMemoryDocumentStore()
        book = _make_book()
        coordinator = SyncCoordinator(book, store, settings=SLOW, clock=lambda: 2000)
        await coordinator.start(USER)
        book.open_position("LOCAL", "LONG", 100)
        assert coordinator.local_version == 2000

        await store.save(USER, "futures", _remote_document(remote_version, symbol="REMOTE"))

        symbols = [p.symbol for p in book.positions]
        assert symbols == (["REMOTE"] if applied else ["LOCAL"])
        assert coordinator.local_version == max(2000, remote_version)
        await coordinator.stop(flush=False)

    @pytest.mark.asyncio
    async def test_applied_remote_cancels_pending_push(self):
        store = CountingStore()
        book = _make_book()
        coordinator = SyncCoordinator(book, store, settings=SyncSettings(debounce_seconds=0.05), clock=lambda: 10)
        await coordinator.start(USER)
        book.open_position("LOCAL", "LONG", 100)

        await store.save(USER, "futures", _remote_document(5000))
        await _settle(0.15)

        assert len(store.saved) == 1
        assert coordinator.state == SyncState.SYNCED
        assert not coordinator.has_pending_write


class TestOutbound:
    @pytest.mark.asyncio
    async def test_mutations_are_coalesced(self):
        store = CountingStore()
        book = _make_book()
        coordinator = SyncCoordinator(book, store, settings=FAST)
        await coordinator.start(USER)

        result = book.open_position("XPL", "LONG", 100)
        book.update_current_price(result.value.id, 101)
        book.update_current_price(result.value.id, 102)
        assert coordinator.state == SyncState.SYNCING
        await _settle()

        assert len(store.saved) == 1
        stored = store.peek(USER, "futures")
        assert stored["positions"][0]["currentPrice"] == 102
        assert stored["lastUpdated"] == coordinator.local_version
        assert coordinator.synced_version == coordinator.local_version
        assert coordinator.state == SyncState.SYNCED

    @pytest.mark.asyncio
    async def test_own_echo_is_ignored(self):
        store = InMemoryDocumentStore()
        book = _make_book()
        origins = []
        book.add_listener(lambda b, origin: origins.append(origin))
        coordinator = SyncCoordinator(book, store, settings=FAST)
        await coordinator.start(USER)

        book.open_position("XPL", "LONG", 100)
        await _settle()

        assert origins == [ChangeOrigin.LOCAL]
        assert coordinator.state == SyncState.SYNCED

    @pytest.mark.asyncio
    async def test_mutation_while_saving_is_pushed_after(self):
        store = GatedStore()
        book = _make_book()
        coordinator = SyncCoordinator(book, store, settings=FAST)
        await coordinator.start(USER)

        book.open_position("XPL", "LONG", 100)
        await _settle(0.05)
        assert coordinator.state == SyncState.SAVING
        book.open_position("ETH", "SHORT", 50)
        assert coordinator.state == SyncState.SAVING

        store.gate.set()
        await _settle()

        assert store.saves == 2
        assert len(store.peek(USER, "futures")["positions"]) == 2
        assert coordinator.state == SyncState.SYNCED

    @pytest.mark.asyncio
    async def test_remote_push_during_save_is_ignored(self):
        store = GatedStore()
        book = _make_book()
        coordinator = SyncCoordinator(book, store, settings=FAST)
        await coordinator.start(USER)

        book.open_position("XPL", "LONG", 100)
        await _settle(0.05)
        assert coordinator.state == SyncState.SAVING
        await store.save_from_other_device(USER, "futures", _remote_document(10**15, symbol="OTHER"))

        store.gate.set()
        await _settle()

        assert [p.symbol for p in book.positions] == ["XPL"]
        assert store.peek(USER, "futures")["positions"][0]["symbol"] == "XPL"

    @pytest.mark.asyncio
    async def test_failed_push_then_retry(self):
        store = InMemoryDocumentStore()
        book = _make_book()
        states = []
        coordinator = SyncCoordinator(book, store, settings=FAST)
        coordinator.add_state_listener(states.append)
        await coordinator.start(USER)

        store.online = False
        book.open_position("XPL", "LONG", 100)
        await _settle()
        assert coordinator.state == SyncState.ERROR
        assert len(book.positions) == 1

        store.online = True
        assert await coordinator.retry()
        assert coordinator.state == SyncState.SYNCED
        assert store.peek(USER, "futures")["lastUpdated"] == coordinator.local_version
        assert states[-3:] == [SyncState.ERROR, SyncState.SAVING, SyncState.SYNCED]

    @pytest.mark.asyncio
    async def test_local_cache_written_on_every_change(self, cache):
        book = _make_book()
        coordinator = SyncCoordinator(book, InMemoryDocumentStore(), cache=cache, settings=SLOW)
        await coordinator.start(USER)

        book.open_position("XPL", "LONG", 100)
        await coordinator.drain()

        cached = await cache.load_local("futures")
        assert cached["lastUpdated"] == coordinator.local_version
        assert cached["positions"][0]["symbol"] == "XPL"
        await coordinator.stop(flush=False)

    @pytest.mark.asyncio
    async def test_stop_flushes_pending_write(self):
        store = InMemoryDocumentStore()
        book = _make_book()
        coordinator = SyncCoordinator(book, store, settings=SLOW)
        await coordinator.start(USER)
        book.open_position("XPL", "LONG", 100)

        await coordinator.stop()

        assert store.peek(USER, "futures") is not None
        assert coordinator.state == SyncState.OFFLINE
        assert store.subscriber_count(USER, "futures") == 0

    @pytest.mark.asyncio
    async def test_changes_after_stop_are_not_pushed(self):
        store = CountingStore()
        book = _make_book()
        coordinator = SyncCoordinator(book, store, settings=FAST)
        await coordinator.start(USER)
        await coordinator.stop()

        book.open_position("XPL", "LONG", 100)
        await _settle()

        assert store.saved == []


class TestLogoutAndGuard:
    @pytest.mark.asyncio
    async def test_logout_clears_everything(self, cache):
        store = InMemoryDocumentStore()
        book = _make_book()
        coordinator = SyncCoordinator(book, store, cache=cache, settings=SLOW)
        await coordinator.start(USER)
        book.open_position("XPL", "LONG", 100)

        await coordinator.logout()

        assert book.positions == []
        assert await cache.load_local("futures") is None
        assert coordinator.local_version == 0
        assert coordinator.state == SyncState.OFFLINE
        assert store.peek(USER, "futures") is None

    @pytest.mark.asyncio
    async def test_guarded_mutation_pulls_first(self):
        store = DeafStore()
        book = _make_book()
        coordinator = SyncCoordinator(book, store, settings=SLOW)
        await coordinator.start(USER)
        await store.save(USER, "futures", _remote_document(coordinator.local_version + 1000, symbol="REMOTE"))

        result = await coordinator.guarded(lambda: book.open_position("LOCAL", "LONG", 100))

        assert result.ok
        assert [p.symbol for p in book.positions] == ["REMOTE", "LOCAL"]
        assert coordinator.has_pending_write
        await coordinator.stop()
        assert len(store.peek(USER, "futures")["positions"]) == 2

    @pytest.mark.asyncio
    async def test_pull_after_failed_push_delivers_the_edits(self):
        store = InMemoryDocumentStore()
        book = _make_book()
        coordinator = SyncCoordinator(book, store, settings=FAST)
        await coordinator.start(USER)

        store.online = False
        book.open_position("XPL", "LONG", 100)
        await _settle()
        assert coordinator.state == SyncState.ERROR
        assert coordinator.has_pending_write

        store.online = True
        assert not await coordinator.pull()
        assert coordinator.state == SyncState.SYNCING

        await _settle()
        assert coordinator.state == SyncState.SYNCED
        assert store.peek(USER, "futures")["positions"][0]["symbol"] == "XPL"
        assert coordinator.synced_version == coordinator.local_version
        assert not coordinator.has_pending_write

    @pytest.mark.asyncio
    async def test_pull_waits_for_push_in_flight(self):
        store = GatedStore()
        book = _make_book()
        coordinator = SyncCoordinator(book, store, settings=FAST)
        await coordinator.start(USER)

        book.open_position("XPL", "LONG", 100)
        await _settle(0.05)
        assert coordinator.state == SyncState.SAVING
        await store.save_from_other_device(USER, "futures", _remote_document(10**15, symbol="OTHER"))

        pull = asyncio.create_task(coordinator.pull())
        await _settle(0.05)
        assert not pull.done()
        assert coordinator.state == SyncState.SAVING
        assert [p.symbol for p in book.positions] == ["XPL"]

        store.gate.set()
        assert not await pull

        stored = store.peek(USER, "futures")
        assert [p["symbol"] for p in stored["positions"]] == [p.symbol for p in book.positions]
        assert stored["lastUpdated"] == coordinator.local_version
        assert coordinator.state == SyncState.SYNCED

    @pytest.mark.asyncio
    async def test_guarded_mutation_waits_for_push_in_flight(self):
        store = GatedStore()
        book = _make_book()
        coordinator = SyncCoordinator(book, store, settings=FAST)
        await coordinator.start(USER)

        book.open_position("XPL", "LONG", 100)
        await _settle(0.05)
        guarded = asyncio.create_task(
            coordinator.guarded(lambda: book.open_position("ETH", "SHORT", 50))
        )
        await _settle(0.05)
        assert not guarded.done()
        assert len(book.positions) == 1

        store.gate.set()
        assert (await guarded).ok
        await _settle()

        assert len(store.peek(USER, "futures")["positions"]) == 2
        assert coordinator.state == SyncState.SYNCED

    @pytest.mark.asyncio
    async def test_guarded_offline_runs_directly(self):
        book = _make_book()
        coordinator = SyncCoordinator(book, InMemoryDocumentStore(), settings=SLOW)
        result = await coordinator.guarded(lambda: book.set_wallet(500))
        assert result.ok
        assert book.wallet == 500


class TestTwoDevices:
    @pytest.mark.asyncio
    async def test_edits_flow_both_ways(self):
        store = InMemoryDocumentStore()
        laptop, phone = _make_book(), _make_book()
        laptop_sync = SyncCoordinator(laptop, store, settings=FAST)
        phone_sync = SyncCoordinator(phone, store, settings=FAST)
        await laptop_sync.start(USER)
        await phone_sync.start(USER)

        pos = laptop.open_position("XPL", "LONG", 100).value
        await _settle()
        assert [p.symbol for p in phone.positions] == ["XPL"]

        phone.update_stop_loss(pos.id, 90)
        await _settle()
        assert laptop.get(pos.id).sl == 90
        assert laptop_sync.local_version == phone_sync.local_version

        await laptop_sync.stop()
        await phone_sync.stop()
