"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from tradedesk.config.settings import Settings, StrategySettings, load_settings
from tradedesk.core.asset_book import AssetBook
from tradedesk.core.futures_book import FuturesBook
from tradedesk.core.spot_book import SpotBook
from tradedesk.data.database import Database
from tradedesk.data.migrations import run_migrations
from tradedesk.data.repository import LocalCache


class FakeClock:
    """Deterministic millisecond clock; each call advances by ``step``."""

    def __init__(self, start: int = 1_700_000_000_000, step: int = 1) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> int:
        value = self.now
        self.now += self.step
        return value


@pytest.fixture
def settings() -> Settings:
    """Load default settings for testing."""
    return load_settings("default")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def futures_book(clock) -> FuturesBook:
    """Futures book with a 1000 USDT wallet and the default 0.05% fee."""
    return FuturesBook(StrategySettings(), wallet=1000.0, fee_rate_percent=0.05, clock=clock)


@pytest.fixture
def spot_book(clock) -> SpotBook:
    return SpotBook(wallet=1000.0, fee_rate_percent=0.1, clock=clock)


@pytest.fixture
def asset_book(clock) -> AssetBook:
    return AssetBook(initial_capital=10000.0, clock=clock)


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    """Temporary database path for test isolation."""
    return str(tmp_path / "test_tradedesk.db")


@pytest.fixture
async def cache(db_path) -> LocalCache:
    """A snapshot cache on a migrated database."""
    await run_migrations(db_path)
    db = Database(db_path)
    await db.connect()
    cache = LocalCache(db)
    yield cache
    await db.disconnect()
