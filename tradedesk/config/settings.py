"""Application settings: config YAML files merged with .env overrides via Pydantic Settings."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
_CONFIG_DIR = _PROJECT_ROOT / "config"


def _load_yaml(profile: str = "default") -> dict[str, Any]:
    """Load and merge YAML config files.

    Loads ``default.yaml`` first, then overlays the requested profile.
    """
    base: dict[str, Any] = {}
    default_path = _CONFIG_DIR / "default.yaml"
    if default_path.exists():
        with open(default_path) as f:
            base = yaml.safe_load(f) or {}

    if profile != "default":
        overlay_path = _CONFIG_DIR / f"{profile}.yaml"
        if overlay_path.exists():
            with open(overlay_path) as f:
                overlay = yaml.safe_load(f) or {}
            base = _deep_merge(base, overlay)
    return base


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge *override* into *base* (override wins)."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


# ---------------------------------------------------------------------------
# Sub-models
# ---------------------------------------------------------------------------

class StrategySettings(BaseSettings):
    """The 45/40/15 futures capital strategy.

    ``sl_offset`` is the stop-loss distance from entry as a fraction
    (0.05 → LONG stop at ``entry * 0.95``, SHORT stop at ``entry * 1.05``).
    The older calculator used 0.07; set it here to reproduce that.
    """

    initial_ratio: float = 0.45
    dca_ratio: float = 0.40
    emergency_ratio: float = 0.15
    per_trade_initial_ratio: float = 0.045
    per_trade_dca1_ratio: float = 0.024
    per_trade_dca2_ratio: float = 0.016

    sl_offset: float = 0.05
    dca1_offset: float = 0.03
    dca2_offset: float = 0.06
    tp_close_percents: list[float] = [40.0, 30.0, 30.0]

    default_leverage: int = 10
    max_leverage: int = 100
    fee_rate_percent: float = 0.05
    default_wallet: float = 906.3


class TakeProfitRule(BaseModel):
    percent: float
    sell_percent: float


class DCARule(BaseModel):
    percent: float
    capital_percent: float


class AssetRuleSettings(BaseSettings):
    """Long-term holding rules: take-profit ladder, DCA ladder and alerts."""

    initial_capital: float = 10000.0
    take_profit: list[TakeProfitRule] = [
        TakeProfitRule(percent=50, sell_percent=20),
        TakeProfitRule(percent=100, sell_percent=20),
        TakeProfitRule(percent=200, sell_percent=20),
        TakeProfitRule(percent=300, sell_percent=20),
    ]
    dca: list[DCARule] = [
        DCARule(percent=-10, capital_percent=15),
        DCARule(percent=-20, capital_percent=20),
        DCARule(percent=-30, capital_percent=25),
        DCARule(percent=-40, capital_percent=40),
    ]
    rebalance_threshold: float = 40.0
    high_gain_thresholds: list[float] = [50.0, 100.0, 200.0]
    high_loss_threshold: float = 20.0


class SpotSettings(BaseSettings):
    default_wallet: float = 1000.0
    fee_rate_percent: float = 0.1


class SyncSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TRADEDESK_SYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    debounce_seconds: float = 1.0
    remote_url: str = ""
    user_id: str = ""
    api_token: str = ""
    poll_interval_seconds: float = 5.0
    request_timeout_seconds: float = 10.0


class FeedSettings(BaseSettings):
    exchange: str = "binance"
    quote: str = "USDT"
    reconnect_delay_seconds: float = 3.0


class DatabaseSettings(BaseSettings):
    path: str = "data/tradedesk.db"


class LoggingSettings(BaseSettings):
    level: str = "INFO"
    format: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


# ---------------------------------------------------------------------------
# Root settings
# ---------------------------------------------------------------------------

class Settings(BaseSettings):
    """Top-level application settings.

    Build order:
    1. Load ``config/default.yaml``
    2. Overlay profile YAML (e.g. ``conservative.yaml``)
    3. Override with environment variables / ``.env``
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    strategy: StrategySettings = Field(default_factory=StrategySettings)
    assets: AssetRuleSettings = Field(default_factory=AssetRuleSettings)
    spot: SpotSettings = Field(default_factory=SpotSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    feed: FeedSettings = Field(default_factory=FeedSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def load_settings(profile: str = "default") -> Settings:
    """Create a ``Settings`` instance from YAML + env vars.

    Parameters
    ----------
    profile:
        Config profile name (maps to ``config/<profile>.yaml``).
        Use ``"conservative"`` for the legacy 7% stop-loss ladder.
    """
    yaml_data = _load_yaml(profile)

    return Settings(
        strategy=StrategySettings(**(yaml_data.get("strategy", {}))),
        assets=AssetRuleSettings(**(yaml_data.get("assets", {}))),
        spot=SpotSettings(**(yaml_data.get("spot", {}))),
        sync=SyncSettings(**(yaml_data.get("sync", {}))),
        feed=FeedSettings(**(yaml_data.get("feed", {}))),
        database=DatabaseSettings(**(yaml_data.get("database", {}))),
        logging=LoggingSettings(**(yaml_data.get("logging", {}))),
    )
