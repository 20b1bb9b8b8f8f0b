"""Enums and constants used throughout the tracker."""

from enum import Enum


class Direction(str, Enum):
    """Side of a leveraged futures position."""

    LONG = "LONG"
    SHORT = "SHORT"


class LevelStatus(str, Enum):
    """Lifecycle of one rung of a DCA or take-profit ladder (one-shot)."""

    PENDING = "PENDING"
    EXECUTED = "EXECUTED"  # DCA filled
    CLOSED = "CLOSED"  # take-profit taken


class TradeAction(str, Enum):
    """Action recorded in the long-term trade log."""

    BUY = "BUY"
    SELL = "SELL"
    DCA = "DCA"


class AssetStatus(str, Enum):
    PROFIT = "PROFIT"
    LOSS = "LOSS"
    BREAKEVEN = "BREAKEVEN"


class TakeProfitStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"


class DCAStatus(str, Enum):
    WAITING = "WAITING"
    EXECUTED = "EXECUTED"


class AlertType(str, Enum):
    TP_REACHED = "TP_REACHED"
    DCA_ZONE = "DCA_ZONE"
    REBALANCE_NEEDED = "REBALANCE_NEEDED"
    HIGH_GAIN = "HIGH_GAIN"
    HIGH_LOSS = "HIGH_LOSS"
    RSI_SIGNAL = "RSI_SIGNAL"


class AlertSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class MarginBand(str, Enum):
    """Solvency bucket of the account margin level."""

    SAFE = "SAFE"  # >= 150%
    CAUTION = "CAUTION"  # >= 130%
    WARNING = "WARNING"  # >= 110%
    DANGER = "DANGER"


class SyncState(str, Enum):
    """Cloud sync status of one local session.

    ``SAVING`` marks an outbound write in flight; remote pushes that
    arrive while saving are echoes of that write and are ignored.
    """

    OFFLINE = "offline"
    SYNCING = "syncing"
    SAVING = "saving"
    SYNCED = "synced"
    ERROR = "error"


class ChangeOrigin(str, Enum):
    """Where a book mutation came from."""

    LOCAL = "local"
    REMOTE = "remote"
    RESET = "reset"


# Remote document namespaces
FUTURES_NAMESPACE = "futures"
SPOT_NAMESPACE = "spot"
POSITION_TRADING_NAMESPACE = "positionTrading"

# Price levels per ladder
DCA_LEVELS = (1, 2)
TP_LEVELS = (1, 2, 3)
