"""Result type returned by every book mutation."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class OpError(str, Enum):
    """Why a mutation did not change the book."""

    MISSING_SYMBOL = "MISSING_SYMBOL"
    INVALID_PRICE = "INVALID_PRICE"
    INVALID_QUANTITY = "INVALID_QUANTITY"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INVALID_LEVEL = "INVALID_LEVEL"
    INVALID_LEVERAGE = "INVALID_LEVERAGE"
    INVALID_DIRECTION = "INVALID_DIRECTION"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    UNKNOWN_POSITION = "UNKNOWN_POSITION"
    UNKNOWN_ASSET = "UNKNOWN_ASSET"
    UNKNOWN_TRADE = "UNKNOWN_TRADE"
    ALREADY_APPLIED = "ALREADY_APPLIED"


@dataclass(frozen=True)
class OpResult:
    """Outcome of a mutation.

    ``ok`` is True only when the book changed. A rejected mutation carries
    an ``error`` code and a human-readable ``message`` for the caller to show.
    """

    ok: bool
    error: OpError | None = None
    message: str = ""
    value: Any = None

    @classmethod
    def success(cls, value: Any = None) -> "OpResult":
        return cls(ok=True, value=value)

    @classmethod
    def fail(cls, error: OpError, message: str = "") -> "OpResult":
        return cls(ok=False, error=error, message=message or error.value)

    @classmethod
    def noop(cls, message: str = "") -> "OpResult":
        """Routine re-dispatch of an already applied one-shot action."""
        return cls(ok=False, error=OpError.ALREADY_APPLIED, message=message)

    def __bool__(self) -> bool:
        return self.ok
