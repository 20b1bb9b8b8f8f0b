"""Snapshot version comparison.

The coordinator never compares timestamps itself; it asks a
``VersionPolicy`` whether an incoming snapshot should replace local state,
so last-writer-wins can later be swapped for a merging strategy.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


def document_version(document: Any) -> int:
    """The ``lastUpdated`` stamp of a document, or 0 when absent or malformed."""
    if not isinstance(document, dict):
        return 0
    value = document.get("lastUpdated")
    if isinstance(value, bool):
        return 0
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


class VersionPolicy(ABC):
    @abstractmethod
    def should_apply(self, local_version: int, remote_version: int) -> bool:
        """True when the remote snapshot must replace local state."""


class LastWriterWins(VersionPolicy):
    """Whole-document replacement iff the remote stamp is strictly newer."""

    def should_apply(self, local_version: int, remote_version: int) -> bool:
        return remote_version > local_version
