"""Common plumbing for the three position books."""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable

from tradedesk.config.constants import ChangeOrigin

logger = logging.getLogger(__name__)

Listener = Callable[["Book", ChangeOrigin], None]


def now_ms() -> int:
    """Wall-clock milliseconds, the unit of every ``lastUpdated`` stamp."""
    return int(time.time() * 1000)


class Book(ABC):
    """An owned, injectable collection of records with a mutation API.

    Subclasses mutate their state only inside their own operations and call
    ``_notify()`` once a mutation has been fully applied. Listeners (the
    sync coordinator, the live price feed) learn about every change together
    with its origin and never mutate the state themselves.
    """

    namespace: str = ""

    def __init__(self, clock: Callable[[], int] | None = None) -> None:
        self._clock = clock or now_ms
        self._listeners: list[Listener] = []

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; returns a callable that removes it."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _notify(self, origin: ChangeOrigin = ChangeOrigin.LOCAL) -> None:
        for listener in list(self._listeners):
            try:
                listener(self, origin)
            except Exception:
                logger.exception("Book listener failed on %s change", origin.value)

    @abstractmethod
    def to_document(self, last_updated: int = 0) -> dict[str, Any]:
        """Serialize the whole book to its synced document shape."""

    @abstractmethod
    def _load_document(self, document: Any) -> None:
        """Replace all state from a document (tolerant of missing fields)."""

    @abstractmethod
    def _clear(self) -> None:
        """Return to the initial, empty state."""

    def replace_from_document(
        self,
        document: Any,
        origin: ChangeOrigin = ChangeOrigin.REMOTE,
    ) -> None:
        """Wholesale replace the book with a snapshot (no field merge)."""
        self._load_document(document)
        logger.info("%s book replaced from %s snapshot", self.namespace, origin.value)
        self._notify(origin)

    def reset(self) -> None:
        self._clear()
        self._notify(ChangeOrigin.RESET)
