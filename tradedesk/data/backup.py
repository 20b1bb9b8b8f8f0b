"""Manual backup and restore of whole book snapshots as JSON files."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

from tradedesk.config.constants import ChangeOrigin

if TYPE_CHECKING:
    from tradedesk.core.book import Book

logger = logging.getLogger(__name__)


def export_snapshot(book: "Book", last_updated: int = 0) -> dict[str, Any]:
    """The book as a plain JSON-compatible document."""
    return book.to_document(last_updated)


def import_snapshot(book: "Book", document: Any) -> None:
    """Replace the book with *document*.

    Missing optional fields get their documented defaults. The import is a
    local edit, so a running sync coordinator pushes it to the remote.
    """
    book.replace_from_document(document, ChangeOrigin.LOCAL)


def write_backup(path: str | Path, document: dict[str, Any]) -> Path:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    with open(target, "w", encoding="utf-8") as f:
        json.dump(document, f, indent=2)
    logger.info("Wrote backup to %s", target)
    return target


def read_backup(path: str | Path) -> dict[str, Any]:
    """Load a backup file; raises ``ValueError`` if it is not a JSON object."""
    with open(path, encoding="utf-8") as f:
        document = json.load(f)
    if not isinstance(document, dict):
        raise ValueError(f"{path} does not contain a JSON object")
    return document
