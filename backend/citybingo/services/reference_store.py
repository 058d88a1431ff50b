"""Durable store for item artifact references (``bingo_items.image``).

The durable writer only needs ``read`` and ``write``; anything satisfying
``ReferenceStore`` works, which keeps the writer testable against fakes
that drop or delay writes.
"""
from __future__ import annotations

import logging
from typing import Callable, Protocol

from sqlalchemy.orm import Session

from citybingo.models import BingoItem
from citybingo.services.errors import ReferenceNotFound

logger = logging.getLogger(__name__)


class ReferenceStore(Protocol):
    def read(self, item_key: str) -> str | None: ...

    def write(self, item_key: str, ref: str) -> None: ...


class SqlReferenceStore:
    """Reads and writes ``BingoItem.image`` with a fresh session per call."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def read(self, item_key: str) -> str | None:
        db = self._session_factory()
        try:
            item = db.get(BingoItem, item_key)
            if item is None:
                raise ReferenceNotFound(f"Item {item_key} not found")
            return item.image
        finally:
            db.close()

    def write(self, item_key: str, ref: str) -> None:
        db = self._session_factory()
        try:
            item = db.get(BingoItem, item_key)
            if item is None:
                raise ReferenceNotFound(f"Item {item_key} not found")
            item.image = ref
            db.commit()
            logger.debug("Wrote image reference for %s: %s", item_key, ref[:60])
        except ReferenceNotFound:
            raise
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
