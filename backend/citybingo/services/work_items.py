"""WorkItem (one image generation job) and its deduplication key."""
from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Any


def generation_key(city_id: str, item_id: str | None, item_text: str | None = None) -> str:
    """``city:item``, or a synthetic text-derived id when there is no item id."""
    if item_id:
        return f"{city_id}:{item_id}"
    digest = hashlib.sha1((item_text or "").strip().lower().encode("utf-8")).hexdigest()[:12]
    return f"{city_id}:text-{digest}"


@dataclass(frozen=True)
class WorkItem:
    city_id: str
    item_text: str
    item_id: str | None = None
    description: str | None = None
    style_hints: Any = None
    city_name: str | None = None

    @property
    def key(self) -> str:
        return generation_key(self.city_id, self.item_id, self.item_text)

    @property
    def is_text_only(self) -> bool:
        return not self.item_id

    @property
    def storage_item_id(self) -> str:
        """Item id used for file naming (synthetic for text-only requests)."""
        return self.item_id or self.key.split(":", 1)[1]

    def generation_context(self) -> dict[str, Any]:
        return {
            "city_id": self.city_id,
            "city_name": self.city_name or self.city_id,
            "description": self.description,
            "style_hints": self.style_hints,
        }
