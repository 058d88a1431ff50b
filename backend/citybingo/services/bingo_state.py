"""Bingo state read/write: per-client completions, city reset, descriptions, metadata.

Usage:
    service = BingoStateService(db, assets=cache, expiring_hosts=settings.expiring_hosts_list)
    state = service.get_state("client-abc")
    service.toggle_item("nyc-1", "nyc", "client-abc", forced_state=True)

Completion state lives in ``user_completions`` and never touches
``bingo_items.image``, so toggles and image regeneration do not race on the
same column. A toggle carrying ``client_timestamp`` (epoch milliseconds) is
ignored when the stored completion was written by a later toggle.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from citybingo.models import BingoItem, City, ClientUser, UserCompletion
from citybingo.services.asset_cache import (
    DEFAULT_EXPIRING_HOSTS,
    PLACEHOLDER_MARKER,
    AssetCache,
    rewrite_for_display,
)
from citybingo.services.batch_scheduler import ClientBatchScheduler, FixedBatchPolicy, JobOutcome
from citybingo.services.errors import ReferenceNotFound
from citybingo.services.work_items import WorkItem

logger = logging.getLogger(__name__)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _from_epoch_ms(ms: int | float | None) -> datetime | None:
    if ms is None:
        return None
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)


class BingoStateService:
    """Reads and mutates bingo state for one request's DB session."""

    def __init__(
        self,
        db: Session,
        assets: AssetCache | None = None,
        expiring_hosts: list[str] | tuple[str, ...] = DEFAULT_EXPIRING_HOSTS,
    ):
        self.db = db
        self.assets = assets
        self.expiring_hosts = expiring_hosts

    # ── Clients ────────────────────────────────────────────────────────

    def get_or_create_client(self, client_id: str) -> ClientUser:
        user = self.db.query(ClientUser).filter(ClientUser.client_id == client_id).first()
        if user is None:
            user = ClientUser(client_id=client_id)
            self.db.add(user)
            self.db.commit()
            self.db.refresh(user)
            logger.info("Registered new client %s (user %d)", client_id[:8], user.id)
        return user

    def _current_city(self, user: ClientUser) -> str:
        if user.current_city:
            return user.current_city
        city = (
            self.db.query(City).filter(City.is_default_city.is_(True)).first()
            or self.db.query(City).order_by(City.created_at).first()
        )
        if city is None:
            return ""
        user.current_city = city.id
        self.db.commit()
        return city.id

    # ── State ──────────────────────────────────────────────────────────

    def get_state(self, client_id: str | None) -> dict[str, Any]:
        """Full state for *client_id*: every city with this client's completions."""
        if not client_id:
            return {"currentCity": "", "cities": {}}

        user = self.get_or_create_client(client_id)
        user.last_visited_at = datetime.now(timezone.utc)
        current_city = self._current_city(user)
        self.db.commit()

        completions = {
            c.item_id: c
            for c in self.db.query(UserCompletion).filter(UserCompletion.user_id == user.id).all()
        }

        cities: dict[str, Any] = {}
        for city in self.db.query(City).order_by(City.created_at).all():
            cities[city.id] = self._serialize_city(city, completions)

        logger.debug("Loaded %d cities for client %s", len(cities), client_id[:8])
        return {"currentCity": current_city, "cities": cities}

    def _serialize_city(self, city: City, completions: dict[str, UserCompletion]) -> dict[str, Any]:
        items = sorted(city.items, key=lambda i: (i.grid_row is None, i.grid_row or 0, i.grid_col or 0, i.id))
        return {
            "id": city.id,
            "title": city.title,
            "subtitle": city.subtitle or "",
            "styleGuide": city.style_guide,
            "items": [self._serialize_item(item, completions.get(item.id)) for item in items],
            "itemCount": city.item_count,
            "itemsWithDescriptions": city.items_with_descriptions,
            "itemsWithImages": city.items_with_images,
            "itemsWithValidImageFiles": city.items_with_valid_image_files,
            "lastMetadataUpdate": city.last_metadata_update.isoformat() if city.last_metadata_update else None,
        }

    def _serialize_item(self, item: BingoItem, completion: UserCompletion | None) -> dict[str, Any]:
        data = {
            "id": item.id,
            "cityId": item.city_id,
            "text": item.text,
            "completed": bool(completion and completion.completed),
            "userPhoto": completion.user_photo if completion else None,
            "isCenterSpace": item.is_center_space,
            "image": rewrite_for_display(item.image, self.expiring_hosts),
            "description": item.description,
            "gridRow": item.grid_row,
            "gridCol": item.grid_col,
        }
        if item.is_center_space:
            data["gridRow"], data["gridCol"] = 2, 2
        return data

    def get_item(self, item_id: str, city_id: str | None = None) -> BingoItem:
        item = self.db.get(BingoItem, item_id)
        if item is None or (city_id and item.city_id != city_id):
            raise ReferenceNotFound(f"Item {item_id} not found in city {city_id or '?'}")
        return item

    def get_city(self, city_id: str) -> City:
        city = self.db.get(City, city_id)
        if city is None:
            raise ReferenceNotFound(f"City {city_id} not found")
        return city

    # ── Completions ────────────────────────────────────────────────────

    def toggle_item(
        self,
        item_id: str,
        city_id: str,
        client_id: str,
        forced_state: bool | None = None,
        client_timestamp: int | float | None = None,
    ) -> dict[str, Any]:
        """Flip (or force) an item's completion for one client.

        Returns ``{"completed": bool, "applied": bool}``; ``applied`` is False
        when a later toggle already wrote this completion.
        """
        self.get_item(item_id, city_id)
        user = self.get_or_create_client(client_id)
        toggled_at = _from_epoch_ms(client_timestamp) or datetime.now(timezone.utc)

        completion = (
            self.db.query(UserCompletion)
            .filter(UserCompletion.user_id == user.id, UserCompletion.item_id == item_id)
            .first()
        )

        if completion is not None and client_timestamp is not None:
            last = _as_utc(completion.updated_at)
            if last is not None and last > toggled_at:
                logger.info(
                    "Ignoring out-of-order toggle of %s for client %s (%s < %s)",
                    item_id, client_id[:8], toggled_at.isoformat(), last.isoformat(),
                )
                return {"completed": bool(completion.completed), "applied": False}

        current = bool(completion and completion.completed)
        new_state = forced_state if forced_state is not None else not current

        if completion is None:
            completion = UserCompletion(user_id=user.id, item_id=item_id)
            self.db.add(completion)
        completion.completed = new_state
        completion.completed_at = toggled_at if new_state else None
        completion.updated_at = toggled_at
        self.db.commit()

        logger.info("Item %s completion -> %s for client %s", item_id, new_state, client_id[:8])
        return {"completed": new_state, "applied": True}

    def reset_city(self, city_id: str, client_id: str) -> int:
        """Delete this client's completions for every item in *city_id*."""
        self.get_city(city_id)
        user = self.get_or_create_client(client_id)
        item_ids = [i for (i,) in self.db.query(BingoItem.id).filter(BingoItem.city_id == city_id).all()]
        if not item_ids:
            return 0
        removed = (
            self.db.query(UserCompletion)
            .filter(UserCompletion.user_id == user.id, UserCompletion.item_id.in_(item_ids))
            .delete(synchronize_session=False)
        )
        self.db.commit()
        logger.info("Reset %d completions in %s for client %s", removed, city_id, client_id[:8])
        return removed

    # ── Metadata ───────────────────────────────────────────────────────

    def _has_usable_image(self, ref: str | None) -> bool:
        if not ref or PLACEHOLDER_MARKER in ref:
            return False
        if self.assets is not None and self.assets.local_path_for(ref) is not None:
            return self.assets.has_valid_file(ref)
        return True

    def update_city_metadata(self, city_id: str) -> dict[str, Any]:
        """Recount items, descriptions, and images (checking local files on disk)."""
        city = self.get_city(city_id)
        items = list(city.items)
        city.item_count = len(items)
        city.items_with_descriptions = sum(1 for i in items if i.description)
        city.items_with_images = sum(1 for i in items if i.image)
        city.items_with_valid_image_files = sum(1 for i in items if self._has_usable_image(i.image))
        city.last_metadata_update = datetime.now(timezone.utc)
        self.db.commit()

        logger.info(
            "Metadata %s: items=%d descriptions=%d images=%d valid files=%d",
            city.id, city.item_count, city.items_with_descriptions,
            city.items_with_images, city.items_with_valid_image_files,
        )
        return {
            "cityId": city.id,
            "itemCount": city.item_count,
            "itemsWithDescriptions": city.items_with_descriptions,
            "itemsWithImages": city.items_with_images,
            "itemsWithValidImageFiles": city.items_with_valid_image_files,
            "lastMetadataUpdate": city.last_metadata_update.isoformat(),
        }

    # ── Descriptions ───────────────────────────────────────────────────

    async def generate_descriptions(
        self,
        city_id: str,
        generator: Any,
        policy: FixedBatchPolicy | None = None,
        scheduler: ClientBatchScheduler | None = None,
    ) -> dict[str, str]:
        """Generate a description for every item in *city_id*, paced in batches."""
        city = self.get_city(city_id)
        items = [
            WorkItem(city_id=city.id, item_id=i.id, item_text=i.text, city_name=city.title)
            for i in city.items
            if not i.is_center_space
        ]
        descriptions: dict[str, str] = {}

        async def _describe(item: WorkItem) -> JobOutcome:
            descriptions[item.item_id] = await generator.generate_description(item.item_text, city.title)
            return JobOutcome.SUCCESS

        scheduler = scheduler or ClientBatchScheduler()
        outcome = await scheduler.run_batch(items, _describe, policy or FixedBatchPolicy(5, 1.0))

        for item in city.items:
            if item.id in descriptions:
                item.description = descriptions[item.id]
        self.db.commit()
        logger.info(
            "Generated %d descriptions for %s (%d failed)",
            len(descriptions), city.id, outcome.failure_count,
        )
        return descriptions
