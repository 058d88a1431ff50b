"""HTTP client for the bingo API, used by background batch runs.

The batch scheduler does not share memory with the API server: it submits
generation requests over HTTP exactly like the browser does and reads the
duplicate flag from the response.
"""
from __future__ import annotations

import logging
from typing import Any

import httpx

from citybingo.services.asset_cache import PLACEHOLDER_MARKER
from citybingo.services.batch_scheduler import JobOutcome
from citybingo.services.retry import BackoffPolicy, RetryExhausted, retry_with_backoff
from citybingo.services.work_items import WorkItem

logger = logging.getLogger(__name__)


class BingoApiError(Exception):
    pass


class BingoApiClient:

    def __init__(
        self,
        base_url: str,
        client_id: str = "batch-user",
        http_client: httpx.AsyncClient | None = None,
        force_new: bool = True,
    ):
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.force_new = force_new
        self._http = http_client
        self.state: dict[str, Any] = {}

    def _client(self) -> httpx.AsyncClient:
        if self._http is not None:
            return self._http
        from citybingo.services.http_client_manager import get_http_client
        return get_http_client("bingo-api")

    # ── State ──────────────────────────────────────────────────────────

    async def refresh_state(self) -> dict[str, Any]:
        resp = await self._client().get(
            f"{self.base_url}/api/v1/bingo-state", params={"clientId": self.client_id},
        )
        resp.raise_for_status()
        self.state = resp.json()
        return self.state

    async def city_work_items(self, city_id: str, only_missing: bool = False) -> list[WorkItem]:
        """Build WorkItems for a city's items (optionally only those without a usable image)."""
        state = self.state or await self.refresh_state()
        city = (state.get("cities") or {}).get(city_id)
        if city is None:
            raise BingoApiError(f"City {city_id} not found")

        items = []
        for entry in city.get("items", []):
            if entry.get("isCenterSpace"):
                continue
            image = entry.get("image") or ""
            if only_missing and image and PLACEHOLDER_MARKER not in image:
                continue
            items.append(
                WorkItem(
                    city_id=city_id,
                    item_id=entry["id"],
                    item_text=entry.get("text", ""),
                    description=entry.get("description") or None,
                    style_hints=city.get("styleGuide") or None,
                    city_name=city.get("title") or city_id,
                )
            )
        return items

    # ── Generation ─────────────────────────────────────────────────────

    async def submit(self, item: WorkItem) -> JobOutcome:
        """POST one generation request and classify the response."""
        body = {
            "cityId": item.city_id,
            "itemId": item.item_id,
            "itemText": item.item_text,
            "description": item.description,
            "clientId": self.client_id,
            "forceNew": self.force_new,
            "styleHints": item.style_hints,
        }
        resp = await self._client().post(f"{self.base_url}/api/v1/generate-image", json=body)
        if resp.status_code >= 400:
            raise BingoApiError(f"HTTP {resp.status_code}: {resp.text[:200]}")
        try:
            data = resp.json()
        except ValueError as e:
            raise BingoApiError("Invalid server response") from e

        if data.get("success"):
            if not data.get("imageUrl"):
                raise BingoApiError("No image URL returned from server")
            return JobOutcome.SUCCESS
        if data.get("duplicate") or data.get("inProgress"):
            logger.info("Item %s is already being processed: %s", item.key, data.get("message"))
            return JobOutcome.DUPLICATE
        logger.warning("Generation failed for %s: %s", item.key, data.get("error"))
        return JobOutcome.FAILURE

    async def submit_with_retry(self, item: WorkItem, policy: BackoffPolicy | None = None) -> JobOutcome:
        """Retry failures (not duplicates) with backoff; used for repair runs."""
        policy = policy or BackoffPolicy(max_attempts=4, base_delay=1.0)

        async def _attempt(attempt: int) -> JobOutcome:
            outcome = await self.submit(item)
            if outcome is JobOutcome.FAILURE:
                raise BingoApiError(f"Generation failed for {item.key}")
            return outcome

        try:
            return await retry_with_backoff(
                _attempt, policy, retry_on=(BingoApiError, httpx.HTTPError), label=f"repair {item.key}",
            )
        except RetryExhausted:
            return JobOutcome.FAILURE

    async def update_city_metadata(self, city_id: str) -> None:
        try:
            resp = await self._client().post(
                f"{self.base_url}/api/v1/cities/{city_id}/metadata",
            )
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Could not refresh metadata for %s: %s", city_id, e)
