"""Celery tasks for background image batches.

Exposes ``regenerate_city_images``, which drives the ClientBatchScheduler
against the running API over HTTP ("regenerate all images" or "fix missing
images"). The scheduler is async, so each task runs it on a short-lived
event loop to bridge sync Celery with async service code.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from citybingo.celery_app import celery_app
from citybingo.client import BingoApiClient
from citybingo.config import Settings, get_settings
from citybingo.services.batch_scheduler import (
    BatchOutcome,
    ClientBatchScheduler,
    FixedBatchPolicy,
    FixedSpacingPolicy,
    JobOutcome,
    PacingPolicy,
)
from citybingo.services.progress_tracker import ProgressTracker
from citybingo.services.work_items import WorkItem

logger = logging.getLogger(__name__)


def build_policy(config: dict[str, Any] | None, settings: Settings) -> PacingPolicy:
    """Pacing policy from a request's ``policy`` block, with settings as defaults."""
    config = config or {}
    if config.get("kind") == "fixed_spacing":
        spacing = config.get("spacing")
        return FixedSpacingPolicy(spacing=settings.BATCH_SPACING_SECONDS if spacing is None else spacing)

    group_size = config.get("group_size")
    delay = config.get("inter_batch_delay")
    return FixedBatchPolicy(
        group_size=group_size or settings.BATCH_GROUP_SIZE,
        inter_batch_delay=settings.BATCH_INTER_DELAY_SECONDS if delay is None else delay,
    )


async def run_city_batch(
    client: BingoApiClient,
    city_id: str,
    mode: str,
    policy: PacingPolicy,
    tracker: ProgressTracker | None = None,
    refresh_every: int = 5,
) -> BatchOutcome:
    """Submit every (or every image-less) item of *city_id* through the scheduler."""
    only_missing = mode == "missing"
    await client.refresh_state()
    items = await client.city_work_items(city_id, only_missing=only_missing)
    logger.info("Batch for %s (%s): %d items", city_id, mode, len(items))

    stats = {"success": 0, "failure": 0, "duplicate": 0}

    async def _progress(completed: int, total: int, item: WorkItem, outcome: JobOutcome) -> None:
        stats[outcome.value] += 1
        if tracker is not None:
            tracker.update(completed, total, dict(stats), f"{item.item_text[:40]}: {outcome.value}")

    scheduler = ClientBatchScheduler(
        refresh=client.refresh_state,
        refresh_every=refresh_every,
        progress=_progress,
    )
    submit = client.submit_with_retry if only_missing else client.submit
    outcome = await scheduler.run_batch(items, submit, policy)

    await client.update_city_metadata(city_id)
    return outcome


@celery_app.task(bind=True, name="batch.regenerate_city_images")
def regenerate_city_images(self, city_id: str, client_id: str | None, mode: str, policy: dict | None = None):
    """Celery task that runs one city image batch.

    ``mode`` is ``"all"`` (force fresh images for every item) or
    ``"missing"`` (only items without a usable image; existing files are
    reused where possible).
    """
    settings = get_settings()
    tracker = ProgressTracker(self.request.id, settings.REDIS_URL)
    client = BingoApiClient(
        settings.API_BASE_URL,
        client_id=client_id or "batch-user",
        force_new=(mode == "all"),
    )

    # Run the async scheduler in a new event loop
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        outcome = loop.run_until_complete(
            run_city_batch(
                client, city_id, mode, build_policy(policy, settings),
                tracker=tracker, refresh_every=settings.BATCH_REFRESH_EVERY,
            )
        )
    except Exception as e:
        logger.exception("Batch task error for %s: %s", city_id, e)
        tracker.finish_failed(str(e))
        return {"error": f"Batch failed: {e}"}
    finally:
        from citybingo.services.http_client_manager import close_all_clients
        loop.run_until_complete(close_all_clients())
        loop.close()

    result = outcome.as_dict()
    tracker.finish_completed(result)
    return result
