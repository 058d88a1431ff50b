"""Image generation endpoints: single generate, in-flight listing, batch dispatch."""
from __future__ import annotations

import asyncio
import logging
import time

from fastapi import APIRouter, Depends, HTTPException

from citybingo.api.deps import get_bingo_service, get_deduplicator, get_orchestrator
from citybingo.config import get_settings
from citybingo.models import City
from citybingo.schemas.common import BatchMode
from citybingo.schemas.generation import (
    BatchRequest,
    BatchStartResponse,
    GenerateImageRequest,
    GenerateImageResponse,
    InFlightRecordResponse,
)
from citybingo.services.bingo_state import BingoStateService
from citybingo.services.deduplicator import RequestDeduplicator
from citybingo.services.errors import GenerationTimeout, ReferenceNotFound
from citybingo.services.orchestrator import GenerationOrchestrator, GenerationResult
from citybingo.services.work_items import WorkItem
from citybingo.tasks.batch import regenerate_city_images

router = APIRouter()
logger = logging.getLogger(__name__)


def _build_work_item(body: GenerateImageRequest, service: BingoStateService) -> WorkItem:
    """Fill text, description, and style from the stored item where the request omits them."""
    if body.item_id:
        try:
            row = service.get_item(body.item_id, body.city_id)
        except ReferenceNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        city = row.city
        return WorkItem(
            city_id=body.city_id,
            item_id=row.id,
            item_text=(body.item_text or row.text).strip(),
            description=body.description or row.description,
            style_hints=body.style_hints or city.style_guide,
            city_name=city.title,
        )

    city = service.db.get(City, body.city_id)
    return WorkItem(
        city_id=body.city_id,
        item_text=body.item_text.strip(),
        description=body.description,
        style_hints=body.style_hints or (city.style_guide if city else None),
        city_name=city.title if city else body.city_id,
    )


def _to_response(result: GenerationResult, started: float) -> GenerateImageResponse:
    elapsed_ms = int((time.monotonic() - started) * 1000)
    if result.ok:
        return GenerateImageResponse(
            success=True,
            image_url=result.public_ref,
            public_ref=result.public_ref,
            elapsed_ms=elapsed_ms,
        )
    return GenerateImageResponse(
        success=False,
        error=result.error.message,
        error_code=result.error.code,
        elapsed_ms=elapsed_ms,
    )


@router.post(
    "/generate-image",
    response_model=GenerateImageResponse,
    response_model_exclude_none=True,
)
async def generate_image(
    body: GenerateImageRequest,
    dedup: RequestDeduplicator = Depends(get_deduplicator),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    service: BingoStateService = Depends(get_bingo_service),
):
    """Generate (or reuse) the image for one item.

    A second request for an item that is already being generated returns
    immediately with ``duplicate=true``. Failures come back as HTTP 200 with
    ``success=false`` and a typed ``errorCode``.
    """
    item = _build_work_item(body, service)
    started = time.monotonic()

    decision = dedup.try_acquire(item.key)
    if decision.duplicate:
        logger.info("Rejected duplicate request for %s (%d ms in flight)", item.key, decision.elapsed_ms)
        return GenerateImageResponse(
            success=False,
            duplicate=True,
            in_progress=True,
            elapsed_ms=decision.elapsed_ms,
            error=f"Image for {item.key} is {decision.reason}",
            message=f"Image is {decision.reason} (started {decision.elapsed_ms / 1000:.0f}s ago)",
        )

    # The job outlives a request timeout; its record is released only when it ends
    job = asyncio.ensure_future(
        orchestrator.generate(item, force_new=body.force_new, started_at=decision.started_at)
    )
    job.add_done_callback(lambda _: dedup.release(item.key, started_at=decision.started_at))

    timeout = get_settings().GENERATION_TIMEOUT_SECONDS
    try:
        result = await asyncio.wait_for(asyncio.shield(job), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Generation for %s exceeded %.0fs; leaving it to finish in background", item.key, timeout)
        result = GenerationResult.failure(
            item.key, GenerationTimeout(f"Image generation took longer than {timeout:.0f}s"),
        )

    response = _to_response(result, started)
    if result.ok:
        logger.info("Generated image for %s in %d ms: %s", item.key, response.elapsed_ms, result.public_ref)
    return response


@router.get("/generation/in-flight", response_model=list[InFlightRecordResponse])
def list_in_flight(dedup: RequestDeduplicator = Depends(get_deduplicator)):
    """Jobs currently holding a generation key."""
    now = time.time()
    return [
        InFlightRecordResponse(
            key=record.key,
            started_at=record.started_at,
            elapsed_ms=int(max(0.0, now - record.started_at) * 1000),
        )
        for record in dedup.in_flight()
    ]


@router.post("/batches/images", response_model=BatchStartResponse, status_code=202)
def start_image_batch(body: BatchRequest, service: BingoStateService = Depends(get_bingo_service)):
    """Queue a background "regenerate all" or "fix missing" run for a city."""
    try:
        city = service.get_city(body.city_id)
    except ReferenceNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))

    celery_task = regenerate_city_images.delay(
        city.id,
        body.client_id,
        body.mode.value,
        body.policy.model_dump(mode="json"),
    )
    label = "Regenerate all images" if body.mode is BatchMode.ALL else "Fix missing images"
    return BatchStartResponse(
        task_id=celery_task.id,
        city_id=city.id,
        mode=body.mode,
        message=f"{label} queued for {city.title}",
    )
