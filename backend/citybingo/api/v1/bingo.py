"""Bingo state endpoints: state read, toggles, city reset, descriptions, items, metadata."""
from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, Query

from citybingo.api.deps import get_bingo_service, get_generator
from citybingo.config import get_settings
from citybingo.schemas.common import MessageResponse
from citybingo.schemas.generation import (
    DescriptionsRequest,
    GeneratedItem,
    GenerateItemsRequest,
    GenerateItemsResponse,
    ResetCityRequest,
    ToggleItemRequest,
    ToggleItemResponse,
)
from citybingo.services.batch_scheduler import FixedBatchPolicy
from citybingo.services.bingo_state import BingoStateService
from citybingo.services.errors import GenerationError, ReferenceNotFound
from citybingo.services.openai_client import OpenAIGenerator

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/bingo-state")
def get_bingo_state(
    client_id: str | None = Query(default=None, alias="clientId"),
    service: BingoStateService = Depends(get_bingo_service),
):
    """Every city with this client's completions; expiring image URLs are proxied."""
    return service.get_state(client_id)


@router.post("/toggle-item", response_model=ToggleItemResponse)
def toggle_item(body: ToggleItemRequest, service: BingoStateService = Depends(get_bingo_service)):
    try:
        result = service.toggle_item(
            body.item_id,
            body.city_id,
            body.client_id,
            forced_state=body.forced_state,
            client_timestamp=body.client_timestamp,
        )
    except ReferenceNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return ToggleItemResponse(**result)


@router.post("/reset-city", response_model=MessageResponse)
def reset_city(body: ResetCityRequest, service: BingoStateService = Depends(get_bingo_service)):
    try:
        removed = service.reset_city(body.city_id, body.client_id)
    except ReferenceNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return MessageResponse(message=f"Cleared {removed} completions")


@router.post("/generate-descriptions", response_model=MessageResponse)
async def generate_descriptions(
    body: DescriptionsRequest,
    service: BingoStateService = Depends(get_bingo_service),
    generator: OpenAIGenerator = Depends(get_generator),
):
    """Generate descriptions for every item in a city, five at a time."""
    settings = get_settings()
    policy = FixedBatchPolicy(settings.DESCRIPTION_BATCH_SIZE, settings.DESCRIPTION_BATCH_DELAY_SECONDS)
    try:
        city = service.get_city(body.city_id)
        descriptions = await service.generate_descriptions(city.id, generator, policy=policy)
    except ReferenceNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return MessageResponse(message=f"Generated descriptions for {len(descriptions)} items in {city.title}")


@router.post("/generate-items", response_model=GenerateItemsResponse)
async def generate_items(
    body: GenerateItemsRequest,
    service: BingoStateService = Depends(get_bingo_service),
    generator: OpenAIGenerator = Depends(get_generator),
):
    """Generate a fresh list of item texts for a city (not saved)."""
    try:
        city = service.get_city(body.city_id)
    except ReferenceNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))

    logger.info("Generating bingo items for %s with theme %r", city.id, body.theme)
    try:
        texts = await generator.generate_items(city.title, body.theme)
    except GenerationError as e:
        logger.error("Item generation failed for %s: %s", city.id, e)
        raise HTTPException(status_code=502, detail=e.to_dict())

    items = [GeneratedItem(id=f"{city.id}-{uuid.uuid4().hex[:8]}", text=text) for text in texts]
    return GenerateItemsResponse(items=items, message=f"Generated {len(items)} bingo items for {city.title}")


@router.post("/cities/{city_id}/metadata")
def update_city_metadata(city_id: str, service: BingoStateService = Depends(get_bingo_service)):
    """Recount a city's items, descriptions, and image files."""
    try:
        return service.update_city_metadata(city_id)
    except ReferenceNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
