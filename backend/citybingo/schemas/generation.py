"""Image generation, batch, and bingo state request/response schemas."""
from typing import Any
from pydantic import Field, model_validator
from citybingo.schemas.common import BatchMode, CamelModel, PacingKind


# ── Single generation ──────────────────────────────────────────────────

class GenerateImageRequest(CamelModel):
    """One image generation request; needs an item id or item text."""
    city_id: str = Field(min_length=1)
    item_id: str | None = None
    item_text: str | None = None
    description: str | None = None
    force_new: bool = False
    style_hints: Any = None
    client_id: str | None = None

    @model_validator(mode="after")
    def _require_item(self):
        if not (self.item_id or (self.item_text and self.item_text.strip())):
            raise ValueError("Either itemId or itemText is required")
        return self


class GenerateImageResponse(CamelModel):
    success: bool
    image_url: str | None = None
    public_ref: str | None = None
    error: str | None = None
    error_code: str | None = None
    duplicate: bool | None = None
    in_progress: bool | None = None
    elapsed_ms: int | None = None
    message: str | None = None


class InFlightRecordResponse(CamelModel):
    key: str
    started_at: float
    elapsed_ms: int


# ── Batches ────────────────────────────────────────────────────────────

class PacingConfig(CamelModel):
    kind: PacingKind = PacingKind.FIXED_BATCH
    group_size: int | None = Field(default=None, ge=1, le=25)
    inter_batch_delay: float | None = Field(default=None, ge=0, le=120)
    spacing: float | None = Field(default=None, ge=0, le=120)


class BatchRequest(CamelModel):
    city_id: str = Field(min_length=1)
    client_id: str | None = None
    mode: BatchMode = BatchMode.ALL
    policy: PacingConfig = Field(default_factory=PacingConfig)


class BatchStartResponse(CamelModel):
    task_id: str
    city_id: str
    mode: BatchMode
    message: str


# ── Bingo state ────────────────────────────────────────────────────────

class ToggleItemRequest(CamelModel):
    item_id: str
    city_id: str
    client_id: str
    forced_state: bool | None = None
    client_timestamp: int | None = Field(default=None, ge=0)


class ToggleItemResponse(CamelModel):
    success: bool = True
    completed: bool
    applied: bool


class ResetCityRequest(CamelModel):
    city_id: str
    client_id: str


class DescriptionsRequest(CamelModel):
    city_id: str


class GenerateItemsRequest(CamelModel):
    city_id: str
    theme: str | None = None


class GeneratedItem(CamelModel):
    id: str
    text: str
    completed: bool = False
    description: str = ""


class GenerateItemsResponse(CamelModel):
    success: bool = True
    items: list[GeneratedItem]
    message: str
