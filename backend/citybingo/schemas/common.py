"""Shared / common schemas: camelCase base model, enums, simple responses."""
from datetime import datetime
from enum import Enum
from pydantic import BaseModel
from pydantic.alias_generators import to_camel


# ── Base ───────────────────────────────────────────────────────────────

class CamelModel(BaseModel):
    """Request/response bodies use camelCase on the wire, snake_case in Python."""

    model_config = {"alias_generator": to_camel, "populate_by_name": True}


# ── Enums ──────────────────────────────────────────────────────────────

class BatchMode(str, Enum):
    ALL = "all"
    MISSING = "missing"


class PacingKind(str, Enum):
    FIXED_BATCH = "fixed_batch"
    FIXED_SPACING = "fixed_spacing"


# ── Common Responses ───────────────────────────────────────────────────

class MessageResponse(BaseModel):
    success: bool = True
    message: str | None = None


class HealthResponse(BaseModel):
    status: str
    version: str
    timestamp: datetime
