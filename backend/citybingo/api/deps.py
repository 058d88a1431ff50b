"""Shared FastAPI dependencies for the process-wide generation services.

The deduplicator, asset cache, durable writer, and orchestrator are built
once in ``create_app`` and stored on ``app.state``; request handlers reach
them through these dependencies so tests can override any of them.
"""
from __future__ import annotations

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from citybingo.database import get_db
from citybingo.services.asset_cache import AssetCache
from citybingo.services.bingo_state import BingoStateService
from citybingo.services.deduplicator import RequestDeduplicator
from citybingo.services.openai_client import OpenAIGenerator
from citybingo.services.orchestrator import GenerationOrchestrator
from citybingo.config import get_settings


def get_deduplicator(request: Request) -> RequestDeduplicator:
    return request.app.state.deduplicator


def get_asset_cache(request: Request) -> AssetCache:
    return request.app.state.asset_cache


def get_orchestrator(request: Request) -> GenerationOrchestrator:
    return request.app.state.orchestrator


def get_generator(request: Request) -> OpenAIGenerator:
    return request.app.state.generator


def get_bingo_service(
    db: Session = Depends(get_db),
    assets: AssetCache = Depends(get_asset_cache),
) -> BingoStateService:
    """Bingo state service bound to the request's DB session."""
    return BingoStateService(db, assets=assets, expiring_hosts=get_settings().expiring_hosts_list)
