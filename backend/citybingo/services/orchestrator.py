"""Runs one image generation job end-to-end.

generate → store locally → persist reference. A job is only successful
when the image is on disk *and* its reference is verified in the durable
store; every other outcome is returned as a typed ``GenerationError``.
The orchestrator does not deduplicate or time out; callers do both.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Protocol

from citybingo.services.asset_cache import AssetCache
from citybingo.services.durable_writer import DurableWriter
from citybingo.services.errors import (
    EmptyResult,
    GenerationError,
    UpstreamGenerationError,
)
from citybingo.services.work_items import WorkItem

logger = logging.getLogger(__name__)


class ImageGenerator(Protocol):
    async def generate_image(self, text: str, context: dict[str, Any] | None = None) -> str | None: ...


@dataclass(frozen=True)
class GenerationResult:
    ok: bool
    key: str
    public_ref: str | None = None
    error: GenerationError | None = None
    reused: bool = False
    superseded: bool = False
    byte_size: int = 0

    @classmethod
    def failure(cls, key: str, error: GenerationError) -> "GenerationResult":
        return cls(ok=False, key=key, error=error)


class GenerationOrchestrator:

    def __init__(self, generator: ImageGenerator, assets: AssetCache, writer: DurableWriter):
        self.generator = generator
        self.assets = assets
        self.writer = writer

    async def generate(
        self,
        item: WorkItem,
        force_new: bool = False,
        started_at: float | None = None,
    ) -> GenerationResult:
        started_at = time.time() if started_at is None else started_at
        key = item.key

        try:
            if not force_new:
                existing = await asyncio.to_thread(
                    self.assets.lookup, item.city_id, item.storage_item_id, item.item_text,
                )
                if existing:
                    logger.info("Reusing stored image for %s: %s", key, existing)
                    return await self._persist(item, existing, started_at, reused=True)

            raw = await self._call_generator(item)
            if not raw:
                raise EmptyResult(f'Generator returned no image for "{item.item_text}"')

            artifact = await self.assets.store(
                raw, item.city_id, item.storage_item_id, item.item_text, force_new=force_new,
            )
            return await self._persist(
                item, artifact.public_ref, started_at,
                reused=artifact.reused, byte_size=artifact.byte_size,
            )
        except GenerationError as e:
            logger.error("Generation failed for %s [%s]: %s", key, e.code, e.message)
            return GenerationResult.failure(key, e)

    async def _call_generator(self, item: WorkItem) -> str | None:
        try:
            return await self.generator.generate_image(item.item_text, item.generation_context())
        except GenerationError:
            raise
        except Exception as e:
            # Rate limits and transport errors from the collaborator are ordinary failures
            raise UpstreamGenerationError(
                f"Image generation failed: {type(e).__name__}", detail=str(e),
            ) from e

    async def _persist(
        self,
        item: WorkItem,
        public_ref: str,
        started_at: float,
        reused: bool = False,
        byte_size: int = 0,
    ) -> GenerationResult:
        if item.is_text_only:
            logger.info("Text-only request %s: no durable row to update", item.key)
            return GenerationResult(ok=True, key=item.key, public_ref=public_ref, reused=reused, byte_size=byte_size)

        outcome = await self.writer.persist(item.item_id, public_ref, started_at=started_at)
        if outcome.superseded:
            # A newer job owns the row; report the reference that is current
            public_ref = self.writer.intended(item.item_id) or public_ref
        return GenerationResult(
            ok=True,
            key=item.key,
            public_ref=public_ref,
            reused=reused,
            superseded=outcome.superseded,
            byte_size=byte_size,
        )
