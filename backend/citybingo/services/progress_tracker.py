"""Progress broadcasting for background batch runs.

Batch runs are not persisted, so progress only goes over Redis pub/sub on
``batch:{task_id}`` (consumed by the WebSocket endpoint). Redis being down
never fails a batch.
"""
from __future__ import annotations

import json
import logging
from typing import Any

import redis

logger = logging.getLogger(__name__)


def channel_for(task_id: str) -> str:
    return f"batch:{task_id}"


class ProgressTracker:
    """Single entry-point for progress reporting throughout a batch run."""

    def __init__(self, task_id: str, redis_url: str):
        self.task_id = task_id
        self._redis: redis.Redis | None = None
        self._redis_url = redis_url

    # ── Redis connection (lazy, tolerant of failure) ───────────────────

    @property
    def redis_client(self) -> redis.Redis | None:
        if self._redis is None:
            try:
                self._redis = redis.from_url(self._redis_url)
            except Exception:
                logger.warning("Could not connect to Redis for progress updates")
        return self._redis

    # ── Public API ─────────────────────────────────────────────────────

    def update(self, completed: int, total: int, stats: dict[str, Any], message: str = "") -> None:
        percentage = int(completed * 100 / total) if total else 100
        self._publish(message or f"{completed}/{total} items processed", percentage, "in_progress", stats)

    def finish_completed(self, result: dict[str, Any]) -> None:
        self._publish("Batch completed", 100, "completed", result, extra={"results": result})

    def finish_failed(self, error_msg: str) -> None:
        self._publish(f"Error: {error_msg}", 0, "failed", {})

    # ── Internal helpers ───────────────────────────────────────────────

    def _publish(
        self,
        message: str,
        percentage: int,
        status: str,
        stats: dict[str, Any],
        extra: dict | None = None,
    ) -> None:
        logger.info("Batch %s: %s (%d%%)", self.task_id[:8], message, percentage)
        try:
            rc = self.redis_client
            if rc:
                payload: dict[str, Any] = {
                    "task_id": self.task_id,
                    "percentage": percentage,
                    "message": message,
                    "status": status,
                    "stats": stats,
                }
                if extra:
                    payload.update(extra)
                rc.publish(channel_for(self.task_id), json.dumps(payload))
        except redis.RedisError as e:
            logger.debug("Progress publish failed: %s", e)
