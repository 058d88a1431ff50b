"""WebSocket endpoint for real-time batch progress updates."""
from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from citybingo.config import get_settings
from citybingo.services.progress_tracker import channel_for

router = APIRouter()
logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("completed", "failed")


@router.websocket("/ws/batches/{task_id}")
async def batch_progress_ws(websocket: WebSocket, task_id: str):
    """Streams batch progress in real-time.

    Subscribes to the Redis pub/sub channel ``batch:{task_id}`` and forwards
    messages to the connected WebSocket client until the batch finishes.
    """
    await websocket.accept()

    settings = get_settings()
    channel = channel_for(task_id)
    try:
        import redis.asyncio as aioredis

        r = aioredis.from_url(settings.REDIS_URL)
        pubsub = r.pubsub()
        await pubsub.subscribe(channel)

        try:
            while True:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message and message["type"] == "message":
                    data = message["data"]
                    if isinstance(data, bytes):
                        data = data.decode("utf-8")
                    await websocket.send_text(data)

                    # Close after the final message
                    try:
                        parsed = json.loads(data)
                        if parsed.get("status") in TERMINAL_STATUSES:
                            await asyncio.sleep(0.5)
                            break
                    except json.JSONDecodeError:
                        pass
                else:
                    # Heartbeat to detect disconnection
                    try:
                        await websocket.send_text(json.dumps({"heartbeat": True}))
                    except (WebSocketDisconnect, RuntimeError):
                        break
                    await asyncio.sleep(1)

        except WebSocketDisconnect:
            logger.info("WebSocket disconnected for batch %s", task_id)
        finally:
            await pubsub.unsubscribe(channel)
            await r.close()

    except Exception as e:
        logger.error("WebSocket error for batch %s: %s", task_id, e)
    finally:
        try:
            await websocket.close()
        except RuntimeError:
            pass
