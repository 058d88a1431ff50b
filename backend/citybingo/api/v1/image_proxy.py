"""Image proxy for upstream image URLs that expire after a short window."""
from __future__ import annotations

import logging

import httpx
from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import Response

from citybingo.config import get_settings
from citybingo.services.asset_cache import is_expiring_url
from citybingo.services.http_client_manager import get_http_client

router = APIRouter()
logger = logging.getLogger(__name__)

CACHE_CONTROL = "public, max-age=86400"


@router.get("/image-proxy")
async def image_proxy(url: str = Query(..., min_length=1)):
    """Fetch an expiring remote image and relay it with a 24h cache header.

    Only hosts listed in ``EXPIRING_IMAGE_HOSTS`` are proxied.
    """
    settings = get_settings()
    if not is_expiring_url(url, settings.expiring_hosts_list):
        raise HTTPException(status_code=400, detail="URL host is not allowed for proxying")

    try:
        resp = await get_http_client("images").get(url)
    except httpx.TimeoutException:
        logger.warning("Image proxy timed out fetching %s", url[:60])
        raise HTTPException(status_code=504, detail="Upstream image request timed out")
    except httpx.HTTPError as e:
        logger.warning("Image proxy failed fetching %s: %s", url[:60], e)
        raise HTTPException(status_code=502, detail=f"Failed to fetch image: {type(e).__name__}")

    if resp.status_code != 200:
        logger.warning("Image proxy upstream returned %d for %s", resp.status_code, url[:60])
        raise HTTPException(status_code=resp.status_code, detail=f"Upstream returned {resp.status_code}")

    return Response(
        content=resp.content,
        media_type=resp.headers.get("content-type", "image/png"),
        headers={"Cache-Control": CACHE_CONTROL},
    )
