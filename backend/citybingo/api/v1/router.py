"""Aggregate API v1 router: mounts all sub-routers."""
from fastapi import APIRouter
from citybingo.api.v1 import bingo, generation, image_proxy

router = APIRouter(prefix="/api/v1")

router.include_router(generation.router, tags=["Generation"])
router.include_router(bingo.router, tags=["Bingo State"])
router.include_router(image_proxy.router, tags=["Images"])
