"""FastAPI application entry point and lifespan management.

Configures CORS, resolves the image storage root, builds the process-wide
generation services (deduplicator, asset cache, durable writer,
orchestrator), mounts the API routers and the ``/images`` static files, and
manages the application lifespan (logging, table creation, HTTP client
shutdown).
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from citybingo.config import Settings, get_settings
from citybingo.database import SessionLocal, create_tables
from citybingo.api.v1.router import router as v1_router
from citybingo.api.v1.websocket import router as ws_router
from citybingo.services.asset_cache import AssetCache, StorageRoot, resolve_storage_root
from citybingo.services.deduplicator import RequestDeduplicator
from citybingo.services.durable_writer import DurableWriter
from citybingo.services.openai_client import OpenAIGenerator
from citybingo.services.orchestrator import GenerationOrchestrator
from citybingo.services.reference_store import SqlReferenceStore
from citybingo.services.retry import BackoffPolicy


def _setup_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # Suppress noisy third-party HTTP loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def build_services(app: FastAPI, settings: Settings, root: StorageRoot) -> None:
    """Create the shared generation services and attach them to ``app.state``."""
    assets = AssetCache(
        root,
        public_prefix=settings.IMAGE_PUBLIC_PREFIX,
        fetch_timeout=settings.IMAGE_FETCH_TIMEOUT_SECONDS,
        user_agent=settings.IMAGE_FETCH_USER_AGENT,
    )
    writer = DurableWriter(
        SqlReferenceStore(SessionLocal),
        policy=BackoffPolicy(
            max_attempts=settings.PERSIST_MAX_ATTEMPTS,
            base_delay=settings.PERSIST_BASE_DELAY_SECONDS,
        ),
    )
    generator = OpenAIGenerator(settings)

    app.state.storage_root = root
    app.state.asset_cache = assets
    app.state.generator = generator
    app.state.deduplicator = RequestDeduplicator(stale_after_seconds=settings.DEDUP_STALE_SECONDS)
    app.state.orchestrator = GenerationOrchestrator(generator, assets, writer)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Runs on startup: configure logging and create DB tables."""
    settings = get_settings()
    _setup_logging(settings.LOG_LEVEL)
    log = logging.getLogger(__name__)

    # Ensure DB directory exists
    db_path = settings.DATABASE_URL.replace("sqlite:///", "")
    if db_path and db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    create_tables()
    log.info("Database tables ready")

    root = app.state.storage_root
    log.info("Serving images from %s%s", root.path, " (fallback)" if root.is_fallback else "")

    yield  # Application runs here

    # Graceful shutdown: close shared HTTP clients
    from citybingo.services.http_client_manager import close_all_clients
    await close_all_clients()
    log.info("Shutting down")


def create_app(settings: Settings | None = None, storage_root: StorageRoot | None = None) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logging.getLogger(__name__).exception(f"Unhandled error: {exc}")
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "detail": str(exc)},
        )

    # Health check
    @app.get("/health", tags=["Health"])
    async def health():
        from datetime import datetime, timezone
        return {
            "status": "healthy",
            "version": settings.APP_VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "imageRoot": str(app.state.storage_root.path),
            "inFlight": len(app.state.deduplicator),
        }

    # Storage root is fixed for the process lifetime
    root = storage_root or resolve_storage_root(settings.image_path, settings.image_fallback_path)
    build_services(app, settings, root)

    # Mount API routes and generated images
    app.include_router(v1_router)
    app.include_router(ws_router, tags=["WebSocket"])
    app.mount(settings.IMAGE_PUBLIC_PREFIX, StaticFiles(directory=str(root.path)), name="images")

    return app


app = create_app()
