import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import SnapshotSettings
from .db import init_db
from .errors import register_error_handlers
from .observability.logging import bind_request_id, setup_logging
from .observability.metrics import metrics_endpoint, request_metrics_middleware
from .observability.sentry import init_sentry
from .routers import snapshot_view, snapshots, status, storage
from .snapshots import SnapshotService
from .storage import ObjectStore


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    init_db()
    yield


def create_app(
    settings: Optional[SnapshotSettings] = None,
    store: Optional[ObjectStore] = None,
) -> FastAPI:
    tags_metadata = [
        {"name": "status", "description": "Service and database health"},
        {"name": "snapshots", "description": "Bookmark page snapshots"},
        {"name": "settings", "description": "Storage usage and limits"},
        {"name": "v1", "description": "Versioned API endpoints"},
    ]
    app = FastAPI(title="Marksnap API", version="0.1.0", openapi_tags=tags_metadata, lifespan=lifespan)

    resolved = settings or SnapshotSettings.from_env()
    app.state.snapshot_settings = resolved
    app.state.snapshot_service = SnapshotService(resolved, store)
    app.state.object_store = app.state.snapshot_service.store
    logger.info("Snapshot storage backend: %s", resolved.storage_backend)

    register_error_handlers(app)
    setup_logging()
    init_sentry(app)

    # CORS from environment configuration
    origins = os.getenv("CORS_ALLOW_ORIGINS", "*")
    allow_origins = [o.strip() for o in origins.split(",") if o.strip()]
    allow_credentials = os.getenv("CORS_ALLOW_CREDENTIALS", "0") in ("1", "true", "TRUE")
    allow_methods = os.getenv("CORS_ALLOW_METHODS", "*")
    allow_headers = os.getenv("CORS_ALLOW_HEADERS", "*")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_credentials=allow_credentials,
        allow_methods=[m.strip() for m in allow_methods.split(",")],
        allow_headers=[h.strip() for h in allow_headers.split(",")],
    )
    app.middleware("http")(request_metrics_middleware)

    @app.middleware("http")
    async def add_request_id(request, call_next):
        rid = request.headers.get("X-Request-Id")
        rid = bind_request_id(rid)
        response = await call_next(request)
        response.headers["X-Request-Id"] = rid
        return response

    app.include_router(status.router)
    app.include_router(snapshots.router)
    app.include_router(snapshot_view.router)
    app.include_router(storage.router)
    app.add_api_route("/metrics", metrics_endpoint, include_in_schema=False)

    return app
