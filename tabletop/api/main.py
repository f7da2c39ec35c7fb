"""
tabletop.api.main — FastAPI application entry point
=====================================================

Run with::

    uvicorn tabletop.api.main:app --reload --port 8000

or ``python -m tabletop``.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from tabletop.api.auth import router as auth_router  # noqa: E402
from tabletop.api.deps import get_config, get_engine  # noqa: E402
from tabletop.api.routes.assistant import router as assistant_router  # noqa: E402
from tabletop.api.routes.bgg import router as bgg_router  # noqa: E402
from tabletop.api.routes.games import router as games_router  # noqa: E402
from tabletop.api.routes.preferences import router as preferences_router  # noqa: E402
from tabletop.api.routes.rules import router as rules_router  # noqa: E402
from tabletop.database.engine import init_db  # noqa: E402
from tabletop.errors import TabletopError  # noqa: E402
from tabletop.services import storage_service  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env with safe defaults.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — tables, blob directory, DB engine."""
    cfg = get_config()
    if not os.getenv("TABLETOP_STORAGE_DIR"):
        storage_service.set_storage_dir(cfg.storage_dir)
    storage_service.ensure_storage_dir()

    engine = get_engine()
    init_db(engine)
    logger.info("Tabletop API started — engine ready (%s)", engine.url.database)
    yield
    logger.info("Tabletop API shutting down")


app = FastAPI(
    title="Tabletop API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(TabletopError)
async def tabletop_error_handler(request: Request, exc: TabletopError) -> JSONResponse:
    """Render domain errors as ``{"error", "timestamp"}`` with the class's status."""
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "timestamp": datetime.now(UTC).isoformat()},
    )


# Mount routers
app.include_router(auth_router, prefix="/api")
app.include_router(games_router, prefix="/api")
app.include_router(rules_router, prefix="/api")
app.include_router(bgg_router, prefix="/api")
app.include_router(assistant_router, prefix="/api")
app.include_router(preferences_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}
