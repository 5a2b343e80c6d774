"""
tally.api.main — FastAPI application entry point
==================================================

Run with::

    uvicorn tally.api.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from tally.api.deps import get_services  # noqa: E402
from tally.api.routes.admin import router as admin_router  # noqa: E402
from tally.api.routes.members import router as members_router  # noqa: E402
from tally.api.routes.webhooks import router as webhooks_router  # noqa: E402
from tally.engine.outcomes import Rejection  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Allowed CORS origins from ``CORS_ALLOW_ORIGINS`` (comma-separated)."""
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]
    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — build the service bundle once."""
    services = get_services()
    logger.info("Tally API started — engine ready (%s)", services.engine.url.database)
    yield
    logger.info("Tally API shutting down")


app = FastAPI(
    title="Tally Ledger API",
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


@app.exception_handler(Rejection)
async def rejection_handler(request: Request, exc: Rejection) -> JSONResponse:
    """Typed policy refusals become 4xx bodies ``{"error", "detail", ...}``."""
    return JSONResponse(status_code=exc.status, content=exc.to_dict())


# Mount routers
app.include_router(members_router, prefix="/api")
app.include_router(admin_router, prefix="/api")
app.include_router(webhooks_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}
