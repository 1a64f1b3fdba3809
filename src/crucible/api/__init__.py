"""FastAPI application factory for the ledger API."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import FastAPI

from crucible.api.middleware import setup_middleware
from crucible.api.routes import create_router

if TYPE_CHECKING:
    from crucible.ledger import ChallengeLedger


def create_app(ledger: "ChallengeLedger", allowed_origins: list[str] | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Crucible Challenge API",
        version="1.0.0",
        docs_url="/api/docs",
        redoc_url=None,
    )

    setup_middleware(app, allowed_origins)

    app.include_router(create_router(ledger), prefix="/api/v1")

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app
