"""FastAPI application factory — entry point for the billing service."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from guestify.config import get_settings
from guestify.routers import billing, webhooks
from guestify.services.stripe_gateway import StripeGateway
from guestify.utils import setup_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    # Auto-create tables for SQLite (dev mode); PostgreSQL uses Alembic
    from guestify.db.session import engine
    from guestify.models import Base

    settings = get_settings()
    if settings.database_url.startswith("sqlite"):
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    # One Stripe client per process, injected into routes via get_stripe
    app.state.stripe = StripeGateway.from_settings(settings)
    logger.info(f"{settings.app_name} started")

    yield

    await engine.dispose()


def create_app() -> FastAPI:
    settings = get_settings()
    setup_logging(verbose=settings.debug)

    app = FastAPI(
        title=settings.app_name,
        debug=settings.debug,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url=None,
    )
    app.state.settings = settings

    # --- Routers ---
    app.include_router(webhooks.router)
    app.include_router(billing.router)

    @app.get("/health", include_in_schema=False)
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
