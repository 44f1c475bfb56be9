"""FastAPI application factory."""

from fastapi import FastAPI

from swapify.api.health_checks import register_health_endpoints
from swapify.api.routers import api_router
from swapify.config import Settings, get_settings
from swapify.infrastructure.lifecycle import lifespan
from swapify.infrastructure.observability.middleware import RequestLoggingMiddleware


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()

    app = FastAPI(
        title="Swapify",
        description="Shared playlist reconciliation engine",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(api_router, prefix="/api")
    register_health_endpoints(app, settings)
    return app


app = create_app()
