"""Health check endpoints for application monitoring."""

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from swapify.config import Settings

logger = logging.getLogger(__name__)


def register_health_endpoints(app: FastAPI, settings: Settings) -> None:
    """Register /health (liveness) and /ready (database + worker) on the app."""

    # Hey, this is the BASIC health check - no DB, no Spotify. Keep it lightweight!
    @app.get("/health", tags=["Health"], summary="Basic health check")
    async def health_check() -> dict[str, Any]:
        return {"status": "healthy", "app_name": settings.app_name}

    @app.get("/ready", tags=["Health"], summary="Readiness check")
    async def readiness_check(request: Request) -> JSONResponse:
        checks: dict[str, Any] = {}
        healthy = True

        db = getattr(request.app.state, "db", None)
        if db is None:
            checks["database"] = {"status": "unavailable"}
            healthy = False
        else:
            try:
                async with db.session_scope() as session:
                    await session.execute(text("SELECT 1"))
                checks["database"] = {"status": "healthy", **db.get_pool_stats()}
            except Exception as e:
                logger.warning("health.database.failed", extra={"error": str(e)})
                checks["database"] = {"status": "unhealthy", "error": str(e)}
                healthy = False

        worker = getattr(request.app.state, "poll_worker", None)
        checks["poll_worker"] = {
            "status": "running" if worker is not None and worker.is_running else "stopped",
        }

        return JSONResponse(
            status_code=200 if healthy else 503,
            content={"status": "ready" if healthy else "not_ready", "checks": checks},
        )
