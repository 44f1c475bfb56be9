"""Application lifecycle management for startup and shutdown tasks.

Startup order matters:
1. logging
2. SQLite path check + database (tables auto-created for SQLite only, Alembic otherwise)
3. Spotify call budget + its sweeper
4. notification dispatcher (log provider always, webhook when NOTIFY_WEBHOOK_URL is set)
5. poll worker (timer loop only when POLL_ENABLED)

Shutdown runs in reverse. Everything lives on app.state so routes can reach it.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import FastAPI

from swapify.application.services.notification_service import NotificationService
from swapify.application.workers.poll_worker import PollWorker
from swapify.config import Settings, get_settings
from swapify.domain.exceptions import ConfigurationError
from swapify.domain.ports import INotificationProvider
from swapify.infrastructure.integrations.spotify_client import SpotifyClient
from swapify.infrastructure.notifications import (
    LogNotificationProvider,
    WebhookNotificationProvider,
)
from swapify.infrastructure.observability import configure_logging
from swapify.infrastructure.persistence import Database, DatabaseCredentialProvider
from swapify.infrastructure.rate_limiter import configure_spotify_budget

logger = logging.getLogger(__name__)


# Hey future me, this validates SQLite paths BEFORE we try creating the DB engine! SQLite
# needs to create -journal/-wal files next to the .db file, so the parent directory must
# exist and be writable. Only runs for SQLite URLs.
def _validate_sqlite_path(settings: Settings) -> None:
    """Validate SQLite database path accessibility before engine creation."""
    db_path = settings._get_sqlite_db_path()
    if db_path is None:
        return

    try:
        if db_path.parent and str(db_path.parent) != ".":
            db_path.parent.mkdir(parents=True, exist_ok=True)
            logger.debug("Ensured SQLite parent directory exists: %s", db_path.parent)
    except OSError as exc:
        raise ConfigurationError(
            f"Unable to create SQLite database directory '{db_path.parent}': {exc}. "
            "Update DATABASE_URL or adjust directory permissions."
        ) from exc


def build_notification_service(settings: Settings) -> NotificationService:
    providers: list[INotificationProvider] = [LogNotificationProvider()]
    if settings.notifications.webhook_url:
        providers.append(WebhookNotificationProvider(settings.notifications))
    return NotificationService(
        providers,
        app_url=settings.app_url,
        queue_size=settings.notifications.queue_size,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    settings: Settings = getattr(app.state, "settings", None) or get_settings()

    configure_logging(
        log_level=settings.observability.level,
        json_format=settings.observability.json_format,
        app_name=settings.app_name,
    )
    logger.info("Starting application: %s", settings.app_name)

    poll_worker: PollWorker | None = None
    notifications: NotificationService | None = None
    spotify_client: SpotifyClient | None = None
    budget = None
    try:
        _validate_sqlite_path(settings)

        db = Database(settings)
        app.state.db = db
        if db.dialect_name == "sqlite":
            # Hey future me - convenience for single-file deployments. Postgres uses alembic.
            await db.create_tables()
        logger.info("Database initialized: %s", db.dialect_name)

        budget = configure_spotify_budget(settings.spotify)
        budget.start_sweeper()
        app.state.spotify_budget = budget

        notifications = build_notification_service(settings)
        await notifications.start()
        app.state.notifications = notifications

        spotify_client = SpotifyClient(settings.spotify, budget=budget)
        poll_worker = PollWorker(
            database=db,
            spotify=spotify_client,
            credentials=DatabaseCredentialProvider(db),
            notifications=notifications,
            settings=settings,
            budget=budget,
        )
        app.state.poll_worker = poll_worker
        app.state.startup_time = datetime.now(UTC)

        if settings.poll.enabled:
            await poll_worker.start()
        else:
            logger.info("poll_worker.disabled", extra={"reason": "POLL_ENABLED=false"})

        yield

    except Exception as e:
        logger.exception("Error during application startup: %s", e)
        raise
    finally:
        logger.info("Shutting down application")

        if poll_worker is not None:
            try:
                await poll_worker.stop()
            except Exception as e:
                logger.exception("Error stopping poll worker: %s", e)

        if notifications is not None:
            try:
                await notifications.stop()
            except Exception as e:
                logger.exception("Error stopping notification service: %s", e)

        if spotify_client is not None:
            await spotify_client.close()

        if budget is not None:
            await budget.stop_sweeper()

        db = getattr(app.state, "db", None)
        if db is not None:
            try:
                await db.close()
                logger.info("Database connection closed")
            except Exception as e:
                logger.exception("Error closing database: %s", e)
