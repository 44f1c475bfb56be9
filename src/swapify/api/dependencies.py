"""FastAPI dependencies."""

import logging
import secrets

from fastapi import Depends, Header, HTTPException, Request

from swapify.application.workers.poll_worker import PollWorker
from swapify.config import Settings, get_settings

logger = logging.getLogger(__name__)


def get_app_settings(request: Request) -> Settings:
    """Settings the app was created with (falls back to the cached env settings)."""
    return getattr(request.app.state, "settings", None) or get_settings()


def get_poll_worker(request: Request) -> PollWorker:
    """Get the poll worker from app state.

    Raises:
        HTTPException: 503 if the worker is not initialized
    """
    worker = getattr(request.app.state, "poll_worker", None)
    if worker is None:
        raise HTTPException(status_code=503, detail="Poll worker not initialized")
    return worker


# Hey future me - the poll trigger is meant for an external cron. The secret comes in the
# X-Poll-Secret header and is compared in constant time. No secret configured means the
# endpoint is CLOSED, not open.
async def verify_poll_secret(
    x_poll_secret: str | None = Header(None),
    settings: Settings = Depends(get_app_settings),
) -> None:
    """Reject the request unless X-Poll-Secret matches POLL_SECRET."""
    expected = settings.poll.secret
    if not expected or not x_poll_secret:
        raise HTTPException(status_code=401, detail="Unauthorized")
    if not secrets.compare_digest(x_poll_secret.encode(), expected.encode()):
        logger.warning("poll.trigger.bad_secret")
        raise HTTPException(status_code=401, detail="Unauthorized")
