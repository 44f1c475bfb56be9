"""API router initialization."""

# Hey future me, this is the API router aggregator. It gets mounted at /api in main.py,
# so the poll endpoints end up at /api/poll and /api/poll/status.

from fastapi import APIRouter

from swapify.api.routers import poll

api_router = APIRouter()
api_router.include_router(poll.router, prefix="/poll", tags=["Poll"])

__all__ = ["api_router"]
