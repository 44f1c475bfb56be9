"""Poll trigger endpoints."""

from typing import Any

from fastapi import APIRouter, Depends

from swapify.api.dependencies import get_poll_worker, verify_poll_secret
from swapify.application.workers.poll_worker import PollWorker

router = APIRouter(dependencies=[Depends(verify_poll_secret)])


# Yo, this runs ONE cycle synchronously and returns the counters. If the timer loop is
# mid-cycle the call comes back right away with skipped=true (dropped, not queued).
@router.post("")
async def trigger_poll(worker: PollWorker = Depends(get_poll_worker)) -> dict[str, Any]:
    """Run one reconciliation cycle now."""
    result = await worker.run_cycle()
    return result.to_dict()


@router.get("/status")
async def poll_status(worker: PollWorker = Depends(get_poll_worker)) -> dict[str, Any]:
    """Worker status, last cycle counters and budget usage."""
    return worker.get_status()
