"""Worker system - background reconciliation loop."""

from swapify.application.workers.poll_worker import PollWorker

__all__ = ["PollWorker"]
