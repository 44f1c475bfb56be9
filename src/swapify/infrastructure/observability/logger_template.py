"""Shared logger utilities.

Hey future me - this makes logging consistent across all modules!

USAGE:
    log_slow_operation(logger, "poll.cycle", duration_ms=4200, threshold_ms=30000)
    log_worker_health(logger, "poll", cycles_completed=10, errors_total=2, uptime_seconds=3600)
"""

import logging
from typing import Any


def log_worker_health(
    logger: logging.Logger,
    worker_name: str,
    cycles_completed: int,
    errors_total: int,
    uptime_seconds: float,
    extra_stats: dict[str, Any] | None = None,
) -> None:
    """Log worker health in one consistent shape. Call every N cycles."""
    log_data = {
        "worker": worker_name,
        "cycles_completed": cycles_completed,
        "errors_total": errors_total,
        "uptime_seconds": int(uptime_seconds),
    }
    if extra_stats:
        log_data.update(extra_stats)

    logger.info("worker.health", extra=log_data)


def log_slow_operation(
    logger: logging.Logger,
    operation: str,
    duration_ms: int,
    threshold_ms: int = 100,
    **context: Any,
) -> None:
    """Log a warning if an operation exceeded its threshold."""
    if duration_ms > threshold_ms:
        logger.warning(
            "operation.slow",
            extra={
                **context,
                "operation": operation,
                "duration_ms": duration_ms,
                "threshold_ms": threshold_ms,
            },
        )
