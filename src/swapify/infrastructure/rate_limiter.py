"""
Process-wide Spotify API call budget.

Hey future me – das ist die ZENTRALE Admission Control für ALLE Spotify Calls!
Spotify's limits are per app (not per user), so every per-user task in a poll cycle
shares ONE budget instance. Nobody calls Spotify without going through here.

ALGORITHMUS: Rolling Window
- We remember a monotonic timestamp per admitted call
- A call is admitted when (calls in the last window_seconds) + cost <= max_calls
- Timestamps older than the window are pruned inline on every check AND by a
  background sweeper task, so an idle process doesn't hold a stale deque

DEFAULTS:
- 300 calls / 30s (extended quota)
- 50 calls / 30s in dev mode (Spotify "development mode" apps get far less)

429 HANDLING:
- The Spotify client calls note_rate_limited(retry_after) on a 429
- Until the cooldown ends, try_consume refuses everything
- The poll cycle aborts anyway (RateLimitedError), the cooldown protects the NEXT cycle

USAGE:
    budget = get_spotify_budget()
    await budget.wait_for_budget(max_wait_seconds=10)  # raises BudgetExceededError
    response = await client.get(url)
"""

import asyncio
import contextlib
import logging
import threading
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from swapify.domain.exceptions import BudgetExceededError

if TYPE_CHECKING:
    from swapify.config.settings import SpotifySettings

logger = logging.getLogger(__name__)


@dataclass
class CallBudgetConfig:
    """Configuration for the rolling call budget.

    Hey future me – max_calls is a HARD ceiling inside any window_seconds span.
    warn_ratio only controls when we start logging warnings.
    """

    max_calls: int = 300
    window_seconds: float = 30.0
    warn_ratio: float = 0.8
    poll_interval_seconds: float = 1.0  # How often wait_for_budget re-checks
    default_max_wait_seconds: float = 10.0


@dataclass
class CallBudget:
    """Rolling-window call budget shared by every Spotify request.

    Attributes:
        config: Budget configuration
        clock: Monotonic clock (injectable for tests)
        sleep: Async sleep (injectable for tests)
        _calls: Timestamps of admitted calls, oldest first
        _lock: Guards _calls and the cooldown across concurrent callers
    """

    config: CallBudgetConfig = field(default_factory=CallBudgetConfig)
    clock: Callable[[], float] = time.monotonic
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    name: str = "spotify"

    # Internal state (not in __init__ signature)
    _calls: deque[float] = field(default_factory=deque, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False)
    _cooldown_until: float = field(default=0.0, init=False)
    _warned: bool = field(default=False, init=False)
    _sweeper_task: asyncio.Task[None] | None = field(default=None, init=False)

    def __post_init__(self) -> None:
        if self.config.max_calls < 1:
            raise ValueError("max_calls must be at least 1")
        if self.config.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

    @classmethod
    def for_spotify(
        cls,
        max_calls: int = 300,
        window_seconds: float = 30.0,
        max_wait_seconds: float = 10.0,
    ) -> "CallBudget":
        return cls(
            config=CallBudgetConfig(
                max_calls=max_calls,
                window_seconds=window_seconds,
                default_max_wait_seconds=max_wait_seconds,
            )
        )

    def _prune(self, now: float) -> None:
        """Drop timestamps that left the window. Caller holds the lock."""
        cutoff = now - self.config.window_seconds
        while self._calls and self._calls[0] <= cutoff:
            self._calls.popleft()

    def try_consume(self, cost: int = 1) -> bool:
        """Admit `cost` calls if the window has room. Never blocks."""
        if cost < 1:
            raise ValueError("cost must be at least 1")
        if cost > self.config.max_calls:
            raise ValueError(
                f"cost {cost} can never fit a budget of {self.config.max_calls}"
            )

        with self._lock:
            now = self.clock()
            if now < self._cooldown_until:
                return False
            self._prune(now)
            if len(self._calls) + cost > self.config.max_calls:
                return False
            self._calls.extend([now] * cost)
            used = len(self._calls)

        self._check_warning(used)
        return True

    def _check_warning(self, used: int) -> None:
        threshold = self.config.max_calls * self.config.warn_ratio
        if used >= threshold and not self._warned:
            self._warned = True
            logger.warning(
                "rate_budget.approaching_limit",
                extra={
                    "budget": self.name,
                    "calls_in_window": used,
                    "max_calls": self.config.max_calls,
                    "window_seconds": self.config.window_seconds,
                },
            )
        elif used < threshold:
            self._warned = False

    def _seconds_until_room(self, cost: int) -> float:
        """How long until `cost` calls could be admitted. Caller holds the lock."""
        now = self.clock()
        if now < self._cooldown_until:
            return self._cooldown_until - now
        self._prune(now)
        overflow = len(self._calls) + cost - self.config.max_calls
        if overflow <= 0:
            return 0.0
        # the overflow-th oldest call has to leave the window first
        release_at = self._calls[overflow - 1] + self.config.window_seconds
        return max(0.0, release_at - now)

    async def wait_for_budget(
        self, max_wait_seconds: float | None = None, cost: int = 1
    ) -> None:
        """Wait until the budget admits `cost` calls.

        Hey future me – this DOES consume on success! Don't call try_consume after it.

        Raises:
            BudgetExceededError: Budget still exhausted after max_wait_seconds, or
                the remaining wait (e.g. a 429 cooldown) can't fit into it.
        """
        if max_wait_seconds is None:
            max_wait_seconds = self.config.default_max_wait_seconds

        started = self.clock()
        while True:
            if self.try_consume(cost):
                return

            waited = self.clock() - started
            with self._lock:
                until_room = self._seconds_until_room(cost)
            remaining_wait = max_wait_seconds - waited
            if remaining_wait <= 0 or until_room > remaining_wait:
                calls = self.calls_in_window
                logger.warning(
                    "rate_budget.exhausted",
                    extra={
                        "budget": self.name,
                        "waited_seconds": round(waited, 2),
                        "calls_in_window": calls,
                        "max_calls": self.config.max_calls,
                    },
                )
                raise BudgetExceededError(
                    waited_seconds=waited,
                    calls_in_window=calls,
                    max_calls=self.config.max_calls,
                )

            await self.sleep(
                max(0.01, min(self.config.poll_interval_seconds, until_room, remaining_wait))
            )

    def note_rate_limited(self, retry_after: float | None = None) -> None:
        """Record a 429 from Spotify; refuse calls until the cooldown ends."""
        cooldown = retry_after if retry_after and retry_after > 0 else self.config.window_seconds
        with self._lock:
            self._cooldown_until = max(self._cooldown_until, self.clock() + cooldown)
        logger.warning(
            "rate_budget.cooldown_started",
            extra={"budget": self.name, "cooldown_seconds": cooldown},
        )

    @property
    def is_rate_limited(self) -> bool:
        """True while a 429 cooldown is active."""
        with self._lock:
            return self.clock() < self._cooldown_until

    @property
    def calls_in_window(self) -> int:
        with self._lock:
            self._prune(self.clock())
            return len(self._calls)

    @property
    def remaining(self) -> int:
        return max(0, self.config.max_calls - self.calls_in_window)

    @property
    def is_approaching_budget(self) -> bool:
        """True at or above warn_ratio (80%) of the window's ceiling."""
        return self.calls_in_window >= self.config.max_calls * self.config.warn_ratio

    def sweep(self) -> int:
        """Prune expired timestamps now. Returns how many were dropped."""
        with self._lock:
            before = len(self._calls)
            self._prune(self.clock())
            return before - len(self._calls)

    def start_sweeper(self) -> None:
        """Start the background pruning task (idempotent)."""
        if self._sweeper_task is not None and not self._sweeper_task.done():
            return
        self._sweeper_task = asyncio.create_task(self._sweep_loop())

    async def stop_sweeper(self) -> None:
        if self._sweeper_task is None:
            return
        self._sweeper_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._sweeper_task
        self._sweeper_task = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.window_seconds)
            dropped = self.sweep()
            if dropped:
                logger.debug(
                    "rate_budget.swept",
                    extra={"budget": self.name, "dropped": dropped},
                )

    def get_stats(self) -> dict[str, float | int | bool]:
        return {
            "calls_in_window": self.calls_in_window,
            "max_calls": self.config.max_calls,
            "window_seconds": self.config.window_seconds,
            "rate_limited": self.is_rate_limited,
        }


# Module-level budget (singleton pattern)
# Hey future me – one budget per process, shared by every SpotifyClient instance.
# The app lifespan installs it from the settings the app was created with; anything that
# asks before that gets one sized from the environment.
_spotify_budget: CallBudget | None = None


def _budget_from(spotify: "SpotifySettings") -> CallBudget:
    return CallBudget.for_spotify(
        max_calls=spotify.effective_call_budget,
        window_seconds=spotify.budget_window_seconds,
        max_wait_seconds=spotify.budget_max_wait_seconds,
    )


def configure_spotify_budget(spotify: "SpotifySettings") -> CallBudget:
    """Install a fresh singleton sized from explicit settings."""
    global _spotify_budget
    _spotify_budget = _budget_from(spotify)
    return _spotify_budget


def get_spotify_budget() -> CallBudget:
    """Get the singleton Spotify call budget, sized from env settings on first use."""
    global _spotify_budget
    if _spotify_budget is None:
        from swapify.config import get_settings

        _spotify_budget = _budget_from(get_settings().spotify)
    return _spotify_budget


def reset_spotify_budget() -> None:
    """Forget the singleton (tests, settings reload)."""
    global _spotify_budget
    _spotify_budget = None


__all__ = [
    "CallBudget",
    "CallBudgetConfig",
    "configure_spotify_budget",
    "get_spotify_budget",
    "reset_spotify_budget",
]
