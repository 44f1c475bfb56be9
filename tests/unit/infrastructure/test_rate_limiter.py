"""Tests for the process-wide Spotify call budget."""

import threading

import pytest

from swapify.domain.exceptions import BudgetExceededError
from swapify.config.settings import SpotifySettings
from swapify.infrastructure.rate_limiter import (
    CallBudget,
    CallBudgetConfig,
    configure_spotify_budget,
    get_spotify_budget,
    reset_spotify_budget,
)


class FakeClock:
    """Monotonic clock that only moves when sleep() is awaited or advance() is called."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def make_budget(clock: FakeClock, max_calls: int = 3, window: float = 10.0) -> CallBudget:
    return CallBudget(
        config=CallBudgetConfig(max_calls=max_calls, window_seconds=window),
        clock=clock,
        sleep=clock.sleep,
    )


class TestTryConsume:
    """Non-blocking admission."""

    def test_admits_until_ceiling(self, clock: FakeClock) -> None:
        budget = make_budget(clock, max_calls=3)
        assert [budget.try_consume() for _ in range(4)] == [True, True, True, False]
        assert budget.calls_in_window == 3
        assert budget.remaining == 0

    def test_window_rolls_over(self, clock: FakeClock) -> None:
        budget = make_budget(clock, max_calls=2, window=10.0)
        assert budget.try_consume()
        clock.advance(5)
        assert budget.try_consume()
        assert not budget.try_consume()

        # first call leaves the window at t=10, second one is still inside
        clock.advance(5)
        assert budget.calls_in_window == 1
        assert budget.try_consume()
        assert not budget.try_consume()

    def test_cost_counts_multiple_calls(self, clock: FakeClock) -> None:
        budget = make_budget(clock, max_calls=5)
        assert budget.try_consume(cost=4)
        assert not budget.try_consume(cost=2)
        assert budget.try_consume(cost=1)

    @pytest.mark.parametrize("cost", [0, -1, 6])
    def test_rejects_impossible_cost(self, clock: FakeClock, cost: int) -> None:
        budget = make_budget(clock, max_calls=5)
        with pytest.raises(ValueError):
            budget.try_consume(cost=cost)

    def test_invalid_config_rejected(self, clock: FakeClock) -> None:
        with pytest.raises(ValueError):
            make_budget(clock, max_calls=0)

    def test_approaching_budget_flag(self, clock: FakeClock) -> None:
        budget = make_budget(clock, max_calls=10)
        for _ in range(7):
            budget.try_consume()
        assert not budget.is_approaching_budget
        budget.try_consume()
        assert budget.is_approaching_budget

    def test_ceiling_never_exceeded_in_any_window(self, clock: FakeClock) -> None:
        """Hammer the budget every 0.5s for a minute; no window ever holds more than max."""
        budget = make_budget(clock, max_calls=4, window=10.0)
        admitted: list[float] = []
        for _ in range(120):
            if budget.try_consume():
                admitted.append(clock.now)
            clock.advance(0.5)

        for start in admitted:
            in_window = [t for t in admitted if start <= t < start + 10.0]
            assert len(in_window) <= 4
        assert len(admitted) > 4

    def test_thread_safe_under_contention(self) -> None:
        budget = CallBudget(config=CallBudgetConfig(max_calls=300, window_seconds=3600))
        admitted = []
        lock = threading.Lock()

        def worker() -> None:
            count = sum(1 for _ in range(50) if budget.try_consume())
            with lock:
                admitted.append(count)

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(admitted) == 300
        assert budget.calls_in_window == 300


class TestWaitForBudget:
    """Blocking admission with a deadline."""

    async def test_returns_immediately_with_room(self, clock: FakeClock) -> None:
        budget = make_budget(clock)
        await budget.wait_for_budget(max_wait_seconds=5)
        assert clock.sleeps == []
        assert budget.calls_in_window == 1

    async def test_waits_until_capacity_frees(self, clock: FakeClock) -> None:
        budget = make_budget(clock, max_calls=2, window=10.0)
        budget.try_consume()
        budget.try_consume()

        await budget.wait_for_budget(max_wait_seconds=15)

        assert clock.now == pytest.approx(10.0)
        assert budget.calls_in_window == 1
        assert all(s <= budget.config.poll_interval_seconds for s in clock.sleeps)

    async def test_raises_when_wait_cannot_fit(self, clock: FakeClock) -> None:
        budget = make_budget(clock, max_calls=1, window=10.0)
        budget.try_consume()

        with pytest.raises(BudgetExceededError) as exc_info:
            await budget.wait_for_budget(max_wait_seconds=5)

        assert exc_info.value.max_calls == 1
        assert exc_info.value.calls_in_window == 1
        assert clock.sleeps == []

    async def test_zero_wait_fails_fast(self, clock: FakeClock) -> None:
        budget = make_budget(clock, max_calls=1)
        budget.try_consume()
        with pytest.raises(BudgetExceededError):
            await budget.wait_for_budget(max_wait_seconds=0)

    async def test_uses_configured_default_wait(self, clock: FakeClock) -> None:
        budget = CallBudget(
            config=CallBudgetConfig(
                max_calls=1, window_seconds=10.0, default_max_wait_seconds=20.0
            ),
            clock=clock,
            sleep=clock.sleep,
        )
        budget.try_consume()
        await budget.wait_for_budget()
        assert clock.now == pytest.approx(10.0)


class TestRateLimitCooldown:
    """429 handling."""

    def test_cooldown_blocks_admission(self, clock: FakeClock) -> None:
        budget = make_budget(clock)
        budget.note_rate_limited(retry_after=5)

        assert budget.is_rate_limited
        assert not budget.try_consume()

        clock.advance(5)
        assert not budget.is_rate_limited
        assert budget.try_consume()

    def test_cooldown_defaults_to_window(self, clock: FakeClock) -> None:
        budget = make_budget(clock, window=10.0)
        budget.note_rate_limited(None)
        clock.advance(9.9)
        assert budget.is_rate_limited
        clock.advance(0.2)
        assert not budget.is_rate_limited

    async def test_wait_longer_than_deadline_raises(self, clock: FakeClock) -> None:
        budget = make_budget(clock)
        budget.note_rate_limited(retry_after=60)
        with pytest.raises(BudgetExceededError):
            await budget.wait_for_budget(max_wait_seconds=10)

    async def test_short_cooldown_is_waited_out(self, clock: FakeClock) -> None:
        budget = make_budget(clock)
        budget.note_rate_limited(retry_after=2)
        await budget.wait_for_budget(max_wait_seconds=10)
        assert clock.now >= 2


class TestSweep:
    """Background pruning."""

    def test_sweep_drops_expired(self, clock: FakeClock) -> None:
        budget = make_budget(clock, max_calls=3, window=10.0)
        budget.try_consume()
        budget.try_consume()
        clock.advance(11)
        assert budget.sweep() == 2
        assert budget.sweep() == 0

    async def test_sweeper_start_stop_idempotent(self, clock: FakeClock) -> None:
        budget = make_budget(clock)
        budget.start_sweeper()
        budget.start_sweeper()
        await budget.stop_sweeper()
        await budget.stop_sweeper()

    def test_stats(self, clock: FakeClock) -> None:
        budget = make_budget(clock, max_calls=3)
        budget.try_consume()
        stats = budget.get_stats()
        assert stats["calls_in_window"] == 1
        assert stats["max_calls"] == 3
        assert stats["rate_limited"] is False


class TestSpotifyBudgetSingleton:
    """One budget per process, sized from the settings it was configured with."""

    @pytest.fixture(autouse=True)
    def _fresh_singleton(self):
        reset_spotify_budget()
        yield
        reset_spotify_budget()

    def test_configure_uses_explicit_settings(self) -> None:
        budget = configure_spotify_budget(
            SpotifySettings(api_call_budget=7, budget_window_seconds=12, budget_max_wait_seconds=3)
        )

        assert get_spotify_budget() is budget
        assert budget.config.max_calls == 7
        assert budget.config.window_seconds == 12
        assert budget.config.default_max_wait_seconds == 3

    def test_configure_replaces_an_earlier_budget(self) -> None:
        first = configure_spotify_budget(SpotifySettings(api_call_budget=7))
        second = configure_spotify_budget(SpotifySettings(dev_mode=True))

        assert second is not first
        assert get_spotify_budget().config.max_calls == 50
