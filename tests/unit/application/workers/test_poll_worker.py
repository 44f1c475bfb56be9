"""Unit tests for PollWorker - full cycles against SQLite + FakeSpotify.

Hey future me - every test drives run_cycle() directly with a fake clock and an
AsyncMock sleep, so nothing here ever waits on the real interval.
"""

from unittest.mock import AsyncMock

import pytest

from swapify.application.workers.poll_worker import PollWorker
from swapify.domain.entities import ReactionValue
from swapify.domain.exceptions import ExternalServiceError, RateLimitedError, TokenInvalidError
from swapify.domain.ports import NotificationType
from swapify.infrastructure.persistence.repositories import ListenRepository, ReactionRepository


@pytest.fixture
def sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def worker(database, spotify, credentials, notifications, settings, clock, sleep) -> PollWorker:
    return PollWorker(
        database,
        spotify,
        credentials,
        notifications,
        settings,
        clock=clock,
        sleep=sleep,
    )


@pytest.fixture
async def group(seed, spotify):
    """alice owns "Friday Mix", bob added t1, carol still has to hear it."""
    alice = await seed.user("alice")
    bob = await seed.user("bob")
    carol = await seed.user("carol")
    playlist_id = await seed.playlist(alice, [bob, carol])
    row = await seed.track(playlist_id, bob, "t1")
    spotify.add_remote("sp-friday", "t1", added_by="bob")
    return {"alice": alice, "bob": bob, "carol": carol, "playlist_id": playlist_id, "row": row}


class TestRunCycle:
    """One cycle end to end."""

    async def test_listen_is_recorded_once(self, worker, spotify, group, clock, database) -> None:
        spotify.play("token-alice", "t1", 20_000)
        first = await worker.run_cycle()
        assert first.users_polled == 3
        assert first.listens_recorded == 0
        assert first.playlists_synced == 1

        clock.advance(seconds=30)
        spotify.play("token-alice", "t1", 190_000)
        second = await worker.run_cycle()
        assert second.listens_recorded == 1
        # carol hasn't heard it yet
        assert second.tracks_removed == 0

        clock.advance(seconds=30)
        spotify.play("token-alice", "t1", 195_000)
        third = await worker.run_cycle()
        assert third.listens_recorded == 0
        assert third.tracks_removed == 0

        async with database.session_scope() as session:
            listened = await ListenRepository(session).user_ids_with_listens(
                group["playlist_id"], "t1"
            )
        assert listened == {group["alice"]}

    async def test_skip_records_auto_thumbs_down(self, worker, spotify, group, clock, database) -> None:
        spotify.play("token-alice", "t1", 40_000)
        await worker.run_cycle()

        clock.advance(seconds=30)
        spotify.play("token-alice", "t2", 5_000)
        result = await worker.run_cycle()

        assert result.skips_detected == 1
        assert result.listens_recorded == 0
        async with database.session_scope() as session:
            reaction = await ReactionRepository(session).get(
                group["playlist_id"], "t1", group["alice"]
            )
        assert reaction.reaction == ReactionValue.THUMBS_DOWN
        assert reaction.is_auto is True

    async def test_last_listener_completes_and_removes(
        self, worker, spotify, seed, group, clock, notifications
    ) -> None:
        await seed.listen(group["playlist_id"], "t1", group["carol"])
        spotify.play("token-alice", "t1", 20_000)
        await worker.run_cycle()

        clock.advance(seconds=30)
        spotify.play("token-alice", "t1", 190_000)
        result = await worker.run_cycle()

        assert result.listens_recorded == 1
        assert result.tracks_removed == 1
        assert spotify.remote_uris("sp-friday") == []
        track = await seed.get_track(group["row"])
        assert track.removed_at is not None
        assert track.remote_removal_pending is False
        assert len(notifications.of_type(NotificationType.TRACK_REMOVED)) == 1

    async def test_no_pollable_users(self, worker, spotify) -> None:
        result = await worker.run_cycle()
        assert result.users_polled == 0
        assert spotify.calls == []

    async def test_overlapping_trigger_is_skipped(self, worker, group) -> None:
        async with worker._cycle_lock:
            result = await worker.run_cycle()
        assert result.skipped is True
        assert worker._cycles_completed == 0

    async def test_users_are_spaced_out(self, worker, group, sleep) -> None:
        await worker.run_cycle()
        # 3 users, 30s interval -> 5s spread, clamped to the 2s max
        assert sleep.await_count == 2
        sleep.assert_awaited_with(2.0)


class TestFailureHandling:
    """What ends a cycle early and what doesn't."""

    async def test_rate_limit_stops_new_users_and_sync(self, worker, spotify, group) -> None:
        spotify.errors["get_playback_state"] = RateLimitedError(retry_after=5)

        result = await worker.run_cycle()

        assert result.aborted is True
        assert result.users_polled == 0
        assert spotify.calls.count("get_playback_state") == 1
        assert "get_playlist_items" not in spotify.calls
        assert result.playlists_synced == 0

    async def test_token_invalid_is_per_user(self, worker, spotify, seed, group, notifications) -> None:
        spotify.errors["get_playback_state"] = TokenInvalidError()

        result = await worker.run_cycle()

        assert result.users_token_invalid == 3
        assert result.aborted is False
        assert (await seed.get_user(group["bob"])).token_invalid_at is not None
        assert len(notifications.of_type(NotificationType.REAUTH_REQUIRED)) == 3

        # flagged users are not polled again, and nobody is re-alerted
        again = await worker.run_cycle()
        assert again.users_polled == 0
        assert len(notifications.of_type(NotificationType.REAUTH_REQUIRED)) == 3

    async def test_other_errors_are_counted(self, worker, spotify, group) -> None:
        spotify.errors["get_playback_state"] = ExternalServiceError("Spotify down", 503)

        result = await worker.run_cycle()

        assert result.failures == 3
        assert result.aborted is False
        assert result.playlists_synced == 1


class TestScheduling:
    """Delay math, audit cadence and status."""

    @pytest.mark.parametrize(
        ("users", "expected"),
        [(0, 0.0), (1, 0.0), (2, 2.0), (10, 1.5), (100, 0.3)],
    )
    def test_inter_user_delay(self, worker, users: int, expected: float) -> None:
        assert worker._inter_user_delay(users) == pytest.approx(expected)

    async def test_audit_runs_every_n_cycles(self, worker, group) -> None:
        worker.audit_every_n_cycles = 2
        first = await worker.run_cycle()
        second = await worker.run_cycle()
        assert first.playlists_synced == 0
        assert second.playlists_synced == 1

    async def test_status(self, worker, group, clock) -> None:
        status = worker.get_status()
        assert status["last_result"] is None
        assert status["cycle_in_progress"] is False

        await worker.run_cycle()
        status = worker.get_status()

        assert status["cycles_completed"] == 1
        assert status["last_cycle_at"] == clock.now.isoformat()
        assert status["last_result"]["users_polled"] == 3
        assert "sync_results" not in status["last_result"]
        assert status["budget"] is None

    async def test_loop_runs_until_stopped(self, worker, group, sleep) -> None:
        async def stop_after_first(seconds: float) -> None:
            worker._running = False

        sleep.side_effect = stop_after_first
        worker._running = True
        await worker._run_loop()

        assert worker._cycles_completed == 1
        sleep.assert_awaited_with(worker.interval_seconds)

    def test_settings_drive_intervals(self, worker) -> None:
        assert worker.interval_seconds == 30
        assert worker.audit_every_n_cycles == 1
