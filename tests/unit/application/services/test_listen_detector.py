"""Unit tests for listen / skip detection."""

from datetime import UTC, datetime, timedelta

import pytest

from swapify.application.services.listen_detector import (
    ListenDetector,
    TrackCompleted,
    TrackSkipped,
)
from swapify.config.settings import PollSettings
from swapify.domain.entities import PlaybackSnapshot, ReactionValue, RecentPlay
from swapify.infrastructure.persistence.repositories import ListenRepository, ReactionRepository

T0 = datetime(2026, 10, 17, 12, 0, tzinfo=UTC)
DURATION = 200_000


def snap(
    track_id: str,
    ratio: float,
    at: datetime = T0,
    ambiguous: bool = False,
    duration_ms: int = DURATION,
) -> PlaybackSnapshot:
    return PlaybackSnapshot(
        track_id=track_id,
        track_uri=f"spotify:track:{track_id}",
        progress_ms=int(duration_ms * ratio),
        duration_ms=duration_ms,
        is_playing=True,
        observed_at=at,
        ambiguous=ambiguous,
    )


LATER = T0 + timedelta(seconds=30)


@pytest.fixture
def detector() -> ListenDetector:
    return ListenDetector()


class TestClassify:
    """Pure transition classification."""

    def test_no_previous_snapshot_means_no_event(self, detector: ListenDetector) -> None:
        assert detector.classify(None, snap("a", 0.5, LATER)) == []

    def test_nothing_playing_now_means_no_event(self, detector: ListenDetector) -> None:
        assert detector.classify(snap("a", 0.2), None) == []

    def test_track_change_after_95_percent_is_a_listen(self, detector: ListenDetector) -> None:
        events = detector.classify(snap("a", 0.95), snap("b", 0.01, LATER))
        assert events == [TrackCompleted("a", LATER, int(DURATION * 0.95))]

    def test_track_change_at_20_percent_is_a_skip(self, detector: ListenDetector) -> None:
        events = detector.classify(snap("a", 0.2), snap("b", 0.01, LATER))
        assert events == [TrackSkipped("a", LATER, int(DURATION * 0.2))]

    def test_middle_ground_is_inconclusive(self, detector: ListenDetector) -> None:
        assert detector.classify(snap("a", 0.6), snap("b", 0.01, LATER)) == []

    def test_same_track_past_threshold_is_a_listen(self, detector: ListenDetector) -> None:
        events = detector.classify(snap("a", 0.5), snap("a", 0.92, LATER))
        assert [type(e) for e in events] == [TrackCompleted]

    def test_same_track_still_playing_is_nothing(self, detector: ListenDetector) -> None:
        assert detector.classify(snap("a", 0.2), snap("a", 0.4, LATER)) == []

    def test_loop_restart_after_completion_counts_once(self, detector: ListenDetector) -> None:
        events = detector.classify(snap("a", 0.97), snap("a", 0.05, LATER))
        assert events == [TrackCompleted("a", LATER, int(DURATION * 0.97))]

    def test_regression_below_threshold_is_ambiguous_not_a_skip(
        self, detector: ListenDetector
    ) -> None:
        assert detector.classify(snap("a", 0.5), snap("a", 0.1, LATER)) == []

    def test_ambiguous_snapshot_never_produces_a_skip(self, detector: ListenDetector) -> None:
        previous = snap("a", 0.1, ambiguous=True)
        assert detector.classify(previous, snap("b", 0.0, LATER)) == []

    def test_ambiguous_snapshot_can_still_complete(self, detector: ListenDetector) -> None:
        previous = snap("a", 0.95, ambiguous=True)
        events = detector.classify(previous, snap("b", 0.0, LATER))
        assert [type(e) for e in events] == [TrackCompleted]

    def test_stale_snapshot_is_ignored(self, detector: ListenDetector) -> None:
        much_later = T0 + timedelta(hours=3)
        assert detector.classify(snap("a", 0.1), snap("b", 0.0, much_later)) == []

    def test_history_covers_the_previous_track(self, detector: ListenDetector) -> None:
        events = detector.classify(
            snap("a", 0.1), snap("b", 0.0, LATER), recent_track_ids={"a"}
        )
        assert events == []

    def test_unknown_duration_is_inconclusive(self, detector: ListenDetector) -> None:
        previous = snap("a", 0.0, duration_ms=0)
        assert detector.classify(previous, snap("b", 0.0, LATER)) == []

    def test_thresholds_come_from_settings(self) -> None:
        detector = ListenDetector.from_settings(
            PollSettings(complete_threshold=0.8, skip_threshold=0.5)
        )
        events = detector.classify(snap("a", 0.4), snap("b", 0.0, LATER))
        assert [type(e) for e in events] == [TrackSkipped]

    def test_invalid_thresholds_rejected(self) -> None:
        with pytest.raises(ValueError):
            ListenDetector(complete_threshold=0.3, skip_threshold=0.5)

    def test_recent_plays_are_completions(self, detector: ListenDetector) -> None:
        plays = [RecentPlay("a", "spotify:track:a", DURATION, T0)]
        assert detector.events_from_recent_plays(plays) == [TrackCompleted("a", T0, DURATION)]


class TestNextSnapshot:
    """What gets stored for the next comparison."""

    def test_nothing_observed_keeps_previous(self, detector: ListenDetector) -> None:
        previous = snap("a", 0.4)
        assert detector.next_snapshot(previous, None) == previous

    def test_regression_flags_ambiguous(self, detector: ListenDetector) -> None:
        stored = detector.next_snapshot(snap("a", 0.5), snap("a", 0.1, LATER))
        assert stored is not None and stored.ambiguous

    def test_regression_after_completion_is_not_ambiguous(self, detector: ListenDetector) -> None:
        stored = detector.next_snapshot(snap("a", 0.95), snap("a", 0.05, LATER))
        assert stored is not None and not stored.ambiguous

    def test_forward_progress_clears_the_flag(self, detector: ListenDetector) -> None:
        stored = detector.next_snapshot(snap("a", 0.1, ambiguous=True), snap("a", 0.2, LATER))
        assert stored is not None and not stored.ambiguous

    def test_paused_keeps_the_flag(self, detector: ListenDetector) -> None:
        stored = detector.next_snapshot(snap("a", 0.1, ambiguous=True), snap("a", 0.1, LATER))
        assert stored is not None and stored.ambiguous

    def test_new_track_starts_clean(self, detector: ListenDetector) -> None:
        stored = detector.next_snapshot(snap("a", 0.1, ambiguous=True), snap("b", 0.0, LATER))
        assert stored is not None and stored.track_id == "b" and not stored.ambiguous


class TestApply:
    """Recording events against the database."""

    @pytest.fixture
    async def playlist(self, seed):
        alice = await seed.user("alice")
        bob = await seed.user("bob")
        carol = await seed.user("carol", auto_negative_reactions=False)
        playlist_id = await seed.playlist(alice, [bob, carol])
        row = await seed.track(playlist_id, bob, "t1")
        return {"alice": alice, "bob": bob, "carol": carol, "playlist_id": playlist_id, "row": row}

    async def test_listen_records_and_auto_likes(self, detector, database, playlist) -> None:
        async with database.session_scope() as session:
            result = await detector.apply(
                session, playlist["alice"], [TrackCompleted("t1", T0, DURATION)], True
            )

        assert result.listens_recorded == 1
        assert result.reactions_set == 1
        assert result.touched_track_ids == {playlist["row"]}
        async with database.session_scope() as session:
            listen = await ListenRepository(session).get(playlist["playlist_id"], "t1", playlist["alice"])
            reaction = await ReactionRepository(session).get(playlist["playlist_id"], "t1", playlist["alice"])
        assert listen is not None and listen.was_skipped is False
        assert reaction is not None
        assert reaction.reaction == ReactionValue.THUMBS_UP
        assert reaction.is_auto

    async def test_skip_records_and_auto_dislikes(self, detector, database, playlist) -> None:
        async with database.session_scope() as session:
            result = await detector.apply(
                session, playlist["alice"], [TrackSkipped("t1", T0, 40_000)], True
            )

        assert result.skips_detected == 1
        async with database.session_scope() as session:
            listen = await ListenRepository(session).get(playlist["playlist_id"], "t1", playlist["alice"])
            reaction = await ReactionRepository(session).get(playlist["playlist_id"], "t1", playlist["alice"])
        assert listen is not None and listen.was_skipped is True
        assert reaction is not None and reaction.reaction == ReactionValue.THUMBS_DOWN

    async def test_skip_without_auto_negative_reactions(self, detector, database, playlist) -> None:
        async with database.session_scope() as session:
            result = await detector.apply(
                session, playlist["carol"], [TrackSkipped("t1", T0, 40_000)], False
            )

        assert result.skips_detected == 1
        assert result.reactions_set == 0

    async def test_adder_listening_is_ignored(self, detector, database, playlist) -> None:
        async with database.session_scope() as session:
            result = await detector.apply(
                session, playlist["bob"], [TrackCompleted("t1", T0, DURATION)], True
            )
        assert result.listens_recorded == 0
        assert result.touched_track_ids == set()

    async def test_listen_upgrades_earlier_skip(self, detector, database, playlist) -> None:
        async with database.session_scope() as session:
            await detector.apply(session, playlist["alice"], [TrackSkipped("t1", T0, 1000)], True)
        async with database.session_scope() as session:
            result = await detector.apply(
                session, playlist["alice"], [TrackCompleted("t1", LATER, DURATION)], True
            )

        assert result.listens_recorded == 1
        async with database.session_scope() as session:
            listen = await ListenRepository(session).get(playlist["playlist_id"], "t1", playlist["alice"])
            reaction = await ReactionRepository(session).get(playlist["playlist_id"], "t1", playlist["alice"])
        assert listen.was_skipped is False
        assert reaction.reaction == ReactionValue.THUMBS_UP

    async def test_reapplying_is_a_no_op(self, detector, database, playlist) -> None:
        events = [TrackCompleted("t1", T0, DURATION)]
        async with database.session_scope() as session:
            await detector.apply(session, playlist["alice"], events, True)
        async with database.session_scope() as session:
            again = await detector.apply(session, playlist["alice"], events, True)

        assert again.listens_recorded == 0
        assert again.reactions_set == 0
        assert again.touched_track_ids == set()

    async def test_manual_reaction_is_never_overwritten(self, detector, database, seed, playlist) -> None:
        await seed.reaction(playlist["playlist_id"], "t1", playlist["alice"], "fire")
        async with database.session_scope() as session:
            await detector.apply(session, playlist["alice"], [TrackSkipped("t1", T0, 100)], True)
        async with database.session_scope() as session:
            reaction = await ReactionRepository(session).get(playlist["playlist_id"], "t1", playlist["alice"])
        assert reaction.reaction == "fire"
        assert reaction.is_auto is False

    async def test_play_from_before_the_add_is_ignored(self, detector, database, playlist) -> None:
        before_add = T0 - timedelta(hours=2)
        async with database.session_scope() as session:
            result = await detector.apply(
                session, playlist["alice"], [TrackCompleted("t1", before_add, DURATION)], True
            )

        assert result.listens_recorded == 0
        assert result.reactions_set == 0
        async with database.session_scope() as session:
            assert await ListenRepository(session).get(playlist["playlist_id"], "t1", playlist["alice"]) is None

    async def test_unrelated_track_is_ignored(self, detector, database, playlist) -> None:
        async with database.session_scope() as session:
            result = await detector.apply(
                session, playlist["alice"], [TrackCompleted("other", T0, DURATION)], True
            )
        assert result.listens_recorded == 0
