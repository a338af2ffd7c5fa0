"""Tests for RecordStore: idempotent upserts, session dedup, playtime deltas."""
from datetime import date, datetime

import pytest
from sqlmodel import select

from activity_sync.adapters.base import CanonicalRecord, RecordKind
from activity_sync.models.activity import (
    Game,
    GameAchievement,
    GameSession,
    GitHubContribution,
    MediaWatch,
    PlaytimeSnapshot,
)
from activity_sync.models.credential import Platform
from activity_sync.sync.store import RecordStore, UpsertOutcome, playtime_delta


@pytest.fixture
def store(engine):
    return RecordStore(engine)


def _game(external_id="570", duration=500, occurred_at=datetime(2025, 1, 4)):
    return CanonicalRecord(external_id=external_id, platform=Platform.STEAM, kind=RecordKind.GAME,
                           title="Dota 2", occurred_at=occurred_at, duration=duration)


class TestPlaytimeDelta:
    def test_first_snapshot(self):
        assert playtime_delta(None, 500) is None

    def test_growth(self):
        assert playtime_delta(500, 560) == 60

    def test_reset_never_negative(self):
        assert playtime_delta(500, 480) == 0


class TestUpsertCanonical:
    def test_new_then_existing(self, store, test_session):
        assert store.upsert_canonical(_game()) == UpsertOutcome.NEW
        assert store.upsert_canonical(_game()) == UpsertOutcome.EXISTING
        assert len(test_session.exec(select(Game)).all()) == 1

    def test_conflict_updates_mutable_fields_only(self, store, test_session):
        store.upsert_canonical(_game(duration=500), today=date(2025, 1, 4))
        renamed = _game(duration=560, occurred_at=datetime(2025, 1, 5))
        renamed.title = "Renamed"
        store.upsert_canonical(renamed, today=date(2025, 1, 5))

        game = test_session.exec(select(Game)).one()
        assert game.title == "Dota 2"
        assert game.playtime_minutes == 560
        assert game.occurred_at == datetime(2025, 1, 5)

    def test_same_external_id_on_other_platform_is_separate(self, store, test_session):
        store.upsert_canonical(_game())
        other = _game()
        other.platform = Platform.HOYOVERSE
        assert store.upsert_canonical(other) == UpsertOutcome.NEW
        assert len(test_session.exec(select(Game)).all()) == 2

    def test_media_duration_only_grows(self, store, test_session):
        record = CanonicalRecord(external_id="BV1", platform=Platform.BILIBILI, kind=RecordKind.MEDIA,
                                 title="Video", occurred_at=datetime(2025, 1, 2), duration=600,
                                 progress=0.5, metadata={"media_type": "video"})
        store.upsert_canonical(record)
        record.duration = 300
        record.progress = 1.0
        store.upsert_canonical(record)

        watch = test_session.exec(select(MediaWatch)).one()
        assert watch.duration_seconds == 600
        assert watch.progress == 1.0
        assert watch.media_type == "video"

    def test_achievement_unlock_is_sticky(self, store, test_session):
        store.upsert_canonical(_game())
        unlocked = CanonicalRecord(external_id="570:WIN", platform=Platform.STEAM, kind=RecordKind.ACHIEVEMENT,
                                   title="Win", occurred_at=datetime(2025, 1, 4), progress=1.0,
                                   metadata={"game_external_id": "570"})
        store.upsert_canonical(unlocked)
        relocked = CanonicalRecord(external_id="570:WIN", platform=Platform.STEAM, kind=RecordKind.ACHIEVEMENT,
                                   title="Win", progress=0.0, metadata={"game_external_id": "570"})
        assert store.upsert_canonical(relocked) == UpsertOutcome.EXISTING

        achievement = test_session.exec(select(GameAchievement)).one()
        assert achievement.is_unlocked
        assert achievement.progress == 1.0
        assert achievement.occurred_at == datetime(2025, 1, 4)
        assert achievement.game_id is not None

    def test_contribution_is_immutable(self, store, test_session):
        record = CanonicalRecord(external_id="octo/a@abc", platform=Platform.GITHUB,
                                 kind=RecordKind.CONTRIBUTION, title="Fix bug",
                                 occurred_at=datetime(2025, 1, 10), metadata={"repo": "octo/a"})
        assert store.upsert_canonical(record) == UpsertOutcome.NEW
        record.title = "Amended"
        assert store.upsert_canonical(record) == UpsertOutcome.EXISTING
        contribution = test_session.exec(select(GitHubContribution)).one()
        assert contribution.title == "Fix bug"
        assert contribution.repo == "octo/a"


class TestSessions:
    def _session_record(self, start=datetime(2025, 1, 4, 20), duration=90):
        return CanonicalRecord(external_id=f"570@{int(start.timestamp())}", platform=Platform.STEAM,
                               kind=RecordKind.SESSION, title="Dota 2", occurred_at=start,
                               duration=duration, metadata={"game_external_id": "570"})

    def test_same_start_time_dedups(self, store, test_session):
        store.upsert_canonical(_game())
        assert store.upsert_canonical(self._session_record()) == UpsertOutcome.NEW
        assert store.upsert_canonical(self._session_record()) == UpsertOutcome.EXISTING
        assert len(test_session.exec(select(GameSession)).all()) == 1

    def test_replay_may_only_grow_duration(self, store, test_session):
        store.upsert_canonical(_game())
        store.upsert_canonical(self._session_record(duration=90))
        store.upsert_canonical(self._session_record(duration=120))
        store.upsert_canonical(self._session_record(duration=30))
        assert test_session.exec(select(GameSession)).one().duration_minutes == 120

    def test_session_for_unknown_game_creates_stub(self, store, test_session):
        store.upsert_canonical(self._session_record())
        assert test_session.exec(select(Game)).one().external_id == "570"

    def test_session_without_start_is_malformed(self, store):
        record = self._session_record()
        record.occurred_at = None
        with pytest.raises(ValueError):
            store.upsert_canonical(record)


class TestPlaytime:
    def test_counter_reset_delta_is_zero(self, store, test_session):
        store.upsert_canonical(_game(duration=500), today=date(2025, 1, 4))
        store.upsert_canonical(_game(duration=480), today=date(2025, 1, 5))

        snapshots = test_session.exec(select(PlaytimeSnapshot).order_by(PlaytimeSnapshot.day)).all()
        assert [s.total_minutes for s in snapshots] == [500, 480]
        assert [s.delta_minutes for s in snapshots] == [None, 0]

    def test_same_day_overwrites_snapshot(self, store, test_session):
        store.upsert_canonical(_game(duration=500), today=date(2025, 1, 4))
        store.upsert_canonical(_game(duration=520), today=date(2025, 1, 5))
        store.upsert_canonical(_game(duration=540), today=date(2025, 1, 5))

        snapshots = test_session.exec(select(PlaytimeSnapshot).order_by(PlaytimeSnapshot.day)).all()
        assert len(snapshots) == 2
        assert snapshots[-1].total_minutes == 540
        assert snapshots[-1].delta_minutes == 40

    def test_record_playtime_returns_delta(self, store):
        store.upsert_canonical(_game(duration=100), today=date(2025, 1, 1))
        game_id = store.game_id_for("STEAM", "570")
        assert store.record_playtime(game_id, date(2025, 1, 2), 130) == 30
