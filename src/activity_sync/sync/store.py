"""
RecordStore: idempotent persistence of canonical records.

Each upsert runs in its own short transaction so items commit in the order
the adapter yielded them and a failure later in a job never rolls back
earlier items.

Idempotency rests on unique constraints:
  (platform, external_id)  games, achievements, media, contributions
  (game_id, start_time)    sessions
  (game_id, day)           playtime snapshots

A concurrent writer that wins the insert race shows up as IntegrityError;
the loser re-reads the row and reports EXISTING.
"""
import logging
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional, Type

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from activity_sync.adapters.base import CanonicalRecord, RecordKind
from activity_sync.errors import PersistenceError
from activity_sync.models.activity import (
    Game,
    GameAchievement,
    GameSession,
    GitHubContribution,
    MediaWatch,
    PlaytimeSnapshot,
)

logger = logging.getLogger(__name__)


class UpsertOutcome(str, Enum):
    NEW = "new"
    EXISTING = "existing"


def playtime_delta(previous_total: Optional[int], current_total: int) -> Optional[int]:
    """Minutes played between two lifetime totals; a counter reset never goes negative."""
    if previous_total is None:
        return None
    return max(0, current_total - previous_total)


class RecordStore:
    """Writes canonical records for one engine."""

    def __init__(self, engine):
        self.engine = engine

    # ── Public API ────────────────────────────────────────────────────────────

    def upsert_canonical(self, record: CanonicalRecord, *, today: Optional[date] = None) -> UpsertOutcome:
        """
        Insert or update one record keyed by (platform, external_id).

        On conflict only mutable fields change: progress, accreted duration,
        last-played / unlock time. Titles and first-seen data stay as inserted.

        Raises:
            PersistenceError: on any database failure other than the
                expected unique-constraint race.
        """
        try:
            if record.kind == RecordKind.SESSION:
                return self._upsert_session_record(record)
            if record.kind == RecordKind.GAME:
                return self._upsert_game(record, today or datetime.utcnow().date())
            if record.kind == RecordKind.ACHIEVEMENT:
                return self._upsert_keyed(GameAchievement, record, self._achievement_fields)
            if record.kind == RecordKind.MEDIA:
                return self._upsert_keyed(MediaWatch, record, self._media_fields)
            if record.kind == RecordKind.CONTRIBUTION:
                return self._upsert_keyed(GitHubContribution, record, self._contribution_fields)
        except PersistenceError:
            raise
        except SQLAlchemyError as exc:
            raise PersistenceError(
                f"Failed to persist {record.platform.value} {record.kind.value} {record.external_id}: {exc}",
                details={"external_id": record.external_id, "kind": record.kind.value},
            ) from exc
        raise ValueError(f"Unsupported record kind {record.kind!r}")

    def upsert_session(
        self,
        game_id: int,
        platform: str,
        start_time: datetime,
        duration_minutes: int,
        end_time: Optional[datetime] = None,
    ) -> UpsertOutcome:
        """Insert a session unless one already exists at (game_id, start_time)."""
        with Session(self.engine) as s:
            existing = s.exec(
                select(GameSession).where(
                    GameSession.game_id == game_id,
                    GameSession.start_time == start_time,
                )
            ).first()
            if existing:
                # At-least-once delivery: a replayed session may only grow
                if duration_minutes > existing.duration_minutes:
                    existing.duration_minutes = duration_minutes
                    existing.end_time = end_time or existing.end_time
                    s.add(existing)
                    s.commit()
                return UpsertOutcome.EXISTING

            s.add(GameSession(
                game_id=game_id,
                platform=platform,
                start_time=start_time,
                end_time=end_time or start_time + timedelta(minutes=duration_minutes),
                duration_minutes=duration_minutes,
            ))
            try:
                s.commit()
            except IntegrityError:
                s.rollback()
                return UpsertOutcome.EXISTING
            return UpsertOutcome.NEW

    def record_playtime(self, game_id: int, day: date, current_total: int) -> Optional[int]:
        """
        Store the lifetime total for (game_id, day) and return the day's delta.

        The delta is measured against the most recent earlier snapshot and is
        clamped at zero. Returns None for a game's first snapshot.
        """
        with Session(self.engine) as s:
            previous = s.exec(
                select(PlaytimeSnapshot)
                .where(PlaytimeSnapshot.game_id == game_id, PlaytimeSnapshot.day < day)
                .order_by(PlaytimeSnapshot.day.desc())
            ).first()
            delta = playtime_delta(previous.total_minutes if previous else None, current_total)

            snapshot = s.exec(
                select(PlaytimeSnapshot).where(
                    PlaytimeSnapshot.game_id == game_id,
                    PlaytimeSnapshot.day == day,
                )
            ).first()
            if snapshot is None:
                snapshot = PlaytimeSnapshot(game_id=game_id, day=day, total_minutes=current_total)
            snapshot.total_minutes = current_total
            snapshot.delta_minutes = delta
            s.add(snapshot)
            try:
                s.commit()
            except IntegrityError:
                # Another worker wrote today's snapshot first; theirs stands
                s.rollback()
            return delta

    def game_id_for(self, platform: str, external_id: str) -> Optional[int]:
        with Session(self.engine) as s:
            game = s.exec(
                select(Game).where(Game.platform == platform, Game.external_id == external_id)
            ).first()
            return game.id if game else None

    # ── Internal helpers ──────────────────────────────────────────────────────

    def _upsert_keyed(self, model: Type, record: CanonicalRecord, fields_for) -> UpsertOutcome:
        """Generic (platform, external_id) upsert. fields_for(record, existing) → column dict."""
        platform = record.platform.value
        with Session(self.engine) as s:
            existing = s.exec(
                select(model).where(model.platform == platform, model.external_id == record.external_id)
            ).first()
            if existing:
                for key, value in fields_for(record, existing).items():
                    setattr(existing, key, value)
                existing.synced_at = datetime.utcnow()
                s.add(existing)
                s.commit()
                return UpsertOutcome.EXISTING

            row = model(
                platform=platform,
                external_id=record.external_id,
                title=record.title,
                metadata_json=dict(record.metadata),
                **fields_for(record, None),
            )
            s.add(row)
            try:
                s.commit()
            except IntegrityError:
                s.rollback()
                logger.debug("Lost insert race for %s %s", platform, record.external_id)
                return UpsertOutcome.EXISTING
            return UpsertOutcome.NEW

    def _upsert_game(self, record: CanonicalRecord, today: date) -> UpsertOutcome:
        outcome = self._upsert_keyed(Game, record, self._game_fields)
        if record.duration is not None:
            game_id = self.game_id_for(record.platform.value, record.external_id)
            self.record_playtime(game_id, today, record.duration)
        return outcome

    def _upsert_session_record(self, record: CanonicalRecord) -> UpsertOutcome:
        if record.occurred_at is None:
            raise ValueError(f"Session {record.external_id} has no start time")
        game_external_id = str(record.metadata.get("game_external_id") or "")
        game_id = self.game_id_for(record.platform.value, game_external_id)
        if game_id is None:
            # Session for a game this sync has not seen: create a stub to hang it on
            self._upsert_keyed(Game, CanonicalRecord(
                external_id=game_external_id,
                platform=record.platform,
                kind=RecordKind.GAME,
                title=record.title,
                occurred_at=record.occurred_at,
            ), self._game_fields)
            game_id = self.game_id_for(record.platform.value, game_external_id)
        return self.upsert_session(
            game_id=game_id,
            platform=record.platform.value,
            start_time=record.occurred_at,
            duration_minutes=int(record.duration or 0),
        )

    @staticmethod
    def _later(new: Optional[datetime], old: Optional[datetime]) -> Optional[datetime]:
        if new is None:
            return old
        if old is None:
            return new
        return max(new, old)

    def _game_fields(self, record: CanonicalRecord, existing: Optional[Game]) -> Dict[str, Any]:
        fields: Dict[str, Any] = {
            "occurred_at": self._later(record.occurred_at, existing.occurred_at if existing else None),
        }
        if record.duration is not None:
            fields["playtime_minutes"] = record.duration
        if record.progress is not None:
            fields["progress"] = record.progress
        return fields

    def _achievement_fields(self, record: CanonicalRecord, existing) -> Dict[str, Any]:
        unlocked = (record.progress or 0.0) >= 1.0
        fields: Dict[str, Any] = {"progress": record.progress}
        if existing is None:
            fields["description"] = record.metadata.get("description")
            fields["game_id"] = self.game_id_for(
                record.platform.value, str(record.metadata.get("game_external_id") or ""),
            )
        # Unlocks are sticky: a later fetch never re-locks an achievement
        fields["is_unlocked"] = unlocked or bool(existing and existing.is_unlocked)
        fields["occurred_at"] = (existing.occurred_at if existing and existing.occurred_at else record.occurred_at)
        if existing is not None and existing.is_unlocked:
            fields["progress"] = 1.0
        return fields

    @staticmethod
    def _media_fields(record: CanonicalRecord, existing) -> Dict[str, Any]:
        fields: Dict[str, Any] = {
            "occurred_at": RecordStore._later(record.occurred_at, existing.occurred_at if existing else None),
        }
        if existing is None:
            fields["media_type"] = record.metadata.get("media_type")
            fields["rating"] = record.metadata.get("rating")
        if record.duration is not None:
            fields["duration_seconds"] = max(record.duration, (existing.duration_seconds or 0) if existing else 0)
        if record.progress is not None:
            fields["progress"] = record.progress
        return fields

    @staticmethod
    def _contribution_fields(record: CanonicalRecord, existing) -> Dict[str, Any]:
        if existing is not None:
            return {}
        return {"repo": record.metadata.get("repo"), "occurred_at": record.occurred_at}
