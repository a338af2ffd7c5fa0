"""
Per-credential advisory locks backed by the SyncLock table.

Acquisition is a primary-key insert, so two workers (or two processes sharing
the database) can never both hold the same credential. A lock older than
max_age is presumed orphaned by a crashed worker and may be reclaimed with a
compare-and-swap update; the orphaned job's log row is left as RUNNING.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from activity_sync.errors import LockContentionError
from activity_sync.models.sync import SyncLock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockToken:
    """Proof of ownership; release only deletes the row this token acquired."""

    credential_id: int
    acquired_at: datetime


class LockTable:
    def __init__(
        self,
        engine,
        max_age: timedelta,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.engine = engine
        self.max_age = max_age
        self._clock = clock

    def is_stale(self, lock: SyncLock, now: Optional[datetime] = None) -> bool:
        return (now or self._clock()) - lock.acquired_at >= self.max_age

    def holder(self, credential_id: int) -> Optional[SyncLock]:
        with Session(self.engine) as s:
            return s.get(SyncLock, credential_id)

    def acquire(self, credential_id: int) -> LockToken:
        """
        Take the credential's lock.

        Raises:
            LockContentionError: if a live (non-stale) lock is held.
        """
        now = self._clock()
        with Session(self.engine) as s:
            current = s.get(SyncLock, credential_id)
            if current is None:
                s.add(SyncLock(credential_id=credential_id, acquired_at=now))
                try:
                    s.commit()
                except IntegrityError:
                    s.rollback()
                    winner = s.get(SyncLock, credential_id)
                    raise LockContentionError(credential_id, winner.job_id if winner else None)
                return LockToken(credential_id, now)

            if not self.is_stale(current, now):
                raise LockContentionError(credential_id, current.job_id)

            logger.warning(
                "Reclaiming stale lock on credential %s held by job %s since %s",
                credential_id, current.job_id, current.acquired_at.isoformat(),
            )
            result = s.exec(
                update(SyncLock)
                .where(
                    SyncLock.credential_id == credential_id,
                    SyncLock.acquired_at == current.acquired_at,
                )
                .values(acquired_at=now, job_id=None)
            )
            s.commit()
            if result.rowcount != 1:
                # Someone else reclaimed it between our read and write
                raise LockContentionError(credential_id, None)
            return LockToken(credential_id, now)

    def attach(self, token: LockToken, job_id: int) -> None:
        """Record which job holds the lock so contenders can point at it."""
        with Session(self.engine) as s:
            s.exec(
                update(SyncLock)
                .where(
                    SyncLock.credential_id == token.credential_id,
                    SyncLock.acquired_at == token.acquired_at,
                )
                .values(job_id=job_id)
            )
            s.commit()

    def release(self, token: LockToken) -> None:
        with Session(self.engine) as s:
            s.exec(
                delete(SyncLock).where(
                    SyncLock.credential_id == token.credential_id,
                    SyncLock.acquired_at == token.acquired_at,
                )
            )
            s.commit()
