"""
Read-only per-platform sync status for public display.

Each platform reports its newest SyncJobLog row. Platforms that predate the
job log fall back to the legacy SyncJob table, and platforms with neither are
left out. Freshness is not stored; callers derive it with is_fresh().
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlmodel import Session, select

from activity_sync.models.credential import Platform
from activity_sync.models.sync import SyncJob, SyncJobLog

logger = logging.getLogger(__name__)

FRESHNESS_THRESHOLD = timedelta(hours=24)


@dataclass
class PlatformStatus:
    platform: str  # lowercase
    last_sync_at: datetime
    status: str  # lowercase

    def to_json(self) -> dict:
        return {
            "platform": self.platform,
            "lastSyncAt": self.last_sync_at.isoformat() + "Z",
            "status": self.status,
        }


def is_fresh(last_sync_at: Optional[datetime], now: Optional[datetime] = None,
             threshold: timedelta = FRESHNESS_THRESHOLD) -> bool:
    if last_sync_at is None:
        return False
    return (now or datetime.utcnow()) - last_sync_at < threshold


class StatusAggregator:
    def __init__(self, engine):
        self.engine = engine

    def collect(self) -> List[PlatformStatus]:
        """Latest status per platform, sorted by lowercase platform name."""
        statuses: List[PlatformStatus] = []
        with Session(self.engine) as s:
            for platform in Platform:
                status = self._from_job_log(s, platform) or self._from_legacy(s, platform)
                if status is not None:
                    statuses.append(status)
        return sorted(statuses, key=lambda st: st.platform)

    @staticmethod
    def _from_job_log(s: Session, platform: Platform) -> Optional[PlatformStatus]:
        log = s.exec(
            select(SyncJobLog)
            .where(SyncJobLog.platform == platform.value)
            .order_by(SyncJobLog.created_at.desc(), SyncJobLog.id.desc())
        ).first()
        if log is None:
            return None
        return PlatformStatus(
            platform=platform.value.lower(),
            last_sync_at=log.created_at,
            status=log.status.value.lower(),
        )

    @staticmethod
    def _from_legacy(s: Session, platform: Platform) -> Optional[PlatformStatus]:
        job = s.exec(
            select(SyncJob)
            .where(SyncJob.platform == platform.value.lower())
            .order_by(SyncJob.started_at.desc())
        ).first()
        if job is None:
            return None
        # Legacy status strings ("completed", ...) are reported as stored
        return PlatformStatus(
            platform=platform.value.lower(),
            last_sync_at=job.started_at,
            status=job.status,
        )
