"""
JobLogger: the append-only audit trail of sync attempts.

A SyncJobLog row is created once per attempt and afterwards may only be
changed through update_status(), which accepts a fixed set of lifecycle
fields. Once a row reaches SUCCESS, FAILED or PARTIAL it is sealed.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlmodel import Session, select

from activity_sync.errors import ForbiddenPatchError, JobSealedError
from activity_sync.models.sync import JobStatus, SyncJobLog, TriggeredBy

logger = logging.getLogger(__name__)

MUTABLE_FIELDS = frozenset({
    "status",
    "items_total",
    "items_success",
    "items_failed",
    "items_new",
    "items_existing",
    "message",
    "error_stack",
    "error_details",
    "completed_at",
    "duration",
    "metrics",
})


class JobLogger:
    def __init__(self, engine):
        self.engine = engine

    def start(
        self,
        platform: str,
        credential_id: Optional[int],
        triggered_by: TriggeredBy = TriggeredBy.MANUAL,
        job_type: str = "incremental",
    ) -> SyncJobLog:
        """Create a RUNNING row for a new attempt."""
        log = SyncJobLog(
            platform=platform,
            credential_id=credential_id,
            triggered_by=triggered_by,
            job_type=job_type,
            status=JobStatus.RUNNING,
            started_at=datetime.utcnow(),
        )
        with Session(self.engine) as s:
            s.add(log)
            s.commit()
            s.refresh(log)
        logger.info("Sync job %s started for %s (credential %s)", log.id, platform, credential_id)
        return log

    def update_status(self, job_id: int, **patch: Any) -> SyncJobLog:
        """
        Apply a lifecycle patch to a job row.

        Raises:
            ForbiddenPatchError: if the patch names a field outside MUTABLE_FIELDS.
            JobSealedError: if the row is already terminal.
            ValueError: if the patch would break the counter or completion invariants.
            LookupError: if no such job exists.
        """
        forbidden = set(patch) - MUTABLE_FIELDS
        if forbidden:
            raise ForbiddenPatchError(f"Cannot modify {sorted(forbidden)} on a sync job log")

        with Session(self.engine) as s:
            log = s.get(SyncJobLog, job_id)
            if log is None:
                raise LookupError(f"Sync job {job_id} not found")
            if log.status.is_terminal:
                raise JobSealedError(f"Sync job {job_id} is already {log.status.value}")

            if "status" in patch:
                patch["status"] = JobStatus(patch["status"])
                if patch["status"].is_terminal and patch.get("completed_at") is None:
                    patch["completed_at"] = datetime.utcnow()
            for key, value in patch.items():
                setattr(log, key, value)

            _check_invariants(log)
            s.add(log)
            s.commit()
            s.refresh(log)

        if log.status.is_terminal:
            logger.info(
                "Sync job %s finished: %s (%d/%d ok, %d failed)",
                log.id, log.status.value, log.items_success, log.items_total, log.items_failed,
            )
        return log

    # ── Reads ─────────────────────────────────────────────────────────────────

    def get(self, job_id: int) -> Optional[SyncJobLog]:
        with Session(self.engine) as s:
            return s.get(SyncJobLog, job_id)

    def recent(
        self,
        limit: int = 50,
        *,
        platform: Optional[str] = None,
        credential_id: Optional[int] = None,
    ) -> List[SyncJobLog]:
        query = select(SyncJobLog)
        if platform is not None:
            query = query.where(SyncJobLog.platform == platform)
        if credential_id is not None:
            query = query.where(SyncJobLog.credential_id == credential_id)
        query = query.order_by(SyncJobLog.created_at.desc(), SyncJobLog.id.desc()).limit(limit)
        with Session(self.engine) as s:
            return list(s.exec(query).all())

    def latest_for_platform(self, platform: str) -> Optional[SyncJobLog]:
        logs = self.recent(1, platform=platform)
        return logs[0] if logs else None

    def latest_successful(self, credential_id: int) -> Optional[SyncJobLog]:
        with Session(self.engine) as s:
            return s.exec(
                select(SyncJobLog)
                .where(
                    SyncJobLog.credential_id == credential_id,
                    SyncJobLog.status == JobStatus.SUCCESS,
                )
                .order_by(SyncJobLog.started_at.desc(), SyncJobLog.id.desc())
            ).first()

    def stats(self) -> Dict[str, Any]:
        """Aggregate counts across every job log row."""
        with Session(self.engine) as s:
            def count(*conditions) -> int:
                query = select(func.count()).select_from(SyncJobLog)
                for condition in conditions:
                    query = query.where(condition)
                return s.exec(query).one()

            total = count()
            successful = count(SyncJobLog.status == JobStatus.SUCCESS)
            failed = count(SyncJobLog.status == JobStatus.FAILED)
            partial = count(SyncJobLog.status == JobStatus.PARTIAL)
            manual = count(SyncJobLog.triggered_by == TriggeredBy.MANUAL)
            auto = count(SyncJobLog.triggered_by == TriggeredBy.AUTO)
            avg_duration = s.exec(
                select(func.avg(SyncJobLog.duration)).where(SyncJobLog.duration.is_not(None))
            ).one()
            items_total, items_new, items_success = s.exec(
                select(
                    func.coalesce(func.sum(SyncJobLog.items_total), 0),
                    func.coalesce(func.sum(SyncJobLog.items_new), 0),
                    func.coalesce(func.sum(SyncJobLog.items_success), 0),
                )
            ).one()

        return {
            "total_syncs": total,
            "successful_syncs": successful,
            "failed_syncs": failed,
            "partial_syncs": partial,
            "success_rate": (successful / total * 100.0) if total else 0.0,
            "manual_syncs": manual,
            "auto_syncs": auto,
            "avg_duration_ms": float(avg_duration or 0),
            "total_items_synced": int(items_total),
            "total_new_items": int(items_new),
            "total_success_items": int(items_success),
        }


def _check_invariants(log: SyncJobLog) -> None:
    counters = (log.items_total, log.items_success, log.items_failed, log.items_new, log.items_existing)
    if any(c < 0 for c in counters):
        raise ValueError("Item counters cannot be negative")
    if log.items_success + log.items_failed > log.items_total:
        raise ValueError(
            f"items_success ({log.items_success}) + items_failed ({log.items_failed}) "
            f"exceeds items_total ({log.items_total})"
        )
    if log.status.is_terminal != (log.completed_at is not None):
        raise ValueError("completed_at must be set exactly when the job is terminal")
