"""Sync audit models: the job log, its legacy predecessor, and the lock table."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class JobStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    PARTIAL = "PARTIAL"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCESS, JobStatus.FAILED, JobStatus.PARTIAL)


class TriggeredBy(str, Enum):
    MANUAL = "MANUAL"
    AUTO = "AUTO"


class SyncJobLog(SQLModel, table=True):
    """Records each sync attempt. Append-only apart from JobLogger.update_status."""

    id: Optional[int] = Field(default=None, primary_key=True)
    platform: str = Field(index=True)
    # Logs outlive their credential
    credential_id: Optional[int] = Field(
        default=None, foreign_key="credential.id", ondelete="SET NULL", index=True,
    )
    triggered_by: TriggeredBy = TriggeredBy.MANUAL
    job_type: str = "incremental"
    status: JobStatus = JobStatus.PENDING

    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    duration: Optional[int] = None  # milliseconds

    items_total: int = 0
    items_success: int = 0
    items_failed: int = 0
    items_new: int = 0
    items_existing: int = 0

    message: Optional[str] = None
    error_stack: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    metrics: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))

    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)


class SyncJob(SQLModel, table=True):
    """
    Previous-generation job tracking, written by older media sync code paths.

    Read-only from this engine's point of view; only StatusAggregator reads it.
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    platform: str = Field(index=True)  # lowercase, e.g. "bilibili"
    status: str = "completed"
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    items_synced: int = 0


class SyncLock(SQLModel, table=True):
    """Advisory lock row; the primary key makes acquisition a unique insert."""

    credential_id: int = Field(primary_key=True)
    job_id: Optional[int] = None
    acquired_at: datetime = Field(default_factory=datetime.utcnow)
