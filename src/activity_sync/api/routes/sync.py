"""Manual sync trigger and job log routes."""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlmodel import Session

from activity_sync.api.deps import get_orchestrator
from activity_sync.db.engine import get_session
from activity_sync.errors import CredentialMissing
from activity_sync.models.credential import Credential
from activity_sync.models.sync import SyncJobLog, TriggeredBy
from activity_sync.sync.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


class SyncTriggerRequest(BaseModel):
    credential_id: int


class SyncTriggerResponse(BaseModel):
    job_id: Optional[int]
    status: str
    already_running: bool = False
    message: Optional[str] = None


@router.post("", response_model=SyncTriggerResponse)
async def trigger_sync(
    request: SyncTriggerRequest,
    session: Session = Depends(get_session),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """
    Run a manual sync for one credential and return its job.

    If the credential is already syncing, the running job's id is returned
    instead of starting a second one.
    """
    credential = session.get(Credential, request.credential_id)
    if not credential:
        raise HTTPException(status_code=404, detail="Credential not found")
    if not credential.is_valid:
        raise HTTPException(
            status_code=400,
            detail=f"Credential is disabled: {credential.last_error or 'revalidate it first'}",
        )

    try:
        result = await orchestrator.trigger(request.credential_id, TriggeredBy.MANUAL)
    except CredentialMissing:
        raise HTTPException(status_code=404, detail="Credential not found")

    return SyncTriggerResponse(
        job_id=result.job_id,
        status=result.status.value,
        already_running=result.contended,
        message=result.message,
    )


@router.get("/logs", response_model=List[SyncJobLog])
def list_logs(
    limit: int = 50,
    platform: Optional[str] = None,
    credential_id: Optional[int] = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Recent job logs, newest first."""
    return orchestrator.jobs.recent(
        min(max(limit, 1), 500),
        platform=platform.upper() if platform else None,
        credential_id=credential_id,
    )


@router.get("/logs/{job_id}", response_model=SyncJobLog)
def get_log(job_id: int, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    log = orchestrator.jobs.get(job_id)
    if not log:
        raise HTTPException(status_code=404, detail="Sync job not found")
    return log


@router.get("/stats")
def sync_stats(orchestrator: SyncOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    """Aggregate totals across all job logs."""
    return orchestrator.jobs.stats()
