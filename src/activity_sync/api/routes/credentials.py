"""Credential management routes. Stored values are never returned."""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel
from sqlmodel import Session, select

from activity_sync.api.deps import get_orchestrator
from activity_sync.db.engine import get_session
from activity_sync.errors import CredentialError, CredentialMissing
from activity_sync.models.credential import Credential, CredentialType, Platform, SyncFrequency
from activity_sync.sync.orchestrator import SyncOrchestrator
from activity_sync.vault.formats import check_format

logger = logging.getLogger(__name__)

router = APIRouter()


class CredentialCreate(BaseModel):
    platform: Platform
    type: CredentialType
    value: str
    metadata: Dict[str, Any] = {}
    auto_sync: bool = False
    sync_frequency: SyncFrequency = SyncFrequency.DAILY


class CredentialUpdate(BaseModel):
    value: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    auto_sync: Optional[bool] = None
    sync_frequency: Optional[SyncFrequency] = None


class CredentialRead(BaseModel):
    id: int
    platform: Platform
    type: CredentialType
    metadata: Dict[str, Any]
    encrypted: bool
    is_valid: bool
    last_validated_at: Optional[datetime]
    last_used_at: Optional[datetime]
    usage_count: int
    failure_count: int
    last_error: Optional[str]
    auto_sync: bool
    sync_frequency: SyncFrequency
    created_at: datetime
    updated_at: datetime


class ValidationResponse(BaseModel):
    is_valid: bool
    message: Optional[str] = None
    error: Optional[str] = None
    probe: Optional[str] = None


def _read(credential: Credential, orchestrator: SyncOrchestrator) -> CredentialRead:
    return CredentialRead(
        id=credential.id,
        platform=credential.platform,
        type=credential.type,
        metadata=credential.meta,
        encrypted=orchestrator.vault.is_encrypted(credential.value),
        is_valid=credential.is_valid,
        last_validated_at=credential.last_validated_at,
        last_used_at=credential.last_used_at,
        usage_count=credential.usage_count,
        failure_count=credential.failure_count,
        last_error=credential.last_error,
        auto_sync=credential.auto_sync,
        sync_frequency=credential.sync_frequency,
        created_at=credential.created_at,
        updated_at=credential.updated_at,
    )


def _encrypt(orchestrator: SyncOrchestrator, value: str) -> str:
    try:
        return orchestrator.vault.encrypt(value)
    except CredentialError as exc:
        logger.error("Could not encrypt credential: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc))


def _get_or_404(session: Session, credential_id: int) -> Credential:
    credential = session.get(Credential, credential_id)
    if not credential:
        raise HTTPException(status_code=404, detail="Credential not found")
    return credential


@router.get("/", response_model=List[CredentialRead])
def list_credentials(
    platform: Optional[Platform] = None,
    session: Session = Depends(get_session),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    query = select(Credential).order_by(Credential.platform, Credential.id)
    if platform is not None:
        query = query.where(Credential.platform == platform)
    return [_read(c, orchestrator) for c in session.exec(query).all()]


@router.post("/", response_model=CredentialRead, status_code=201)
def create_credential(
    request: CredentialCreate,
    session: Session = Depends(get_session),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Format-check and encrypt a new credential. No network call is made."""
    problem = check_format(request.platform, request.value, request.metadata)
    if problem:
        raise HTTPException(status_code=422, detail=problem)

    credential = Credential(
        platform=request.platform,
        type=request.type,
        value=_encrypt(orchestrator, request.value.strip()),
        metadata_json=dict(request.metadata),
        auto_sync=request.auto_sync,
        sync_frequency=request.sync_frequency,
    )
    session.add(credential)
    session.commit()
    session.refresh(credential)
    logger.info("Created %s credential %s", credential.platform.value, credential.id)
    return _read(credential, orchestrator)


@router.get("/{credential_id}", response_model=CredentialRead)
def get_credential(
    credential_id: int,
    session: Session = Depends(get_session),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    return _read(_get_or_404(session, credential_id), orchestrator)


@router.patch("/{credential_id}", response_model=CredentialRead)
def update_credential(
    credential_id: int,
    request: CredentialUpdate,
    session: Session = Depends(get_session),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """
    Update a credential. A new value is format-checked and encrypted, and
    clears the failure streak so the credential is eligible for auto-sync
    again.
    """
    credential = _get_or_404(session, credential_id)
    metadata = request.metadata if request.metadata is not None else credential.meta

    if request.value is not None:
        problem = check_format(credential.platform, request.value, metadata)
        if problem:
            raise HTTPException(status_code=422, detail=problem)
        credential.value = _encrypt(orchestrator, request.value.strip())
        credential.is_valid = True
        credential.failure_count = 0
        credential.last_error = None
    if request.metadata is not None:
        credential.metadata_json = dict(request.metadata)
    if request.auto_sync is not None:
        credential.auto_sync = request.auto_sync
    if request.sync_frequency is not None:
        credential.sync_frequency = request.sync_frequency
    credential.updated_at = datetime.utcnow()

    session.add(credential)
    session.commit()
    session.refresh(credential)
    return _read(credential, orchestrator)


@router.delete("/{credential_id}", status_code=204)
def delete_credential(credential_id: int, session: Session = Depends(get_session)):
    credential = _get_or_404(session, credential_id)
    session.delete(credential)
    session.commit()
    logger.info("Deleted credential %s", credential_id)
    return Response(status_code=204)


@router.post("/{credential_id}/validate", response_model=ValidationResponse)
async def validate_credential(
    credential_id: int,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Offline format check, then a single probe against the platform."""
    try:
        result = await orchestrator.validate_credential(credential_id)
    except CredentialMissing:
        raise HTTPException(status_code=404, detail="Credential not found")
    return ValidationResponse(
        is_valid=result.is_valid,
        message=result.message,
        error=result.error,
        probe=result.probe,
    )
