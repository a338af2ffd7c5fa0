"""Shared FastAPI dependencies."""
import secrets
from typing import Optional

from fastapi import Header, HTTPException

from activity_sync.config import get_settings
from activity_sync.db.engine import get_engine
from activity_sync.sync.orchestrator import SyncOrchestrator

_orchestrator: Optional[SyncOrchestrator] = None


def get_orchestrator() -> SyncOrchestrator:
    """Process-wide orchestrator so token buckets are shared across requests."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = SyncOrchestrator(get_engine())
    return _orchestrator


def require_admin(authorization: Optional[str] = Header(default=None)) -> None:
    """
    Bearer check against CRON_SECRET for the admin routes.

    With no secret configured the routes are open (local single-user setup).
    """
    expected = get_settings().cron_secret
    if not expected:
        return
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not secrets.compare_digest(token, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")
