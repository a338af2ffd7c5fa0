"""Public per-platform sync status."""
import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from activity_sync.db.engine import get_engine
from activity_sync.sync.status import StatusAggregator

logger = logging.getLogger(__name__)

router = APIRouter()


def get_aggregator() -> StatusAggregator:
    return StatusAggregator(get_engine())


@router.get("/sync-status")
def sync_status():
    """
    {"platforms": [{"platform", "lastSyncAt", "status"}]}, sorted by platform.

    Never raises: any failure is logged and reported as 500 with an empty list.
    """
    try:
        platforms = [st.to_json() for st in get_aggregator().collect()]
    except Exception as exc:
        logger.error("Failed to collect sync status: %s", exc)
        return JSONResponse(status_code=500, content={"platforms": []})
    return {"platforms": platforms}
