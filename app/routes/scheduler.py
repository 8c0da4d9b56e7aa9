"""
Trigger scheduler status and manual run endpoints.
"""

from fastapi import APIRouter, HTTPException

from app.infrastructure.observability.logging import get_logger
from app.jobs.trigger_scheduler import TriggerSchedulerError, trigger_scheduler
from app.models.domain.trigger_domain import Cadence

router = APIRouter(prefix="/scheduler", tags=["scheduler"])
logger = get_logger(__name__)


@router.get("/status")
async def scheduler_status():
    return trigger_scheduler.get_status()


@router.post("/run/{cadence}")
async def run_scheduler(cadence: str):
    """Run one tick of the given cadence now. Returns 409 if one is already running."""
    try:
        selected = Cadence(cadence.lower())
    except ValueError:
        raise HTTPException(
            status_code=404,
            detail=f"Unknown cadence '{cadence}'. Use one of: {', '.join(c.value for c in Cadence)}",
        ) from None

    try:
        result = await trigger_scheduler.run_now(selected)
    except TriggerSchedulerError as e:
        logger.error("Manual scheduler run failed", cadence=selected.value, error=str(e), operation=e.operation)
        raise HTTPException(status_code=503, detail=str(e)) from e

    if result.get("skipped"):
        raise HTTPException(status_code=409, detail=f"{selected.value} tick already running")

    return result
