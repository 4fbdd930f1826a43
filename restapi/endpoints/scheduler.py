"""Scheduler status and manual trigger endpoints."""

from fastapi import APIRouter, Depends, Response

from components.core.schemas import APIResponse
from components.scheduler.runner import Scheduler
from components.scheduler.schemas import TriggerResult
from restapi.dependencies import get_scheduler

router = APIRouter(
    prefix="/scheduler",
    tags=["scheduler"],
)


def _to_response(result: TriggerResult, response: Response) -> APIResponse:
    if not result.success:
        response.status_code = 500
    return APIResponse(success=result.success, message=result.message, data=result.data)


@router.get("/status", response_model=APIResponse)
async def get_scheduler_status(scheduler: Scheduler = Depends(get_scheduler)):
    """Get running state, timezone and next run time of every job."""
    return APIResponse(
        success=True,
        message="Scheduler running" if scheduler.running else "Scheduler stopped",
        data=scheduler.get_status(),
    )


@router.post("/trigger/reminders", response_model=APIResponse)
async def trigger_reminders(response: Response, scheduler: Scheduler = Depends(get_scheduler)):
    """Run the reminder pass now, for today."""
    return _to_response(await scheduler.trigger_reminder_pass(), response)


@router.post("/trigger/pending", response_model=APIResponse)
async def trigger_pending(response: Response, scheduler: Scheduler = Depends(get_scheduler)):
    """Drain due pending notifications now."""
    return _to_response(await scheduler.trigger_pending_drain(), response)


@router.post("/trigger/dpd", response_model=APIResponse)
async def trigger_dpd(response: Response, scheduler: Scheduler = Depends(get_scheduler)):
    """Recalculate days past due now."""
    return _to_response(await scheduler.trigger_dpd_sweep(), response)
