"""Notification endpoints for the API."""

from fastapi import APIRouter, Depends

from components.core.schemas import APIResponse
from components.notification import schemas
from components.notification.dispatcher import NotificationDispatcher
from restapi.dependencies import get_dispatcher

router = APIRouter(
    prefix="/notifications",
    tags=["notifications"],
    responses={404: {"description": "Not found"}},
)


@router.post("/", response_model=APIResponse, status_code=201)
async def schedule_notification(
    request: schemas.NotificationRequest,
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """
    Render a template for an installment and queue it.

    Without ``scheduled_for``, or with a time already past, the message is
    sent immediately. A second request for the same installment and template
    on the same day is rejected, as is a WhatsApp message to a contract that
    already received one within the rate-limit window.
    """
    log = await dispatcher.schedule(
        installment_id=request.installment_id,
        template_id=request.template_id,
        channel=request.channel,
        recipient=request.recipient,
        scheduled_for=request.scheduled_for,
    )
    return APIResponse(
        success=True,
        message=f"Notification {log.status.value}",
        data=schemas.NotificationLog.model_validate(log),
    )


@router.post("/test", response_model=APIResponse)
async def send_test_notification(
    request: schemas.NotificationTestRequest,
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Send a one-off message through a channel provider to check its configuration."""
    await dispatcher.send_test(request.channel, request.recipient, request.subject, request.body)
    return APIResponse(success=True, message=f"Test {request.channel.value} message sent")


@router.get("/pending", response_model=APIResponse)
async def get_pending_notifications(
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Get the notifications the next drain will attempt."""
    logs = await dispatcher.get_pending()
    return APIResponse(
        success=True,
        message=f"Found {len(logs)} pending notifications",
        data=[schemas.NotificationLog.model_validate(log) for log in logs],
    )


@router.get("/{log_id}", response_model=APIResponse)
async def get_notification(
    log_id: int,
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    log = await dispatcher.get_log(log_id)
    return APIResponse(
        success=True,
        message="Notification found",
        data=schemas.NotificationLog.model_validate(log),
    )
