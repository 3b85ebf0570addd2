from fastapi import APIRouter, Depends

from booking_schemas import DispatchOut, DispatchRequest

from .auth import get_current_admin
from .deps import Services, get_services

router = APIRouter(tags=["notifications"])


@router.post("/notifications/dispatch", response_model=DispatchOut)
def dispatch_notification(request: DispatchRequest, services: Services = Depends(get_services),
                          admin: dict = Depends(get_current_admin)):
    """
    Re-send a notification for a booking. Always answers 200; delivery
    problems come back in `warning`.
    """
    handle = services.dispatcher.dispatch_for_booking(request.booking_id, request.event_type)
    result = handle.result(services.settings.NOTIFY_WAIT_SECONDS)
    if result is None:
        return DispatchOut(ok=True, warning="Email still sending, check logs")
    return DispatchOut(ok=result.ok, sent=result.sent, skipped=result.skipped, warning=result.warning)
