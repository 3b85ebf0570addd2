from typing import Optional

from fastapi import APIRouter, Body, Depends

from booking_errors import NotFoundError
from booking_schemas import AdminActionOut, AdminBookingOut, AdminNoteRequest
from persistence import crud, ledger
from txn_manager import TransitionResult

from .auth import get_current_admin
from .deps import Services, get_services

router = APIRouter(prefix="/admin/bookings", tags=["admin"])


def _action_out(result: TransitionResult, services: Services) -> AdminActionOut:
    # give the email a moment so a failure can be shown to the admin
    warning = result.notification_warning(services.settings.NOTIFY_WAIT_SECONDS)
    return AdminActionOut(
        booking=result.booking,
        notification_warning=warning,
        integrity_warnings=[str(w) for w in result.warnings],
    )


def _actor(admin: dict) -> str:
    return f"admin:{admin.get('sub')}"


@router.get("/{booking_id}", response_model=AdminBookingOut)
def get_booking(booking_id: int, services: Services = Depends(get_services), admin: dict = Depends(get_current_admin)):
    with services.db.session() as session:
        booking = crud.get_booking_by_id(session, booking_id)
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found", code="booking_not_found")
        return AdminBookingOut(
            booking=crud.model_to_pydantic(booking),
            admin_notes=booking.admin_notes,
            events=ledger.timeline(session, booking_id, audit=True),
        )


@router.post("/{booking_id}/confirm", response_model=AdminActionOut)
def confirm_booking(booking_id: int, services: Services = Depends(get_services),
                    admin: dict = Depends(get_current_admin)):
    return _action_out(services.transitions.confirm(booking_id, actor=_actor(admin)), services)


@router.post("/{booking_id}/cancel", response_model=AdminActionOut)
def cancel_booking(booking_id: int, reason: Optional[str] = Body(None, embed=True),
                   services: Services = Depends(get_services), admin: dict = Depends(get_current_admin)):
    return _action_out(services.transitions.cancel(booking_id, actor=_actor(admin), reason=reason), services)


@router.post("/{booking_id}/complete", response_model=AdminActionOut)
def complete_booking(booking_id: int, services: Services = Depends(get_services),
                     admin: dict = Depends(get_current_admin)):
    return _action_out(services.transitions.complete(booking_id, actor=_actor(admin)), services)


@router.post("/{booking_id}/mark-paid", response_model=AdminActionOut)
def mark_paid(booking_id: int, services: Services = Depends(get_services), admin: dict = Depends(get_current_admin)):
    return _action_out(services.transitions.mark_paid(booking_id, actor=_actor(admin)), services)


@router.post("/{booking_id}/reopen", response_model=AdminActionOut)
def reopen_booking(booking_id: int, services: Services = Depends(get_services),
                   admin: dict = Depends(get_current_admin)):
    return _action_out(services.transitions.reopen(booking_id, actor=_actor(admin)), services)


@router.post("/{booking_id}/notes", response_model=AdminActionOut)
def update_notes(booking_id: int, request: AdminNoteRequest, services: Services = Depends(get_services),
                 admin: dict = Depends(get_current_admin)):
    result = services.transitions.add_admin_note(booking_id, request.notes, actor=_actor(admin))
    return _action_out(result, services)
