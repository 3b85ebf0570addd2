"""
Customer-facing booking routes: create a booking from a cart, pay for it,
claim it into an account and track it.
"""

import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from booking_errors import NotFoundError, ValidationError
from booking_schemas import (
    BookingCreate,
    BookingCreated,
    BookingOut,
    CheckoutSessionOut,
    CheckoutSessionRequest,
    ClaimRequest,
    RemainingSessionRequest,
    TrackOut,
)
from persistence import crud, ledger

from .auth import get_current_customer, get_optional_customer
from .deps import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["bookings"])

NOT_FOUND = "Booking not found"


@router.post("/bookings", response_model=BookingCreated, status_code=status.HTTP_201_CREATED)
def create_booking(
    request: BookingCreate,
    services: Services = Depends(get_services),
    user_id: Optional[str] = Depends(get_optional_customer),
):
    return services.checkout.create_booking(request, user_id=user_id)


@router.post("/bookings/claim", response_model=BookingOut)
def claim_booking(
    request: ClaimRequest,
    services: Services = Depends(get_services),
    user_id: str = Depends(get_current_customer),
):
    with services.db.session() as session:
        booking = crud.get_booking_by_reference(session, request.reference_code)
        if booking is None or booking.customer_email != request.email.strip().lower():
            raise NotFoundError(NOT_FOUND, code="booking_not_found")
        booking_id = booking.id
    result = services.transitions.claim(booking_id, user_id)
    logger.info(f"Booking {booking_id} claimed by user {user_id}")
    return result.booking


@router.get("/bookings/track", response_model=TrackOut)
def track_booking(
    booking_id: Optional[int] = Query(None, alias="bookingId"),
    token: Optional[str] = Query(None, alias="t"),
    reference_code: Optional[str] = Query(None, alias="referenceCode"),
    email: Optional[str] = Query(None),
    services: Services = Depends(get_services),
    user_id: Optional[str] = Depends(get_optional_customer),
):
    """
    Look a booking up by id + capability token, by reference code + email, or
    by id for its signed-in owner. Every mismatch is reported as not found.
    """
    with services.db.session() as session:
        if booking_id is not None and token:
            booking = crud.get_booking_by_id(session, booking_id)
            if booking is None or not secrets.compare_digest(booking.capability_token, token):
                booking = None
        elif reference_code and email:
            booking = crud.get_booking_by_reference(session, reference_code)
            if booking is None or booking.customer_email != email.strip().lower():
                booking = None
        elif booking_id is not None and user_id:
            booking = crud.get_booking_by_id(session, booking_id)
            if booking is None or booking.user_id != user_id:
                booking = None
        else:
            raise ValidationError(
                "Provide bookingId and token, or referenceCode and email", code="missing_lookup"
            )
        if booking is None:
            raise NotFoundError(NOT_FOUND, code="booking_not_found")
        return TrackOut(
            booking=crud.model_to_pydantic(booking),
            timeline=ledger.timeline(session, booking.id),
        )


@router.post("/checkout-sessions", response_model=CheckoutSessionOut)
def create_checkout_session(request: CheckoutSessionRequest, services: Services = Depends(get_services)):
    return services.checkout.create_deposit_session(
        request.booking_id, request.capability_token, request.deposit_choice
    )


@router.post("/checkout-sessions/remaining", response_model=CheckoutSessionOut)
def create_remaining_session(request: RemainingSessionRequest, services: Services = Depends(get_services)):
    return services.checkout.create_remaining_session(request.booking_id)
