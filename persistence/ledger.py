"""
Append-only booking event ledger.

Exactly one entry is appended per booking mutation, inside the same
transaction as the mutation, carrying the resulting status snapshot. There is
intentionally no update or delete function in this module.
"""

from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from booking_schemas import BookingEventOut

from .models import BookingEventModel, BookingModel

PUBLIC_SUMMARIES = {
    "booking_created": "Booking created",
    "checkout_session_created": "Payment link created",
    "booking_confirmed": "Booking confirmed",
    "booking_cancelled": "Booking cancelled",
    "booking_completed": "Trip completed",
    "booking_reopened": "Booking reopened",
    "booking_claimed": "Booking linked to your account",
    "payment_received": "Payment received",
    "payment_marked_paid": "Payment marked as paid",
    "payment_pending": "Payment pending",
    "payment_failed": "Payment failed",
    "payment_refunded": "Refund processed",
}

# audit-only entries never shown on the customer timeline
PRIVATE_EVENTS = {"admin_note_added"}


def snapshot(booking: BookingModel) -> dict:
    return {
        "booking_status": booking.booking_status,
        "payment_status": booking.payment_status,
        "total_amount": booking.total_amount,
        "amount_paid": booking.amount_paid,
        "remaining_amount": booking.remaining_amount,
        "refunded_amount": booking.refunded_amount,
    }


def append_event(db: Session, booking: BookingModel, event_type: str,
                 payload: Optional[dict] = None) -> BookingEventModel:
    entry = BookingEventModel(
        booking_id=booking.id,
        event_type=event_type,
        payload={**(payload or {}), "state": snapshot(booking)},
    )
    db.add(entry)
    return entry


def list_events(db: Session, booking_id: int) -> List[BookingEventModel]:
    stmt = (
        select(BookingEventModel)
        .where(BookingEventModel.booking_id == booking_id)
        .order_by(BookingEventModel.created_at, BookingEventModel.id)
    )
    return list(db.execute(stmt).scalars())


def summarize(event_type: str) -> str:
    return PUBLIC_SUMMARIES.get(event_type) or event_type.replace("_", " ").capitalize()


def timeline(db: Session, booking_id: int, audit: bool = False) -> List[BookingEventOut]:
    """Customer activity timeline, or the full audit trail when `audit` is set."""
    out = []
    for entry in list_events(db, booking_id):
        if not audit and entry.event_type in PRIVATE_EVENTS:
            continue
        out.append(BookingEventOut(
            id=entry.id,
            event_type=entry.event_type,
            summary=summarize(entry.event_type),
            created_at=entry.created_at,
            payload=entry.payload if audit else None,
        ))
    return out
