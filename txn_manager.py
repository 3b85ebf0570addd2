import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from sqlalchemy.orm.exc import StaleDataError

from booking_errors import ConflictError, IntegrityWarning, NotFoundError, TransientError, ValidationError
from booking_schemas import BookingOut
from booking_tools import derive_payment_status
from persistence import crud, ledger
from persistence.db import Database
from persistence.models import BookingModel

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("cancelled", "completed")


def check_guard(action: str, booking_status: str, payment_status: str):
    """
    Raise ConflictError if `action` is not allowed from the given compound
    state. Kept free of I/O so it can be reasoned about on its own.
    """
    if action == "confirm":
        if booking_status != "pending":
            raise ConflictError(f"Cannot confirm a {booking_status} booking", guard="confirm_requires_pending")
    elif action == "cancel":
        if booking_status in TERMINAL_STATUSES:
            raise ConflictError(f"Booking is already {booking_status}", guard="cancel_requires_open_booking")
    elif action == "complete":
        if booking_status in TERMINAL_STATUSES:
            raise ConflictError(f"Cannot complete a {booking_status} booking", guard="complete_requires_open_booking")
        if payment_status != "paid":
            raise ConflictError(
                f"Cannot complete a booking with payment status '{payment_status}'",
                guard="complete_requires_full_payment",
            )
    elif action == "mark_paid":
        if booking_status in TERMINAL_STATUSES:
            raise ConflictError(f"Cannot mark a {booking_status} booking as paid", guard="mark_paid_requires_open_booking")
    elif action in ("apply_payment", "apply_refund", "record_payment"):
        if booking_status == "completed":
            raise ConflictError("Completed bookings cannot be altered by payment events",
                                guard="payment_requires_incomplete_booking")
    elif action == "reopen":
        if booking_status != "cancelled":
            raise ConflictError(f"Only cancelled bookings can be reopened (status is {booking_status})",
                                guard="reopen_requires_cancelled")
    elif action == "checkout":
        if booking_status in TERMINAL_STATUSES:
            raise ConflictError(f"Cannot take payment for a {booking_status} booking",
                                guard="checkout_requires_open_booking")
    else:
        raise ValueError(f"Unknown action: {action}")


class Mutation:
    """What a transition did: the ledger entry to append and what to notify."""

    def __init__(self, event_type: str, payload: Optional[dict] = None,
                 notification: Optional[str] = None, context: Optional[dict] = None,
                 dedupe_key: Optional[str] = None, warnings: Optional[List[IntegrityWarning]] = None):
        self.event_type = event_type
        self.payload = payload or {}
        self.notification = notification
        self.context = context or {}
        self.dedupe_key = dedupe_key
        self.warnings = warnings or []


class TransitionResult:
    def __init__(self, booking: BookingOut, mutation: Mutation, notification=None):
        self.booking = booking
        self.event_type = mutation.event_type
        self.warnings = mutation.warnings
        self.notification = notification

    def notification_warning(self, timeout: float = 0.0) -> Optional[str]:
        if self.notification is None:
            return None
        return self.notification.warning(timeout)


class TransactionManager:
    """
    Booking state machine. Every transition runs as one database transaction:
    lock + read -> guard -> mutate -> append ledger entry -> commit. The
    notification is scheduled only after the commit and can never undo it.

    Concurrent writers on the same booking are serialized by the row lock and,
    where the database has none, by the version column: a StaleDataError
    retries the whole transition against fresh state.
    """

    def __init__(self, db: Database, dispatcher=None, max_attempts: int = 5):
        self.db = db
        self.dispatcher = dispatcher
        self.max_attempts = max_attempts

    def run(self, booking_id: int, action: Callable[[BookingModel], Mutation],
            before_commit: Optional[Callable] = None, notify: bool = True) -> TransitionResult:
        """
        Apply `action` to the booking atomically. `before_commit(session, booking, mutation)`
        runs inside the same transaction (the reconciler records the event id there).
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                with self.db.session() as session:
                    booking = crud.get_booking_for_update(session, booking_id)
                    if booking is None:
                        raise NotFoundError(f"Booking {booking_id} not found", code="booking_not_found")
                    mutation = action(booking)
                    booking.last_action_at = datetime.now(timezone.utc)
                    ledger.append_event(session, booking, mutation.event_type, mutation.payload)
                    if before_commit is not None:
                        before_commit(session, booking, mutation)
                    session.commit()
                    snapshot = crud.model_to_pydantic(booking)
                    version = booking.version
                break
            except StaleDataError:
                logger.info(f"Booking {booking_id} changed concurrently (attempt {attempt}/{self.max_attempts}), retrying")
        else:
            raise TransientError(f"Booking {booking_id} is being modified concurrently, try again")

        for warning in mutation.warnings:
            logger.warning(f"[IntegrityWarning] {warning}")

        handle = None
        if notify and mutation.notification and self.dispatcher is not None:
            handle = self.dispatcher.dispatch(
                snapshot,
                mutation.notification,
                context=mutation.context,
                dedupe_key=mutation.dedupe_key or f"{mutation.event_type}:v{version}",
            )
        logger.info(
            f"Booking {booking_id} {mutation.event_type}: "
            f"{snapshot.booking_status}/{snapshot.payment_status} paid={snapshot.amount_paid} "
            f"remaining={snapshot.remaining_amount}"
        )
        return TransitionResult(snapshot, mutation, handle)

    # --- admin transitions ---------------------------------------------------

    def confirm(self, booking_id: int, actor: str = "admin") -> TransitionResult:
        def action(booking):
            check_guard("confirm", booking.booking_status, booking.payment_status)
            booking.booking_status = "confirmed"
            return Mutation("booking_confirmed", {"actor": actor}, notification="booking_confirmed")

        return self.run(booking_id, action)

    def cancel(self, booking_id: int, actor: str = "admin", reason: Optional[str] = None) -> TransitionResult:
        def action(booking):
            check_guard("cancel", booking.booking_status, booking.payment_status)
            previous = booking.booking_status
            booking.booking_status = "cancelled"
            return Mutation(
                "booking_cancelled",
                {"actor": actor, "reason": reason, "previous_status": previous},
                notification="booking_cancelled",
                context={"reason": reason},
            )

        return self.run(booking_id, action)

    def complete(self, booking_id: int, actor: str = "admin") -> TransitionResult:
        def action(booking):
            check_guard("complete", booking.booking_status, booking.payment_status)
            booking.booking_status = "completed"
            return Mutation("booking_completed", {"actor": actor}, notification="review_request")

        return self.run(booking_id, action)

    def mark_paid(self, booking_id: int, actor: str = "admin") -> TransitionResult:
        def action(booking):
            check_guard("mark_paid", booking.booking_status, booking.payment_status)
            delta = booking.total_amount - booking.amount_paid
            booking.amount_paid = booking.total_amount
            booking.remaining_amount = 0
            booking.payment_status = "paid"
            return Mutation(
                "payment_marked_paid",
                {"actor": actor, "amount_marked": delta},
                notification="payment_received" if delta > 0 else None,
                context={"amount_received": delta, "source": "manual"},
            )

        return self.run(booking_id, action)

    def reopen(self, booking_id: int, actor: str = "admin") -> TransitionResult:
        def action(booking):
            check_guard("reopen", booking.booking_status, booking.payment_status)
            booking.booking_status = "pending"
            return Mutation("booking_reopened", {"actor": actor})

        return self.run(booking_id, action)

    def claim(self, booking_id: int, user_id: str) -> TransitionResult:
        """Link a guest booking to a customer account. Re-claiming by the same user is a no-op entry."""

        def action(booking):
            if booking.user_id and booking.user_id != user_id:
                raise ConflictError("Booking already belongs to another account", guard="claim_requires_unowned")
            booking.user_id = user_id
            return Mutation("booking_claimed", {"user_id": user_id})

        return self.run(booking_id, action)

    def add_admin_note(self, booking_id: int, notes: str, actor: str = "admin") -> TransitionResult:
        def action(booking):
            booking.admin_notes = notes
            return Mutation("admin_note_added", {"actor": actor, "length": len(notes)})

        return self.run(booking_id, action)

    # --- payment transitions -------------------------------------------------

    def apply_payment(self, booking_id: int, amount: int, payment: Optional[dict] = None,
                      before_commit: Optional[Callable] = None, dedupe_key: Optional[str] = None) -> TransitionResult:
        """
        Add `amount` to amount_paid, clamped to total_amount. Any excess is
        reported as an IntegrityWarning rather than dropped or raised.
        """
        if not isinstance(amount, int) or amount <= 0:
            raise ValidationError(f"Payment amount must be a positive integer, got {amount!r}", code="invalid_amount")

        def action(booking):
            check_guard("apply_payment", booking.booking_status, booking.payment_status)
            applied = min(amount, booking.remaining_amount)
            warnings = []
            if amount > applied:
                warnings.append(IntegrityWarning(booking.id, amount, applied))
            booking.amount_paid += applied
            booking.remaining_amount = booking.total_amount - booking.amount_paid
            booking.payment_status = derive_payment_status(booking.total_amount, booking.amount_paid)
            payload = {**(payment or {}), "amount_reported": amount, "amount_applied": applied}
            if warnings:
                payload["integrity_warning"] = warnings[0].as_dict()
            if booking.booking_status == "cancelled":
                payload["booking_cancelled"] = True
                logger.warning(f"Payment of {amount} received for cancelled booking {booking.id}")
            return Mutation(
                "payment_received",
                payload,
                notification="payment_received" if applied > 0 else None,
                context={
                    "amount_received": applied,
                    "fully_paid": booking.payment_status == "paid",
                    "source": "gateway",
                },
                dedupe_key=dedupe_key,
                warnings=warnings,
            )

        return self.run(booking_id, action, before_commit=before_commit)

    def apply_refund(self, booking_id: int, amount: int, refund: Optional[dict] = None,
                     before_commit: Optional[Callable] = None) -> TransitionResult:
        if not isinstance(amount, int) or amount <= 0:
            raise ValidationError(f"Refund amount must be a positive integer, got {amount!r}", code="invalid_amount")

        def action(booking):
            check_guard("apply_refund", booking.booking_status, booking.payment_status)
            refunded = min(amount, booking.amount_paid)
            booking.amount_paid -= refunded
            booking.remaining_amount = booking.total_amount - booking.amount_paid
            booking.refunded_amount += refunded
            booking.payment_status = "refunded"
            payload = {**(refund or {}), "amount_reported": amount, "amount_refunded": refunded}
            return Mutation("payment_refunded", payload)

        return self.run(booking_id, action, before_commit=before_commit)

    def record_payment_pending(self, booking_id: int, details: Optional[dict] = None,
                               before_commit: Optional[Callable] = None,
                               dedupe_key: Optional[str] = None) -> TransitionResult:
        def action(booking):
            check_guard("record_payment", booking.booking_status, booking.payment_status)
            return Mutation("payment_pending", details, notification="payment_pending",
                            context=dict(details or {}), dedupe_key=dedupe_key)

        return self.run(booking_id, action, before_commit=before_commit)

    def record_payment_failed(self, booking_id: int, details: Optional[dict] = None,
                              before_commit: Optional[Callable] = None,
                              dedupe_key: Optional[str] = None) -> TransitionResult:
        def action(booking):
            check_guard("record_payment", booking.booking_status, booking.payment_status)
            return Mutation("payment_failed", details, notification="payment_failed",
                            context=dict(details or {}), dedupe_key=dedupe_key)

        return self.run(booking_id, action, before_commit=before_commit)

    def record_checkout_session(self, booking_id: int, pay_type: str, session_id: str, amount: int,
                                deposit_choice: Optional[int] = None) -> TransitionResult:
        def action(booking):
            check_guard("checkout", booking.booking_status, booking.payment_status)
            if pay_type == "deposit":
                booking.deposit_choice = deposit_choice
                booking.deposit_session_id = session_id
            else:
                booking.balance_session_id = session_id
            return Mutation(
                "checkout_session_created",
                {"pay_type": pay_type, "session_id": session_id, "amount": amount, "deposit_choice": deposit_choice},
            )

        return self.run(booking_id, action)
