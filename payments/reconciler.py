"""
Payment webhook reconciliation.

Stripe delivers events at least once and in any order. Each event id is
applied at most once: the webhook_events row is written in the same
transaction as the booking mutation, so a re-delivery either finds the row and
returns early, or loses the race on the unique constraint and rolls back.
"""

import logging
import secrets
from typing import Optional

from sqlalchemy.exc import IntegrityError

from booking_errors import ConflictError, NotFoundError
from persistence import crud
from persistence.db import Database
from persistence.models import BookingPaymentModel
from txn_manager import TransactionManager

from .gateway import StripeGateway

logger = logging.getLogger(__name__)

SUCCESS, PENDING, FAILURE, REFUND, IGNORED = "success", "pending", "failure", "refund", "ignored"


def classify_event(event: dict) -> str:
    event_type = event.get("type")
    obj = event.get("data", {}).get("object", {}) or {}
    if event_type == "checkout.session.completed":
        # delayed methods (bank transfer, konbini) complete as unpaid and settle later
        if obj.get("payment_status") == "unpaid":
            return PENDING
        return SUCCESS
    if event_type == "checkout.session.async_payment_succeeded":
        return SUCCESS
    if event_type == "checkout.session.async_payment_failed":
        return FAILURE
    if event_type == "charge.refunded":
        return REFUND
    return IGNORED


class ReconcileOutcome:
    def __init__(self, event_id: str, kind: str, status: str, booking_id: Optional[int] = None,
                 duplicate: bool = False, result=None):
        self.event_id = event_id
        self.kind = kind
        self.status = status
        self.booking_id = booking_id
        self.duplicate = duplicate
        self.result = result

    def as_dict(self) -> dict:
        return {
            "received": True,
            "eventId": self.event_id,
            "kind": self.kind,
            "status": self.status,
            "duplicate": self.duplicate,
        }


class PaymentReconciler:
    def __init__(self, db: Database, gateway: StripeGateway, transitions: TransactionManager):
        self.db = db
        self.gateway = gateway
        self.transitions = transitions

    def handle(self, payload: bytes, sig_header: Optional[str]) -> ReconcileOutcome:
        """Verify the signature, then reconcile. Raises SignatureError before touching storage."""
        event = self.gateway.verify_event(payload, sig_header)
        return self.reconcile(event)

    def reconcile(self, event: dict) -> ReconcileOutcome:
        event_id = event["id"]
        event_type = event.get("type", "")
        kind = classify_event(event)

        with self.db.session() as session:
            seen = crud.get_webhook_event(session, event_id)
            if seen is not None:
                logger.info(f"[Stripe Webhook] Event {event_id} already processed ({seen.status}), skipping")
                return ReconcileOutcome(event_id, kind, seen.status, seen.booking_id, duplicate=True)

        logger.info(f"[Stripe Webhook] Verified event: {event_type} ({event_id}) -> {kind}")
        try:
            if kind == IGNORED:
                return self._record(event, kind, "ignored", None, {"message": "Unhandled event type"})
            if kind == REFUND:
                return self._refund(event)
            return self._session_event(event, kind)
        except IntegrityError:
            # a concurrent delivery of the same event id committed first
            logger.info(f"[Stripe Webhook] Event {event_id} recorded concurrently, treating as duplicate")
            with self.db.session() as session:
                seen = crud.get_webhook_event(session, event_id)
            if seen is None:
                raise
            return ReconcileOutcome(event_id, kind, seen.status, seen.booking_id, duplicate=True)

    # --- helpers -------------------------------------------------------------

    def _record(self, event: dict, kind: str, status: str, booking_id: Optional[int], detail: dict) -> ReconcileOutcome:
        with self.db.session() as session:
            crud.add_webhook_event(session, event["id"], event.get("type", ""), status, booking_id, detail)
            session.commit()
        if status in ("unmatched", "rejected"):
            logger.error(f"[Stripe Webhook] Event {event['id']} {status}: {detail}")
        return ReconcileOutcome(event["id"], kind, status, booking_id)

    def _marker(self, event: dict, status: str, detail: dict):
        """before_commit hook that records the event id inside the mutating transaction."""

        def before_commit(session, booking, mutation):
            crud.add_webhook_event(session, event["id"], event.get("type", ""), status, booking.id, detail)

        return before_commit

    def _match_booking(self, metadata: dict) -> Optional[str]:
        """Return a reason string if metadata does not correlate to a booking, else None."""
        booking_id = metadata.get("booking_id")
        token = metadata.get("token")
        if not booking_id or not str(booking_id).isdigit():
            return "Missing bookingId in metadata"
        with self.db.session() as session:
            booking = crud.get_booking_by_id(session, int(booking_id))
            if booking is None:
                return "Booking not found"
            if not token or not secrets.compare_digest(booking.capability_token, str(token)):
                return "Booking token mismatch"
        return None

    def _session_event(self, event: dict, kind: str) -> ReconcileOutcome:
        session_obj = event["data"]["object"]
        metadata = session_obj.get("metadata") or {}
        problem = self._match_booking(metadata)
        if problem:
            return self._record(event, kind, "unmatched", None, {"error": problem, "session_id": session_obj.get("id")})

        booking_id = int(metadata["booking_id"])
        pay_type = metadata.get("pay_type", "deposit")
        amount = session_obj.get("amount_total") or 0
        payment_intent = session_obj.get("payment_intent")
        if isinstance(payment_intent, dict):
            payment_intent = payment_intent.get("id")
        details = {
            "event_id": event["id"],
            "session_id": session_obj.get("id"),
            "payment_intent_id": payment_intent,
            "pay_type": pay_type,
            "amount": amount,
            "payment_method": (session_obj.get("payment_method_types") or ["card"])[0],
        }

        try:
            if kind == SUCCESS:
                if amount <= 0:
                    return self._record(event, kind, "rejected", booking_id, {**details, "error": "Non-positive amount"})
                marker = self._marker(event, "applied", details)

                def record_payment(session, booking, mutation):
                    marker(session, booking, mutation)
                    session.add(BookingPaymentModel(
                        booking_id=booking.id,
                        event_id=event["id"],
                        session_id=details["session_id"],
                        payment_intent_id=payment_intent,
                        pay_type=pay_type,
                        amount_reported=amount,
                        amount_applied=mutation.payload["amount_applied"],
                    ))

                result = self.transitions.apply_payment(
                    booking_id, amount, payment=details, before_commit=record_payment, dedupe_key=event["id"]
                )
            elif kind == PENDING:
                result = self.transitions.record_payment_pending(
                    booking_id, details, before_commit=self._marker(event, "applied", details), dedupe_key=event["id"]
                )
            else:
                result = self.transitions.record_payment_failed(
                    booking_id, details, before_commit=self._marker(event, "applied", details), dedupe_key=event["id"]
                )
        except ConflictError as e:
            # e.g. a payment reported for a completed booking: keep it for manual reconciliation
            return self._record(event, kind, "rejected", booking_id, {**details, "error": e.message, "guard": e.guard})
        except NotFoundError as e:
            return self._record(event, kind, "unmatched", None, {**details, "error": e.message})

        return ReconcileOutcome(event["id"], kind, "applied", booking_id, result=result)

    def _refund(self, event: dict) -> ReconcileOutcome:
        charge = event["data"]["object"]
        payment_intent = charge.get("payment_intent")
        if isinstance(payment_intent, dict):
            payment_intent = payment_intent.get("id")
        with self.db.session() as session:
            payment = crud.get_payment_by_intent(session, payment_intent) if payment_intent else None
            booking_id = payment.booking_id if payment else None
        if booking_id is None:
            return self._record(event, REFUND, "unmatched", None,
                                {"error": "Booking not found", "charge_id": charge.get("id"),
                                 "payment_intent_id": payment_intent})

        refunds = (charge.get("refunds") or {}).get("data") or [{}]
        details = {
            "event_id": event["id"],
            "charge_id": charge.get("id"),
            "payment_intent_id": payment_intent,
            "refund_reason": refunds[0].get("reason") or "unknown",
        }
        # amount_refunded is cumulative for the charge; apply only the increase
        refunded_total = charge.get("amount_refunded") or 0
        previous = (event["data"].get("previous_attributes") or {}).get("amount_refunded") or 0
        amount = refunded_total - previous
        if amount <= 0:
            return self._record(event, REFUND, "rejected", booking_id, {**details, "error": "Nothing refunded"})
        try:
            result = self.transitions.apply_refund(
                booking_id, amount, refund=details, before_commit=self._marker(event, "applied", details)
            )
        except (ConflictError, NotFoundError) as e:
            return self._record(event, REFUND, "rejected", booking_id, {**details, "error": e.message})
        return ReconcileOutcome(event["id"], REFUND, "applied", booking_id, result=result)
