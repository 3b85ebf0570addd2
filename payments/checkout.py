import logging
import secrets
from typing import Optional

from sqlalchemy.exc import IntegrityError

from booking_errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from booking_schemas import BookingCreate, BookingCreated, CheckoutSessionOut
from booking_tools import (
    CatalogPricing,
    cart_total,
    generate_capability_token,
    generate_unique_reference_code,
    split_deposit,
)
from persistence import crud, ledger
from persistence.db import Database
from persistence.models import BookingItemModel, BookingModel
from txn_manager import TransactionManager, check_guard

from .gateway import StripeGateway

logger = logging.getLogger(__name__)


class CheckoutService:
    """
    Creates pending bookings from a cart and requests payment sessions for
    them. Totals are always recomputed from catalog pricing; client-submitted
    amounts are only compared, never trusted.
    """

    def __init__(self, db: Database, gateway: StripeGateway, transitions: TransactionManager,
                 dispatcher=None, site_url: str = "http://localhost:3000", reference_attempts: int = 10):
        self.db = db
        self.gateway = gateway
        self.transitions = transitions
        self.dispatcher = dispatcher
        self.site_url = site_url.rstrip("/")
        self.reference_attempts = reference_attempts

    def create_booking(self, request: BookingCreate, user_id: Optional[str] = None) -> BookingCreated:
        """
        Insert Booking + Items + the booking_created ledger entry in a single
        transaction. A repeated idempotency key returns the existing booking
        when the cart matches it and is a conflict otherwise.
        """
        if request.idempotency_key:
            with self.db.session() as session:
                existing = crud.get_booking_by_idempotency_key(session, request.idempotency_key)
                if existing is not None:
                    logger.info(f"Idempotent replay of booking {existing.id} ({request.idempotency_key})")
                    return self._replay(existing, request)

        for _ in range(self.reference_attempts):
            try:
                with self.db.session() as session:
                    booking = self._insert_booking(session, request, user_id)
                    session.commit()
                    snapshot = crud.model_to_pydantic(booking)
                    created = self._created(booking)
                break
            except IntegrityError as e:
                # lost a race on reference code or idempotency key
                if request.idempotency_key:
                    with self.db.session() as session:
                        existing = crud.get_booking_by_idempotency_key(session, request.idempotency_key)
                        if existing is not None:
                            return self._replay(existing, request)
                logger.warning(f"Booking insert collided, retrying: {e.orig}")
        else:
            raise ValidationError("Could not allocate a unique booking reference", code="reference_code_exhausted")

        logger.info(f"Booking {created.booking_id} created ({created.reference_code}) total={created.total_amount}")
        if self.dispatcher is not None:
            self.dispatcher.dispatch(snapshot, "booking_received", dedupe_key="booking_received")
        return created

    def _insert_booking(self, session, request: BookingCreate, user_id: Optional[str]) -> BookingModel:
        pricing = CatalogPricing(lambda item_type, item_id: crud.get_catalog_item(session, item_type, item_id))
        priced = pricing.price(request.items)
        total = cart_total(priced, request.client_total)

        reference_code = generate_unique_reference_code(
            lambda code: crud.reference_code_exists(session, code), attempts=self.reference_attempts
        )
        item_dates = [
            getattr(p.cart_item, "travel_date", None) or getattr(p.cart_item, "start_date", None) for p in priced
        ]
        customer = request.customer
        booking = BookingModel(
            reference_code=reference_code,
            capability_token=generate_capability_token(),
            idempotency_key=request.idempotency_key,
            user_id=user_id,
            customer_name=customer.name.strip(),
            customer_email=customer.email,
            customer_phone=customer.phone,
            travel_date=min(d for d in item_dates if d is not None),
            total_amount=total,
            amount_paid=0,
            remaining_amount=total,
            refunded_amount=0,
            booking_status="pending",
            payment_status="unpaid",
        )
        for p in priced:
            item = p.cart_item
            booking.items.append(BookingItemModel(
                item_type=item.item_type,
                item_id=item.item_id,
                title=p.title,
                vehicle_selection=item.vehicle_selection.selected(),
                vehicle_rates=p.rates,
                subtotal_amount=p.subtotal,
                travel_date=getattr(item, "travel_date", None),
                start_date=getattr(item, "start_date", None),
                end_date=getattr(item, "end_date", None),
                pickup_time=item.pickup_time,
                pickup_location=item.pickup_location.strip(),
                dropoff_location=item.dropoff_location.strip(),
                passengers_count=item.passengers_count,
                large_suitcases=item.large_suitcases,
                notes=item.notes,
            ))
        session.add(booking)
        session.flush()
        ledger.append_event(session, booking, "booking_created", {
            "reference_code": reference_code,
            "items_count": len(priced),
            "user_id": user_id,
        })
        return booking

    @staticmethod
    def _created(booking: BookingModel) -> BookingCreated:
        return BookingCreated(
            booking_id=booking.id,
            reference_code=booking.reference_code,
            capability_token=booking.capability_token,
            total_amount=booking.total_amount,
        )

    def _replay(self, existing: BookingModel, request: BookingCreate) -> BookingCreated:
        stored = [(i.item_type, i.item_id, sorted((i.vehicle_selection or {}).items())) for i in existing.items]
        submitted = [
            (i.item_type, i.item_id, sorted(i.vehicle_selection.selected().items())) for i in request.items
        ]
        if stored != submitted or existing.customer_email.lower() != request.customer.email.lower():
            logger.warning(f"Idempotency key {request.idempotency_key} reused with a different cart")
            raise ConflictError(
                "Idempotency key was already used for a different cart",
                guard="idempotency_key_matches_cart",
            )
        return self._created(existing)

    # --- payment sessions ----------------------------------------------------

    def create_deposit_session(self, booking_id: int, capability_token: str, deposit_choice: int) -> CheckoutSessionOut:
        """
        Request a session for the deposit share of the total. Safe to call
        again for the same booking after a gateway failure.
        """
        with self.db.session() as session:
            booking = crud.get_booking_by_id(session, booking_id)
            if booking is None:
                raise NotFoundError(f"Booking {booking_id} not found", code="booking_not_found")
            if not secrets.compare_digest(booking.capability_token, capability_token):
                raise AuthorizationError("Invalid booking token", code="invalid_token")
            check_guard("checkout", booking.booking_status, booking.payment_status)
            if booking.payment_status != "unpaid":
                raise ConflictError(
                    f"Deposit already received (payment status '{booking.payment_status}')",
                    guard="deposit_requires_unpaid",
                )
            due_now, remaining_after = split_deposit(booking.total_amount, deposit_choice)
            reference_code = booking.reference_code
            token = booking.capability_token

        if due_now <= 0:
            raise ValidationError("Invalid deposit amount calculated", code="invalid_deposit_amount")

        return_url = f"{self.site_url}/booking/success?bookingId={booking_id}&t={token}"
        checkout = self.gateway.create_checkout_session(
            amount=due_now,
            name=f"Booking Deposit ({deposit_choice}%) - {reference_code}",
            description=f"Deposit payment for booking {reference_code}",
            metadata={
                "booking_id": str(booking_id),
                "token": token,
                "pay_type": "deposit",
                "pay_percent": str(deposit_choice),
            },
            success_url=return_url,
            cancel_url=return_url,
            client_reference_id=str(booking_id),
        )
        self.transitions.record_checkout_session(
            booking_id, "deposit", checkout.id, due_now, deposit_choice=deposit_choice
        )
        return CheckoutSessionOut(
            session_url=checkout.url, amount_due_now=due_now, remaining_after_deposit=remaining_after
        )

    def create_remaining_session(self, booking_id: int) -> CheckoutSessionOut:
        """Session for the outstanding balance, while one exists and the booking is open."""
        with self.db.session() as session:
            booking = crud.get_booking_by_id(session, booking_id)
            if booking is None:
                raise NotFoundError(f"Booking {booking_id} not found", code="booking_not_found")
            if booking.booking_status == "cancelled":
                raise ConflictError("Cannot pay for cancelled booking", guard="balance_requires_open_booking")
            if booking.remaining_amount <= 0:
                raise ConflictError("No remaining balance to pay", guard="balance_requires_remaining_amount")
            check_guard("checkout", booking.booking_status, booking.payment_status)
            amount = booking.remaining_amount
            reference_code = booking.reference_code
            token = booking.capability_token

        # anyone may open this session, so the token travels only in metadata
        return_url = f"{self.site_url}/booking/success?bookingId={booking_id}&type=remaining"
        checkout = self.gateway.create_checkout_session(
            amount=amount,
            name=f"Remaining Balance - {reference_code}",
            description=f"Balance payment for booking {reference_code}",
            metadata={"booking_id": str(booking_id), "token": token, "pay_type": "balance"},
            success_url=return_url,
            cancel_url=return_url,
            client_reference_id=str(booking_id),
        )
        self.transitions.record_checkout_session(booking_id, "balance", checkout.id, amount)
        return CheckoutSessionOut(session_url=checkout.url, amount_due_now=amount, remaining_after_deposit=0)
