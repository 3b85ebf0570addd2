from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .db import Base


def utcnow():
    return datetime.now(timezone.utc)


class BookingModel(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint("amount_paid >= 0", name="ck_bookings_amount_paid_non_negative"),
        CheckConstraint("remaining_amount >= 0", name="ck_bookings_remaining_non_negative"),
        CheckConstraint("amount_paid + remaining_amount = total_amount", name="ck_bookings_money_balance"),
    )

    id = Column(Integer, primary_key=True, index=True)
    reference_code = Column(String(16), unique=True, index=True, nullable=False)
    capability_token = Column(String(64), unique=True, nullable=False)
    idempotency_key = Column(String(200), unique=True, index=True, nullable=True)
    user_id = Column(String(64), index=True, nullable=True)

    customer_name = Column(String(200), nullable=False)
    customer_email = Column(String(320), index=True, nullable=False)
    customer_phone = Column(String(50), nullable=True)
    travel_date = Column(Date, nullable=True)

    # whole currency units
    total_amount = Column(Integer, nullable=False)
    amount_paid = Column(Integer, nullable=False, default=0)
    remaining_amount = Column(Integer, nullable=False)
    refunded_amount = Column(Integer, nullable=False, default=0)
    deposit_choice = Column(Integer, nullable=True)

    booking_status = Column(String(16), nullable=False, default="pending")
    payment_status = Column(String(16), nullable=False, default="unpaid")

    deposit_session_id = Column(String(255), nullable=True)
    balance_session_id = Column(String(255), nullable=True)
    admin_notes = Column(Text, nullable=True)

    last_action_at = Column(DateTime(timezone=True), default=utcnow)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # optimistic concurrency: every UPDATE is "... WHERE version = <read version>"
    version = Column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}

    items = relationship(
        "BookingItemModel", back_populates="booking", order_by="BookingItemModel.id", lazy="selectin"
    )


class BookingItemModel(Base):
    __tablename__ = "booking_items"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), index=True, nullable=False)
    item_type = Column(String(16), nullable=False)
    item_id = Column(String(64), nullable=False)
    title = Column(String(300), nullable=True)

    vehicle_selection = Column(JSON, nullable=False)
    vehicle_rates = Column(JSON, nullable=False)
    subtotal_amount = Column(Integer, nullable=False)

    travel_date = Column(Date, nullable=True)
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    pickup_time = Column(Time, nullable=True)
    pickup_location = Column(String(300), nullable=True)
    dropoff_location = Column(String(300), nullable=True)
    passengers_count = Column(Integer, nullable=False, default=1)
    large_suitcases = Column(Integer, nullable=False, default=0)

    # free-form notes only (flight number, special requests)
    notes = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    booking = relationship("BookingModel", back_populates="items")


class BookingEventModel(Base):
    """Ledger row. Inserted by persistence.ledger, never updated or deleted."""

    __tablename__ = "booking_events"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), index=True, nullable=False)
    event_type = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class WebhookEventModel(Base):
    """Gateway event ids that have been processed (idempotency ledger)."""

    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String(255), unique=True, index=True, nullable=False)
    event_type = Column(String(100), nullable=False)
    booking_id = Column(Integer, ForeignKey("bookings.id"), index=True, nullable=True)
    status = Column(String(20), nullable=False)
    detail = Column(JSON, nullable=False, default=dict)
    received_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class BookingPaymentModel(Base):
    __tablename__ = "booking_payments"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), index=True, nullable=False)
    event_id = Column(String(255), unique=True, nullable=False)
    session_id = Column(String(255), nullable=True)
    payment_intent_id = Column(String(255), index=True, nullable=True)
    pay_type = Column(String(16), nullable=False, default="deposit")
    amount_reported = Column(Integer, nullable=False)
    amount_applied = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class CatalogItemModel(Base):
    """Read-only pricing rows owned by the catalog service."""

    __tablename__ = "catalog_items"
    __table_args__ = (UniqueConstraint("item_type", "item_id", name="uq_catalog_items_type_id"),)

    id = Column(Integer, primary_key=True, index=True)
    item_type = Column(String(16), nullable=False)
    item_id = Column(String(64), nullable=False)
    title = Column(String(300), nullable=False)
    slug = Column(String(300), nullable=True)
    vehicle_rates = Column(JSON, nullable=False, default=dict)
    active = Column(Boolean, nullable=False, default=True)


class NotificationLogModel(Base):
    __tablename__ = "notification_log"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), index=True, nullable=False)
    notification_type = Column(String(64), nullable=False)
    recipient_role = Column(String(16), nullable=False)
    recipient = Column(String(320), nullable=False)
    dedupe_key = Column(String(255), index=True, nullable=True)
    status = Column(String(16), nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
