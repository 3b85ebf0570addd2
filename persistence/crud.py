from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from booking_schemas import BookingOut

from .models import (
    BookingModel,
    BookingPaymentModel,
    CatalogItemModel,
    NotificationLogModel,
    WebhookEventModel,
)


def get_booking_by_id(db: Session, booking_id: int) -> Optional[BookingModel]:
    return db.get(BookingModel, booking_id)


def get_booking_for_update(db: Session, booking_id: int) -> Optional[BookingModel]:
    """
    Load a booking with a row lock (SELECT ... FOR UPDATE) and fresh state.
    SQLite ignores the lock; the version column still guards the write.
    """
    stmt = (
        select(BookingModel)
        .where(BookingModel.id == booking_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return db.execute(stmt).scalar_one_or_none()


def get_booking_by_reference(db: Session, reference_code: str) -> Optional[BookingModel]:
    stmt = select(BookingModel).where(BookingModel.reference_code == reference_code.strip().upper())
    return db.execute(stmt).scalar_one_or_none()


def get_booking_by_idempotency_key(db: Session, key: str) -> Optional[BookingModel]:
    stmt = select(BookingModel).where(BookingModel.idempotency_key == key)
    return db.execute(stmt).scalar_one_or_none()


def reference_code_exists(db: Session, reference_code: str) -> bool:
    stmt = select(BookingModel.id).where(BookingModel.reference_code == reference_code)
    return db.execute(stmt).first() is not None


def get_catalog_item(db: Session, item_type: str, item_id: str) -> Optional[CatalogItemModel]:
    stmt = select(CatalogItemModel).where(
        CatalogItemModel.item_type == item_type, CatalogItemModel.item_id == item_id
    )
    return db.execute(stmt).scalar_one_or_none()


def get_webhook_event(db: Session, event_id: str) -> Optional[WebhookEventModel]:
    stmt = select(WebhookEventModel).where(WebhookEventModel.event_id == event_id)
    return db.execute(stmt).scalar_one_or_none()


def add_webhook_event(db: Session, event_id: str, event_type: str, status: str,
                      booking_id: Optional[int] = None, detail: Optional[dict] = None) -> WebhookEventModel:
    row = WebhookEventModel(
        event_id=event_id,
        event_type=event_type,
        booking_id=booking_id,
        status=status,
        detail=detail or {},
    )
    db.add(row)
    return row


def get_payment_by_intent(db: Session, payment_intent_id: str) -> Optional[BookingPaymentModel]:
    stmt = select(BookingPaymentModel).where(BookingPaymentModel.payment_intent_id == payment_intent_id)
    return db.execute(stmt).scalars().first()


def notification_already_sent(db: Session, booking_id: int, dedupe_key: str, recipient_role: str) -> bool:
    stmt = select(NotificationLogModel.id).where(
        NotificationLogModel.booking_id == booking_id,
        NotificationLogModel.dedupe_key == dedupe_key,
        NotificationLogModel.recipient_role == recipient_role,
        NotificationLogModel.status == "sent",
    )
    return db.execute(stmt).first() is not None


def model_to_pydantic(db_booking: BookingModel) -> BookingOut:
    return BookingOut.model_validate(db_booking)
