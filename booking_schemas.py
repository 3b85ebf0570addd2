from datetime import date, datetime, time
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

BookingStatus = Literal["pending", "confirmed", "completed", "cancelled"]
PaymentStatus = Literal["unpaid", "partial", "paid", "refunded"]
ItemType = Literal["tour", "transfer", "package"]

DEPOSIT_CHOICES = (25, 50, 100)
VEHICLE_KEYS = ("v8", "v10", "v14", "coaster", "bigbus")
NOTE_KEYS = ("flight_number", "special_requests")


class ApiModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- cart input -------------------------------------------------------------

class VehicleSelection(ApiModel):
    v8: int = Field(default=0, ge=0)
    v10: int = Field(default=0, ge=0)
    v14: int = Field(default=0, ge=0)
    coaster: int = Field(default=0, ge=0)
    bigbus: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def at_least_one_vehicle(self):
        if self.total_vehicles() == 0:
            raise ValueError("select at least one vehicle")
        return self

    def total_vehicles(self) -> int:
        return sum(getattr(self, key) for key in VEHICLE_KEYS)

    def selected(self) -> Dict[str, int]:
        return {key: getattr(self, key) for key in VEHICLE_KEYS if getattr(self, key) > 0}


class _CartItemBase(ApiModel):
    item_id: str = Field(min_length=1)
    vehicle_selection: VehicleSelection
    pickup_location: str = Field(min_length=1, max_length=300)
    dropoff_location: str = Field(min_length=1, max_length=300)
    pickup_time: Optional[time] = None
    passengers_count: int = Field(default=1, ge=1, le=500)
    large_suitcases: int = Field(default=0, ge=0, le=500)
    # client-computed subtotal; only used to detect a stale cart
    subtotal: Optional[int] = Field(default=None, ge=0)
    notes: Dict[str, str] = Field(default_factory=dict)

    @field_validator("notes")
    @classmethod
    def known_note_keys(cls, value: Dict[str, str]) -> Dict[str, str]:
        unknown = set(value) - set(NOTE_KEYS)
        if unknown:
            raise ValueError(f"unsupported note fields: {sorted(unknown)}")
        return {k: v.strip()[:1000] for k, v in value.items() if v and v.strip()}


class TourItem(_CartItemBase):
    item_type: Literal["tour"]
    travel_date: date


class TransferItem(_CartItemBase):
    item_type: Literal["transfer"]
    travel_date: date


class PackageItem(_CartItemBase):
    item_type: Literal["package"]
    start_date: date
    end_date: date

    @model_validator(mode="after")
    def end_after_start(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


CartItem = Annotated[Union[TourItem, TransferItem, PackageItem], Field(discriminator="item_type")]


class CustomerInfo(ApiModel):
    name: str = Field(min_length=1, max_length=200)
    email: str = Field(min_length=3, max_length=320)
    phone: Optional[str] = Field(default=None, max_length=50)

    @field_validator("email")
    @classmethod
    def normalise_email(cls, value: str) -> str:
        value = value.strip().lower()
        local, _, domain = value.partition("@")
        if not local or "." not in domain:
            raise ValueError("invalid email address")
        return value


class BookingCreate(ApiModel):
    items: List[CartItem] = Field(min_length=1)
    customer: CustomerInfo
    client_total: Optional[int] = Field(default=None, ge=0)
    idempotency_key: Optional[str] = Field(default=None, max_length=200)


# --- snapshots ---------------------------------------------------------------

class BookingItemOut(ApiModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: int
    item_type: ItemType
    item_id: str
    title: Optional[str] = None
    vehicle_selection: Dict[str, int]
    subtotal_amount: int
    travel_date: Optional[date] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    pickup_time: Optional[time] = None
    pickup_location: Optional[str] = None
    dropoff_location: Optional[str] = None
    passengers_count: int
    large_suitcases: int
    notes: Dict[str, str] = Field(default_factory=dict)


class BookingOut(ApiModel):
    """Snapshot of a booking and its items, as seen by one transition."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: int
    reference_code: str
    customer_name: str
    customer_email: str
    customer_phone: Optional[str] = None
    travel_date: Optional[date] = None
    total_amount: int
    amount_paid: int
    remaining_amount: int
    refunded_amount: int = 0
    deposit_choice: Optional[int] = None
    booking_status: BookingStatus
    payment_status: PaymentStatus
    last_action_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    items: List[BookingItemOut] = Field(default_factory=list)


class BookingEventOut(ApiModel):
    id: int
    event_type: str
    summary: str
    created_at: datetime
    payload: Optional[dict] = None


# --- requests / responses ------------------------------------------------------

class BookingCreated(ApiModel):
    booking_id: int
    reference_code: str
    capability_token: str
    total_amount: int


class CheckoutSessionRequest(ApiModel):
    booking_id: int
    capability_token: str = Field(min_length=1)
    deposit_choice: int

    @field_validator("deposit_choice")
    @classmethod
    def valid_deposit(cls, value: int) -> int:
        if value not in DEPOSIT_CHOICES:
            raise ValueError("depositChoice must be 25, 50, or 100")
        return value


class RemainingSessionRequest(ApiModel):
    booking_id: int


class CheckoutSessionOut(ApiModel):
    session_url: str
    amount_due_now: int
    remaining_after_deposit: int


class ClaimRequest(ApiModel):
    reference_code: str = Field(min_length=1)
    email: str = Field(min_length=3)


class TrackOut(ApiModel):
    booking: BookingOut
    timeline: List[BookingEventOut]


class AdminActionOut(ApiModel):
    booking: BookingOut
    notification_warning: Optional[str] = None
    integrity_warnings: List[str] = Field(default_factory=list)


class AdminNoteRequest(ApiModel):
    notes: str = Field(max_length=5000)


class AdminBookingOut(ApiModel):
    booking: BookingOut
    admin_notes: Optional[str] = None
    events: List[BookingEventOut]


class DispatchRequest(ApiModel):
    booking_id: int
    event_type: str


class DispatchOut(ApiModel):
    ok: bool
    sent: List[str] = Field(default_factory=list)
    skipped: bool = False
    warning: Optional[str] = None
