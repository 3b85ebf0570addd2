import secrets
import string
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Dict, List, Optional

from booking_errors import ValidationError
from booking_schemas import VEHICLE_KEYS

REFERENCE_ALPHABET = string.ascii_uppercase + string.digits
REFERENCE_LENGTH = 8


def generate_reference_code(length: int = REFERENCE_LENGTH) -> str:
    return "".join(secrets.choice(REFERENCE_ALPHABET) for _ in range(length))


def generate_capability_token() -> str:
    # independent of the reference code, which is shared by customers
    return secrets.token_urlsafe(32)


def generate_unique_reference_code(
    exists: Callable[[str], bool],
    attempts: int = 10,
    generator: Callable[[], str] = generate_reference_code,
) -> str:
    """
    Draw codes until `exists` reports one that is free.
    Raises ValidationError if every attempt collides.
    """
    for _ in range(attempts):
        code = generator()
        if not exists(code):
            return code
    raise ValidationError(
        f"Could not generate a unique reference code after {attempts} attempts",
        code="reference_code_exhausted",
    )


# --- money -------------------------------------------------------------------
# Amounts are whole currency units (JPY has no minor unit).

def amount_due_now(total_amount: int, deposit_choice: int) -> int:
    """total * choice / 100, rounded half up to a whole unit."""
    due = (Decimal(total_amount) * Decimal(deposit_choice) / Decimal(100)).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    return int(due)


def split_deposit(total_amount: int, deposit_choice: int):
    due = amount_due_now(total_amount, deposit_choice)
    return due, total_amount - due


def derive_payment_status(total_amount: int, amount_paid: int) -> str:
    if amount_paid <= 0:
        return "unpaid"
    if amount_paid >= total_amount:
        return "paid"
    return "partial"


# --- pricing -----------------------------------------------------------------

class PricedItem:
    def __init__(self, cart_item, title: Optional[str], subtotal: int, rates: Dict[str, int]):
        self.cart_item = cart_item
        self.title = title
        self.subtotal = subtotal
        self.rates = rates


def item_subtotal(vehicle_selection: Dict[str, int], vehicle_rates: Dict[str, int]) -> int:
    """
    Sum of rate * quantity over the selected vehicles.
    A selected vehicle without a positive catalog rate is rejected.
    """
    total = 0
    for key, qty in vehicle_selection.items():
        if qty <= 0:
            continue
        rate = vehicle_rates.get(key)
        if rate is None or rate <= 0:
            raise ValidationError(
                f"Vehicle '{key}' is not available for this item",
                code="vehicle_unavailable",
                details={"vehicle": key},
            )
        total += int(rate) * qty
    return total


class CatalogPricing:
    """
    Authoritative pricing from the catalog's vehicle rates.

    `lookup(item_type, item_id)` returns the catalog row (or None); it is
    normally persistence.crud.get_catalog_item bound to a session.
    """

    def __init__(self, lookup):
        self.lookup = lookup

    def price(self, cart_items) -> List[PricedItem]:
        priced = []
        for index, item in enumerate(cart_items):
            row = self.lookup(item.item_type, item.item_id)
            if row is None or not row.active:
                raise ValidationError(
                    f"Unknown {item.item_type} '{item.item_id}'",
                    code="unknown_item",
                    details={"index": index},
                )
            rates = {k: v for k, v in (row.vehicle_rates or {}).items() if k in VEHICLE_KEYS}
            subtotal = item_subtotal(item.vehicle_selection.selected(), rates)
            if item.subtotal is not None and item.subtotal != subtotal:
                raise ValidationError(
                    "Item price has changed, please refresh your cart",
                    code="subtotal_mismatch",
                    details={"index": index, "submitted": item.subtotal, "expected": subtotal},
                )
            priced.append(PricedItem(item, row.title, subtotal, rates))
        return priced


def cart_total(priced_items: List[PricedItem], client_total: Optional[int] = None) -> int:
    total = sum(p.subtotal for p in priced_items)
    if client_total is not None and client_total != total:
        raise ValidationError(
            "Cart total does not match current prices",
            code="total_mismatch",
            details={"submitted": client_total, "expected": total},
        )
    if total <= 0:
        raise ValidationError("Cart total must be positive", code="empty_total")
    return total
