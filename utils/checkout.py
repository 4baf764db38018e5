# utils/checkout.py
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from utils.config import TIMEZONE_OFFSET
from utils.phone import normalize_phone

SAME_DAY_CUTOFF_HOUR = 14
ORDER_NOTE_MAX_LENGTH = 500

DELIVERY_FEE_NOT_ACKNOWLEDGED = (
    "Please confirm that you understand the delivery fee will be confirmed "
    "by our team before you proceed to payment."
)
SAME_DAY_CUTOFF_MESSAGE = (
    "Same-day delivery orders must be placed before 2 PM. "
    "Please choose a later delivery date."
)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

PAYMENT_METHODS = ("mpesa", "card")


@dataclass(frozen=True)
class TimeWindow:
    key: str
    label: str
    start_hour: int
    end_hour: int


DELIVERY_WINDOWS = (
    TimeWindow("morning", "Morning (9 AM - 12 PM)", 9, 12),
    TimeWindow("afternoon", "Afternoon (12 PM - 5 PM)", 12, 17),
    TimeWindow("evening", "Evening (5 PM - 8 PM)", 17, 20),
)
_WINDOWS_BY_KEY = {w.key: w for w in DELIVERY_WINDOWS}

NO_WINDOWS_PLACEHOLDER = {
    "value": "",
    "label": "No delivery times left today",
    "disabled": True,
}

REQUIRED_FIELDS = {
    "first_name": "First name is required",
    "last_name": "Last name is required",
    "email": "Email is required",
    "phone": "Phone number is required",
    "city": "City is required",
    "area": "Area is required",
    "delivery_date": "Delivery date is required",
    "delivery_time": "Delivery time is required",
}


class CheckoutError(ValueError):
    """Validation failure the customer can fix on the form."""

    def __init__(self, field_name: str, message: str):
        self.field = field_name
        self.message = message
        super().__init__(message)


def local_now() -> datetime:
    return datetime.now(timezone(timedelta(hours=TIMEZONE_OFFSET)))


def window_label(key: Optional[str]) -> str:
    window = _WINDOWS_BY_KEY.get(key or "")
    return window.label if window else (key or "")


def _parse_date(raw) -> Optional[date]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    try:
        return date.fromisoformat(str(raw)[:10])
    except ValueError:
        return None


@dataclass
class CheckoutForm:
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str = ""
    address: str = ""
    city: str = ""
    area: str = ""
    delivery_date: Optional[date] = None
    delivery_time: str = ""
    special_instructions: str = ""
    order_note: str = ""
    payment_method: str = "mpesa"
    has_agreed_to_delivery_fee: bool = False
    raw_delivery_date: Optional[str] = field(default=None, repr=False)

    @property
    def customer_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @classmethod
    def from_payload(cls, data: dict) -> "CheckoutForm":
        """
        Builds the form from the checkout request body. Accepts either the flat
        form fields or the initiation shape (customerName + deliveryInfo).
        """
        delivery = data.get("deliveryInfo") or {}

        first_name = data.get("firstName") or delivery.get("firstName") or ""
        last_name = data.get("lastName") or delivery.get("lastName") or ""
        if not first_name and data.get("customerName"):
            first_name, _, last_name = str(data["customerName"]).strip().partition(" ")

        raw_date = data.get("deliveryDate") or delivery.get("deliveryDate")

        def pick(*keys, default=""):
            for key in keys:
                value = data.get(key)
                if value in (None, ""):
                    value = delivery.get(key)
                if value not in (None, ""):
                    return value
            return default

        return cls(
            first_name=str(first_name).strip(),
            last_name=str(last_name).strip(),
            email=str(pick("email", "customerEmail")).strip(),
            phone=str(pick("phone", "customerPhone")).strip(),
            address=str(pick("address")).strip(),
            city=str(pick("city")).strip(),
            area=str(pick("area")).strip(),
            delivery_date=_parse_date(raw_date),
            delivery_time=str(pick("deliveryTime")).strip(),
            special_instructions=str(pick("specialInstructions")).strip(),
            order_note=str(pick("orderNote")),
            payment_method=str(pick("paymentMethod", default="mpesa")).lower(),
            has_agreed_to_delivery_fee=data.get("hasAgreedToDeliveryFee") is True,
            raw_delivery_date=str(raw_date) if raw_date else None,
        )

    @classmethod
    def from_profile(cls, profile: Optional[dict]) -> "CheckoutForm":
        """Prefill for a signed-in customer. Delivery choices stay empty."""
        if not profile:
            return cls()
        return cls(
            first_name=profile.get("first_name") or "",
            last_name=profile.get("last_name") or "",
            email=profile.get("email") or "",
            phone=profile.get("phone") or "",
            address=profile.get("address") or "",
            city=profile.get("city") or "",
            area=profile.get("area") or "",
        )


def available_time_windows(delivery_date: Optional[date], now: Optional[datetime] = None) -> list[TimeWindow]:
    """
    Same-day orders only get windows that have not started yet.
    Any other date gets all of them.
    """
    now = now or local_now()
    if delivery_date is None or delivery_date != now.date():
        return list(DELIVERY_WINDOWS)
    return [w for w in DELIVERY_WINDOWS if w.start_hour > now.hour]


def time_window_options(delivery_date: Optional[date], now: Optional[datetime] = None) -> list[dict]:
    windows = available_time_windows(delivery_date, now)
    if not windows:
        return [dict(NO_WINDOWS_PLACEHOLDER)]
    return [{"value": w.key, "label": w.label, "disabled": False} for w in windows]


def validate_checkout(form: CheckoutForm, now: Optional[datetime] = None) -> CheckoutForm:
    """
    Raises CheckoutError on the first problem found, in the order the form
    shows its fields. Returns the form when everything checks out.
    """
    now = now or local_now()

    # 1) required fields
    for name, message in REQUIRED_FIELDS.items():
        value = getattr(form, name)
        if value is None or (isinstance(value, str) and not value.strip()):
            if name == "delivery_date" and form.raw_delivery_date:
                raise CheckoutError(name, "Delivery date is not a valid date")
            raise CheckoutError(name, message)

    # 2) contact details
    if not EMAIL_RE.match(form.email):
        raise CheckoutError("email", "Please enter a valid email address")
    if normalize_phone(form.phone) is None:
        raise CheckoutError("phone", "Please enter a valid Kenyan phone number, e.g. 0712 345 678")

    # 3) delivery slot
    today = now.date()
    if form.delivery_date < today:
        raise CheckoutError("delivery_date", "Delivery date cannot be in the past")
    if form.delivery_date == today and now.hour >= SAME_DAY_CUTOFF_HOUR:
        raise CheckoutError("delivery_date", SAME_DAY_CUTOFF_MESSAGE)
    if form.delivery_time not in _WINDOWS_BY_KEY:
        raise CheckoutError("delivery_time", "Please choose a delivery time")
    allowed = {w.key for w in available_time_windows(form.delivery_date, now)}
    if form.delivery_time not in allowed:
        raise CheckoutError("delivery_time", "That delivery time has already started. Please pick a later one.")

    # 4) extras
    if len(form.order_note or "") > ORDER_NOTE_MAX_LENGTH:
        raise CheckoutError("order_note", f"Order note must be {ORDER_NOTE_MAX_LENGTH} characters or less")
    if form.payment_method not in PAYMENT_METHODS:
        raise CheckoutError("payment_method", "Please choose M-Pesa or card")

    # 5) the delivery fee shown at checkout is provisional
    if not form.has_agreed_to_delivery_fee:
        raise CheckoutError("has_agreed_to_delivery_fee", DELIVERY_FEE_NOT_ACKNOWLEDGED)

    return form
