import time
import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
import hmac
from typing import Any, Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def clean_str(value: Any) -> str:
    if value is None or isinstance(value, (dict, list)):
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip()


def normalize_payment_ref(value: Any) -> Optional[str]:
    ref = clean_str(value)
    # AllPay sends the literal "EMPTY" when there is no payment yet
    if not ref or ref.upper() == "EMPTY":
        return None
    return ref


def parse_positive_int(value: Any, fallback: int) -> int:
    if isinstance(value, bool):
        return fallback
    if isinstance(value, int):
        return value if value > 0 else fallback
    if isinstance(value, str):
        try:
            parsed = int(value.strip(), 10)
        except ValueError:
            return fallback
        return parsed if parsed > 0 else fallback
    return fallback


# major units; anything from 10**12 up is not a ticket price
MAX_AMOUNT_DIGITS = 12


def to_minor_units(value: Any) -> Optional[int]:
    """
    '100' / 100 / '99.90' (major units) -> 10000 / 10000 / 9990.

    Zero, negative, non-finite and absurdly large amounts give None, which
    keeps whatever amount the order already has.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        return None
    if not amount.is_finite() or amount <= 0:
        return None
    if amount.adjusted() >= MAX_AMOUNT_DIGITS:
        return None
    return int((amount * 100).to_integral_value())


def format_amount(amount: Optional[int], currency: Optional[str]) -> str:
    cur = currency or "ILS"
    if amount is None:
        return f"- {cur}"
    return f"{amount / 100:.2f} {cur}"
