from __future__ import annotations
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from .orm import PAID
from ...helpers import to_iso

# columns every store reads back, in table order
ORDER_COLUMNS = (
    "order_id", "show_id", "event_id", "qty", "buyer_name", "buyer_email",
    "amount", "currency", "status", "created_at", "paid_at", "payment_ref",
    "consent_terms", "consent_marketing", "raw_payload", "redeemed_at",
    "redeemed_by",
)


@dataclass
class NewOrder:
    order_id: str
    show_id: str
    event_id: str
    qty: int
    buyer_name: str
    buyer_email: str
    amount: Optional[int]
    currency: str = "ILS"
    consent_terms: bool = False
    consent_marketing: bool = False
    payment_ref: Optional[str] = None
    raw_payload: Optional[Dict[str, Any]] = None

    def __post_init__(self) -> None:
        if not self.order_id:
            raise ValueError("order_id is required")
        if int(self.qty) <= 0:
            raise ValueError("qty must be a positive integer")


@dataclass
class StoredOrder:
    order_id: str
    show_id: str
    event_id: str
    qty: int
    buyer_name: str
    buyer_email: str
    amount: Optional[int]
    currency: str
    status: str
    created_at: float
    paid_at: Optional[float] = None
    payment_ref: Optional[str] = None
    consent_terms: bool = False
    consent_marketing: bool = False
    raw_payload: Optional[Dict[str, Any]] = field(default=None, repr=False)
    redeemed_at: Optional[float] = None
    redeemed_by: Optional[str] = None

    @property
    def is_paid(self) -> bool:
        return self.status == PAID

    @property
    def is_redeemed(self) -> bool:
        return self.redeemed_at is not None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "StoredOrder":
        raw = row.get("raw_payload")
        if isinstance(raw, (str, bytes)) and raw:
            raw = json.loads(raw)
        elif not raw:
            raw = None

        def _f(key: str) -> Optional[float]:
            v = row.get(key)
            return None if v in (None, "") else float(v)

        amount = row.get("amount")
        return cls(
            order_id=row["order_id"],
            show_id=row["show_id"],
            event_id=row["event_id"],
            qty=int(row["qty"]),
            buyer_name=row.get("buyer_name") or "",
            buyer_email=row["buyer_email"],
            amount=None if amount in (None, "") else int(amount),
            currency=row.get("currency") or "ILS",
            status=row["status"],
            created_at=float(row["created_at"]),
            paid_at=_f("paid_at"),
            payment_ref=row.get("payment_ref") or None,
            consent_terms=_to_bool(row.get("consent_terms")),
            consent_marketing=_to_bool(row.get("consent_marketing")),
            raw_payload=raw,
            redeemed_at=_f("redeemed_at"),
            redeemed_by=row.get("redeemed_by") or None,
        )

    def to_view(self) -> Dict[str, Any]:
        """JSON shape served to the success page and the door scanner."""
        return {
            "order_id": self.order_id,
            "show_id": self.show_id,
            "event_id": self.event_id,
            "buyer_name": self.buyer_name,
            "buyer_email": self.buyer_email,
            "qty": self.qty,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "paid_at": to_iso(self.paid_at),
            "redeemed_at": to_iso(self.redeemed_at),
            "redeemed_by": self.redeemed_by,
        }


def _to_bool(v: Any) -> bool:
    if isinstance(v, str):
        return v in ("1", "true", "True")
    return bool(v)


def dump_raw(raw: Optional[Mapping[str, Any]]) -> Optional[str]:
    if raw is None:
        return None
    return json.dumps(raw, ensure_ascii=False, default=str)
