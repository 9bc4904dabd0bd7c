from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Sequence, TypedDict
from urllib.parse import parse_qsl
import json
import re

import httpx

from .applog import get_logger
from .helpers import clean_str, normalize_payment_ref, to_minor_units
from .signature import (
    ALL_SCALARS, SIGN_KEY, WITH_EMPTY, SignatureMatch, SignatureVerifier,
    compute_signature,
)

logger = get_logger(__name__)

_ITEM_KEY = re.compile(r"^(\w+)\[(\d+)\]\[(\w+)\]$")

# AllPay error code for a request whose sign did not verify
BAD_SIGNATURE = "3"
OUTBOUND_SIGN_CANDIDATES = (ALL_SCALARS, WITH_EMPTY)


class InvalidPayload(ValueError):
    pass


# ----------------------------
# Callback parsing
# ----------------------------
def _parse_form(text: str) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    lists: Dict[str, Dict[int, Dict[str, str]]] = {}
    for key, value in parse_qsl(text, keep_blank_values=True,
                                strict_parsing=True):
        m = _ITEM_KEY.match(key)
        if m:
            name, idx, field_name = m.group(1), int(m.group(2)), m.group(3)
            lists.setdefault(name, {}).setdefault(idx, {})[field_name] = value
        else:
            out[key] = value
    for name, items in lists.items():
        out[name] = [items[i] for i in sorted(items)]
    return out


def parse_callback_body(body: bytes, content_type: str) -> Dict[str, Any]:
    """JSON or x-www-form-urlencoded body -> flat mapping (+ item lists)."""
    try:
        text = body.decode("utf-8").strip()
    except UnicodeDecodeError as e:
        raise InvalidPayload("body is not utf-8") from e
    if not text:
        raise InvalidPayload("empty body")

    ctype = (content_type or "").split(";")[0].strip().lower()
    as_json = ctype.endswith("json") or (
        "form" not in ctype and text[:1] in "{["
    )
    try:
        payload = json.loads(text) if as_json else _parse_form(text)
    except (ValueError, RecursionError) as e:
        raise InvalidPayload(f"unparseable {ctype or 'body'}") from e
    if not isinstance(payload, dict) or not payload:
        raise InvalidPayload("payload must be a non-empty object")
    return payload


@dataclass(frozen=True)
class CallbackFields:
    order_id: str
    payment_ref: Optional[str]
    status: str
    amount: Optional[int]
    currency: Optional[str]
    client_email: str


def normalize_callback(payload: Mapping[str, Any]) -> CallbackFields:
    currency = clean_str(payload.get("currency")).upper() or None
    return CallbackFields(
        order_id=clean_str(payload.get("order_id")),
        payment_ref=normalize_payment_ref(payload.get("payment_id")),
        status=clean_str(payload.get("status")),
        amount=to_minor_units(payload.get("amount")),
        currency=currency,
        client_email=clean_str(payload.get("client_email")).lower(),
    )


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class CreatePaymentResult(TypedDict, total=False):
    payment_url: str
    payment_id: str
    error_code: str
    error_msg: str


@dataclass
class PaymentRequest:
    order_id: str
    item_name: str
    unit_price: int  # major units
    qty: int
    client_name: str
    client_email: str
    success_url: str
    backlink_url: str
    webhook_url: str
    currency: str = "ILS"
    lang: str = "AUTO"


class PaymentAdapter(ABC):
    @abstractmethod
    async def create_payment(
        self, req: PaymentRequest
    ) -> CreatePaymentResult: ...

    @abstractmethod
    def verify_webhook(
        self, payload: Mapping[str, Any]
    ) -> Optional[SignatureMatch]: ...

    @property
    @abstractmethod
    def webhook_configured(self) -> bool: ...


# ----------------------------
# AllPay implementation
# ----------------------------
class AllPay(PaymentAdapter):

    def __init__(
        self,
        *,
        http: Optional[httpx.AsyncClient],
        verifier: SignatureVerifier,
        login: str = "",
        api_key: str = "",
        api_url: str = "",
        sign_candidates: Sequence[str] = OUTBOUND_SIGN_CANDIDATES,
    ) -> None:
        self.http = http
        self.verifier = verifier
        self.login = login
        self.api_key = api_key
        self.api_url = api_url
        self.sign_candidates = list(sign_candidates)
        if not self.sign_candidates:
            raise ValueError("at least one outbound signature candidate "
                             "is required")

    @property
    def webhook_configured(self) -> bool:
        return self.verifier.configured

    @property
    def checkout_configured(self) -> bool:
        return bool(self.login and self.api_key and self.api_url)

    def verify_webhook(
        self, payload: Mapping[str, Any]
    ) -> Optional[SignatureMatch]:
        return self.verifier.verify(payload, clean_str(payload.get(SIGN_KEY)))

    def build_payment_payload(
        self, req: PaymentRequest, candidate: str = ALL_SCALARS
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "items": [{
                "name": req.item_name,
                "price": str(req.unit_price),
                "qty": str(req.qty),
                "discount_val": "0",
                "discount_type": "fixed",
                "vat": "0",
            }],
            "order_id": req.order_id,
            "client_name": req.client_name,
            "client_email": req.client_email,
            "client_tehudat": "",
            "currency": req.currency,
            "currency_display": "",
            "lang": req.lang,
            "preauthorize": "0",
            "allpay_token": "",
            "inst": "",
            "success_url": req.success_url,
            "backlink_url": req.backlink_url,
            "webhook_url": req.webhook_url,
            "login": self.login,
        }
        payload[SIGN_KEY] = compute_signature(payload, self.api_key, candidate)
        return payload

    async def _post(self, payload: Dict[str, Any]) -> CreatePaymentResult:
        try:
            r = await self.http.post(self.api_url, json=payload)
        except httpx.HTTPError as e:
            logger.warning("allpay create_payment transport error order=%s: %s",
                           payload.get("order_id"), e)
            return {"error_code": "transport", "error_msg": str(e)}

        try:
            data = r.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            return {
                "error_code": str(r.status_code),
                "error_msg": f"Non-JSON response from AllPay: {r.text[:500]}",
            }

        out: CreatePaymentResult = {}
        for key in ("payment_url", "payment_id", "error_code", "error_msg"):
            if data.get(key) not in (None, ""):
                out[key] = str(data[key])
        if r.is_error and "error_code" not in out:
            out["error_code"] = str(r.status_code)
            out.setdefault(
                "error_msg", f"AllPay request failed with status {r.status_code}"
            )
        return out

    async def create_payment(self, req: PaymentRequest) -> CreatePaymentResult:
        if self.http is None:
            raise RuntimeError("AllPay.create_payment needs an http client")
        result: CreatePaymentResult = {
            "error_code": "no_signature_match",
            "error_msg": "no signature variant was accepted",
        }
        for candidate in self.sign_candidates:
            result = await self._post(self.build_payment_payload(req, candidate))
            if result.get("payment_url"):
                if candidate != self.sign_candidates[0]:
                    logger.info("allpay accepted signature variant %s order=%s",
                                candidate, req.order_id)
                return result
            # only "bad signature" is worth another variant
            if result.get("error_code") != BAD_SIGNATURE:
                return result
            logger.warning("allpay rejected %s signature order=%s",
                           candidate, req.order_id)
        return result
