"""
AllPay payment callbacks.

The handler is safe to call any number of times for the same callback: the
only write is ``mark_paid_once``, and only the call that actually flips the
order to ``paid`` is told to deliver the ticket.
"""
from __future__ import annotations
import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .allpay import (
    InvalidPayload, PaymentAdapter, normalize_callback, parse_callback_body,
)
from .applog import get_logger
from .errors import OrderNotFound, Reason, StoreError, http_status
from .helpers import clean_str
from .infra.timings import timeit
from .model.order.record import StoredOrder
from .model.orderstore import OrderStore
from .signature import SIGN_KEY

logger = get_logger(__name__)


@dataclass
class WebhookOutcome:
    ok: bool
    reason: Optional[Reason] = None
    accepted: Optional[bool] = None
    duplicated: Optional[bool] = None
    order_id: Optional[str] = None
    # set only when this delivery moved the order to paid
    paid_order: Optional[StoredOrder] = None

    @property
    def status_code(self) -> int:
        return 200 if self.ok else http_status(self.reason)

    def body(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"ok": self.ok}
        if self.reason is not None:
            out["reason"] = self.reason.value
        if self.accepted is not None:
            out["accepted"] = self.accepted
        if self.duplicated is not None:
            out["duplicated"] = self.duplicated
        if self.order_id:
            out["order_id"] = self.order_id
        return out


def _reject(reason: Reason, order_id: Optional[str] = None) -> WebhookOutcome:
    return WebhookOutcome(ok=False, reason=reason, order_id=order_id)


class WebhookHandler:

    def __init__(
        self,
        store: OrderStore,
        adapter: PaymentAdapter,
        success_status: str = "1",
        store_timeout: float = 10.0,
    ) -> None:
        self.store = store
        self.adapter = adapter
        self.success_status = success_status
        self.store_timeout = store_timeout

    async def handle(self, body: bytes, content_type: str) -> WebhookOutcome:
        try:
            payload = parse_callback_body(body, content_type)
        except InvalidPayload as e:
            logger.info("callback rejected: invalid payload (%s)", e)
            return _reject(Reason.INVALID_PAYLOAD)

        if not self.adapter.webhook_configured:
            logger.error("callback rejected: no webhook secret configured")
            return _reject(Reason.SERVER_NOT_CONFIGURED)

        if not clean_str(payload.get(SIGN_KEY)):
            logger.info("callback rejected: missing sign")
            return _reject(Reason.MISSING_SIGN)

        match = self.adapter.verify_webhook(payload)
        if match is None:
            # retries and probes are normal traffic, not incidents
            logger.info("callback rejected: invalid signature order_id=%s",
                        clean_str(payload.get("order_id")) or "-")
            return _reject(Reason.INVALID_SIGNATURE)

        fields = normalize_callback(payload)
        if not fields.order_id:
            return _reject(Reason.MISSING_ORDER_ID)

        logger.info(
            "callback verified order=%s status=%s payment=%s "
            "(secret #%d, %s)",
            fields.order_id, fields.status or "-", fields.payment_ref or "-",
            match.secret_index, match.candidate,
        )

        if fields.status != self.success_status:
            # acknowledge so the gateway stops retrying a non-terminal state
            return WebhookOutcome(ok=True, accepted=False,
                                  order_id=fields.order_id)

        try:
            async with timeit("store.mark_paid_once"):
                updated, order = await asyncio.wait_for(
                    self.store.mark_paid_once(
                        fields.order_id,
                        fields.payment_ref,
                        amount=fields.amount,
                        currency=fields.currency,
                        raw=payload,
                    ),
                    timeout=self.store_timeout,
                )
        except OrderNotFound:
            logger.warning("callback for unknown order %s", fields.order_id)
            return _reject(Reason.ORDER_NOT_FOUND, fields.order_id)
        except (StoreError, asyncio.TimeoutError):
            # the gateway retries; the retry is idempotent
            logger.exception("mark paid failed for order %s", fields.order_id)
            return _reject(Reason.DB_UPDATE_FAILED, fields.order_id)

        if not updated:
            logger.info("duplicate paid callback for order %s", order.order_id)
            return WebhookOutcome(ok=True, accepted=True, duplicated=True,
                                  order_id=order.order_id)

        logger.info("order %s marked paid", order.order_id)
        return WebhookOutcome(ok=True, accepted=True, duplicated=False,
                              order_id=order.order_id, paid_order=order)
