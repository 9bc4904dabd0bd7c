from __future__ import annotations
import asyncio
from dataclasses import dataclass
from typing import Optional

from .applog import get_logger
from .errors import Reason, StoreError, OrderNotFound, http_status
from .infra.timings import timeit
from .model.order.record import StoredOrder
from .model.orderstore import OrderStore
from .tickets import ticket_code

logger = get_logger(__name__)


def validate(order_id: str, code: str) -> bool:
    order_id = (order_id or "").strip()
    code = (code or "").strip().upper()
    if not order_id or not code:
        return False
    return ticket_code(order_id) == code


@dataclass
class RedemptionResult:
    ok: bool
    reason: Optional[Reason] = None
    order: Optional[StoredOrder] = None
    redeemed: bool = False
    already_redeemed: bool = False

    @property
    def status_code(self) -> int:
        return 200 if self.ok else http_status(self.reason)


class RedemptionGate:
    """Door-side ticket check. At most one redemption per order ever wins."""

    def __init__(self, store: OrderStore, store_timeout: float = 10.0):
        self.store = store
        self.store_timeout = store_timeout

    async def _load(self, order_id: str) -> Optional[StoredOrder]:
        async with timeit("store.get"):
            return await asyncio.wait_for(self.store.get(order_id),
                                          timeout=self.store_timeout)

    async def lookup(self, order_id: str, code: str) -> RedemptionResult:
        if not validate(order_id, code):
            return RedemptionResult(ok=False, reason=Reason.INVALID_TICKET_CODE)
        try:
            order = await self._load(order_id.strip())
        except (StoreError, asyncio.TimeoutError):
            logger.exception("ticket lookup failed for %s", order_id)
            return RedemptionResult(ok=False, reason=Reason.TICKET_LOAD_FAILED)
        if order is None:
            return RedemptionResult(ok=False, reason=Reason.ORDER_NOT_FOUND)
        return RedemptionResult(ok=True, order=order,
                                already_redeemed=order.is_redeemed)

    async def redeem(self, order_id: str, code: str,
                     operator: str) -> RedemptionResult:
        if not validate(order_id, code):
            return RedemptionResult(ok=False, reason=Reason.INVALID_TICKET_CODE)
        order_id = order_id.strip()

        try:
            existing = await self._load(order_id)
            if existing is None:
                return RedemptionResult(ok=False,
                                        reason=Reason.ORDER_NOT_FOUND)
            if not existing.is_paid:
                return RedemptionResult(ok=False, reason=Reason.ORDER_NOT_PAID,
                                        order=existing)
            if existing.is_redeemed:
                # double scan at the door
                return RedemptionResult(ok=True, order=existing,
                                        already_redeemed=True)

            async with timeit("store.redeem_once"):
                updated, order = await asyncio.wait_for(
                    self.store.redeem_once(order_id, operator),
                    timeout=self.store_timeout,
                )
        except OrderNotFound:
            return RedemptionResult(ok=False, reason=Reason.ORDER_NOT_FOUND)
        except (StoreError, asyncio.TimeoutError):
            logger.exception("redeem failed for %s", order_id)
            return RedemptionResult(ok=False, reason=Reason.REDEEM_FAILED)

        if not updated:
            # lost the race to a concurrent scan
            logger.info("ticket %s already redeemed by %s", order_id,
                        order.redeemed_by)
            return RedemptionResult(ok=True, order=order,
                                    already_redeemed=True)

        logger.info("ticket %s redeemed by %s", order_id, operator)
        return RedemptionResult(ok=True, order=order, redeemed=True)
