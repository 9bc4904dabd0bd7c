from __future__ import annotations
from typing import Any, Dict, List, Optional, Sequence, Tuple

import redis.asyncio as redis

from ..order.orm import PAID, PENDING, FAILED
from ..order.record import NewOrder, StoredOrder, dump_raw
from ...errors import DuplicateOrder, OrderNotFound, StoreError
from ...helpers import now_ts


# ---- keys
def k_order(order_id: str) -> str: return f"order:{order_id}"
def k_paid_qty(show_id: str) -> str: return f"paidqty:{show_id}"


RECENT_INDEX = "orders:recent"

# Each script is one atomic step on the server: check the prior state, write,
# and report whether this call made the transition.

# KEYS[1]=order, KEYS[2]=recent index, KEYS[3]=show paid qty;
# ARGV[1]=order_id, ARGV[2]=created_at, ARGV[3]=event_id,
# ARGV[4]=paid qty to add (0 for pending), ARGV[5..]=field/value pairs
_LUA_CREATE = """
if redis.call('EXISTS', KEYS[1]) == 1 then
  return 0
end
redis.call('HSET', KEYS[1], unpack(ARGV, 5))
redis.call('ZADD', KEYS[2], ARGV[2], ARGV[1])
if tonumber(ARGV[4]) > 0 then
  redis.call('HINCRBY', KEYS[3], ARGV[3], ARGV[4])
end
return 1
"""

# KEYS[1]=order, KEYS[2]=show paid qty;
# ARGV: payment_ref, amount, currency, paid_at, raw
# returns -1 not found, 0 already paid, 1 transitioned
_LUA_MARK_PAID = """
local status = redis.call('HGET', KEYS[1], 'status')
if not status then
  return -1
end
if status == 'paid' then
  return 0
end
redis.call('HSET', KEYS[1], 'status', 'paid', 'payment_ref', ARGV[1],
           'paid_at', ARGV[4], 'raw_payload', ARGV[5])
if ARGV[2] ~= '' then
  redis.call('HSET', KEYS[1], 'amount', ARGV[2])
end
if ARGV[3] ~= '' then
  redis.call('HSET', KEYS[1], 'currency', ARGV[3])
end
local event = redis.call('HGET', KEYS[1], 'event_id')
local qty = redis.call('HGET', KEYS[1], 'qty')
redis.call('HINCRBY', KEYS[2], event, qty)
return 1
"""

# KEYS[1]=order; ARGV: payment_ref, raw
_LUA_MARK_FAILED = """
local status = redis.call('HGET', KEYS[1], 'status')
if not status then
  return -1
end
if status ~= 'pending' then
  return 0
end
redis.call('HSET', KEYS[1], 'status', 'failed', 'payment_ref', ARGV[1],
           'raw_payload', ARGV[2])
return 1
"""

# KEYS[1]=order; ARGV: redeemed_at, operator
_LUA_REDEEM = """
local status = redis.call('HGET', KEYS[1], 'status')
if not status then
  return -1
end
if status ~= 'paid' then
  return 0
end
local at = redis.call('HGET', KEYS[1], 'redeemed_at')
if at and at ~= '' then
  return 0
end
redis.call('HSET', KEYS[1], 'redeemed_at', ARGV[1], 'redeemed_by', ARGV[2])
return 1
"""


def _s(v: Any) -> str:
    # hashes hold strings; '' stands for NULL
    if v is None:
        return ""
    if isinstance(v, bool):
        return "1" if v else "0"
    return str(v)


class OrderStore:
    """
    Orders as Redis hashes. Conditional transitions run as Lua scripts so the
    read-check-write is atomic on the server.
    """

    def __init__(self, r: redis.Redis) -> None:
        self.r = r
        self._create = r.register_script(_LUA_CREATE)
        self._mark_paid = r.register_script(_LUA_MARK_PAID)
        self._mark_failed = r.register_script(_LUA_MARK_FAILED)
        self._redeem = r.register_script(_LUA_REDEEM)

    async def _load(self, order_id: str) -> Optional[StoredOrder]:
        h = await self.r.hgetall(k_order(order_id))
        if not h:
            return None
        return StoredOrder.from_row(h)

    async def _insert(self, order: NewOrder, *, status: str,
                      paid_at: Optional[float]) -> StoredOrder:
        created_at = now_ts()
        mapping = {
            "order_id": order.order_id,
            "show_id": order.show_id,
            "event_id": order.event_id,
            "qty": int(order.qty),
            "buyer_name": order.buyer_name,
            "buyer_email": order.buyer_email,
            "amount": order.amount,
            "currency": order.currency,
            "status": status,
            "created_at": created_at,
            "paid_at": paid_at,
            "payment_ref": order.payment_ref,
            "consent_terms": order.consent_terms,
            "consent_marketing": order.consent_marketing,
            "raw_payload": dump_raw(order.raw_payload),
            "redeemed_at": None,
            "redeemed_by": None,
        }
        paid_qty = int(order.qty) if status == PAID else 0
        args: List[str] = [
            order.order_id, _s(created_at), order.event_id, _s(paid_qty),
        ]
        for k, v in mapping.items():
            args.extend([k, _s(v)])
        keys = [k_order(order.order_id), RECENT_INDEX,
                k_paid_qty(order.show_id)]
        try:
            created = await self._create(keys=keys, args=args)
            if not created:
                raise DuplicateOrder(order.order_id)
            stored = await self._load(order.order_id)
        except redis.RedisError as e:
            raise StoreError(f"insert failed for {order.order_id}") from e
        return stored

    async def create_pending(self, order: NewOrder) -> StoredOrder:
        return await self._insert(order, status=PENDING, paid_at=None)

    async def create_complimentary(self, order: NewOrder) -> StoredOrder:
        return await self._insert(order, status=PAID, paid_at=now_ts())

    async def get(self, order_id: str) -> Optional[StoredOrder]:
        try:
            return await self._load(order_id)
        except redis.RedisError as e:
            raise StoreError(f"get failed for {order_id}") from e

    async def _run(self, script, order_id: str, args: List[str], what: str,
                   extra_keys: Sequence[str] = ()) -> Tuple[bool, StoredOrder]:
        try:
            rc = int(await script(keys=[k_order(order_id), *extra_keys],
                                  args=args))
            order = await self._load(order_id) if rc >= 0 else None
        except redis.RedisError as e:
            raise StoreError(f"{what} update failed for {order_id}") from e
        if order is None:
            raise OrderNotFound(order_id)
        return rc == 1, order

    async def mark_paid_once(
        self,
        order_id: str,
        payment_ref: Optional[str],
        amount: Optional[int] = None,
        currency: Optional[str] = None,
        raw: Optional[Dict[str, Any]] = None,
    ) -> Tuple[bool, StoredOrder]:
        # show_id is immutable once inserted
        try:
            show_id = await self.r.hget(k_order(order_id), "show_id")
        except redis.RedisError as e:
            raise StoreError(f"{PAID} update failed for {order_id}") from e
        if show_id is None:
            raise OrderNotFound(order_id)
        return await self._run(self._mark_paid, order_id, [
            _s(payment_ref), _s(amount), _s(currency), _s(now_ts()),
            _s(dump_raw(raw)),
        ], PAID, extra_keys=[k_paid_qty(show_id)])

    async def mark_failed(
        self,
        order_id: str,
        payment_ref: Optional[str] = None,
        raw: Optional[Dict[str, Any]] = None,
    ) -> Tuple[bool, StoredOrder]:
        return await self._run(self._mark_failed, order_id, [
            _s(payment_ref), _s(dump_raw(raw)),
        ], FAILED)

    async def redeem_once(
        self, order_id: str, operator: str
    ) -> Tuple[bool, StoredOrder]:
        return await self._run(self._redeem, order_id, [
            _s(now_ts()), operator,
        ], "redeem")

    async def get_paid_quantity_by_event(self, show_id: str) -> Dict[str, int]:
        try:
            h = await self.r.hgetall(k_paid_qty(show_id))
        except redis.RedisError as e:
            raise StoreError(f"paid quantity query failed for {show_id}") from e
        return {event_id: int(qty) for event_id, qty in h.items()}

    async def list_recent(self, limit: int = 200) -> List[StoredOrder]:
        try:
            ids = await self.r.zrevrange(RECENT_INDEX, 0, max(0, limit - 1))
            pipe = self.r.pipeline()
            for order_id in ids:
                pipe.hgetall(k_order(order_id))
            rows = await pipe.execute()
        except redis.RedisError as e:
            raise StoreError("recent orders query failed") from e
        return [StoredOrder.from_row(h) for h in rows if h]


