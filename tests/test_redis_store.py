import asyncio
import os

import pytest
import redis.asyncio as redis

from showtix.errors import DuplicateOrder, OrderNotFound
from showtix.model.order.orm import PAID
from showtix.model.orderstore import new_store
from showtix.model.orderstore._redis import (
    RECENT_INDEX, k_order, k_paid_qty,
)

from conftest import new_order

REDIS_TEST_URL = os.getenv("REDIS_TEST_URL")

pytestmark = pytest.mark.anyio


@pytest.fixture
async def rstore(anyio_backend):
    if not REDIS_TEST_URL:
        pytest.skip("set REDIS_TEST_URL to a disposable database")
    r = redis.from_url(REDIS_TEST_URL, decode_responses=True)
    await r.flushdb()
    yield new_store("redis", r=r)
    await r.flushdb()
    await r.aclose()


class ScriptRecorder:
    """Stands in for a Redis client; records every script call."""

    def __init__(self, replies):
        self.calls = []
        self.replies = list(replies)
        self.hashes = {}

    def register_script(self, source):
        async def run(keys, args):
            self.calls.append((source, list(keys), list(args)))
            return self.replies.pop(0)
        return run

    async def hget(self, key, field):
        return self.hashes.get(key, {}).get(field)

    async def hgetall(self, key):
        return dict(self.hashes.get(key, {}))


def _row(status="paid"):
    return {
        "order_id": "demo-show-evt1-abc", "show_id": "demo-show",
        "event_id": "evt1", "qty": "2", "buyer_name": "Dana",
        "buyer_email": "dana@example.com", "amount": "20000",
        "currency": "ILS", "status": status, "created_at": "1.0",
        "paid_at": "", "payment_ref": "", "consent_terms": "1",
        "consent_marketing": "0", "raw_payload": "", "redeemed_at": "",
        "redeemed_by": "",
    }


async def test_complimentary_insert_counts_paid_qty_in_one_script():
    r = ScriptRecorder([1])
    r.hashes[k_order("demo-show-evt1-abc")] = _row()
    await new_store("redis", r=r).create_complimentary(new_order())

    [(source, keys, args)] = r.calls
    assert keys == [k_order("demo-show-evt1-abc"), RECENT_INDEX,
                    k_paid_qty("demo-show")]
    assert args[2:4] == ["evt1", "2"]
    assert "HINCRBY', KEYS[3]" in source


async def test_pending_insert_adds_no_paid_qty():
    r = ScriptRecorder([1])
    r.hashes[k_order("demo-show-evt1-abc")] = _row("pending")
    await new_store("redis", r=r).create_pending(new_order())
    [(_, _, args)] = r.calls
    assert args[3] == "0"


async def test_mark_paid_declares_paid_qty_key():
    r = ScriptRecorder([1])
    r.hashes[k_order("demo-show-evt1-abc")] = _row("pending")
    updated, _ = await new_store("redis", r=r).mark_paid_once(
        "demo-show-evt1-abc", "pay-1"
    )
    assert updated
    [(source, keys, _)] = r.calls
    assert keys == [k_order("demo-show-evt1-abc"), k_paid_qty("demo-show")]
    assert "paidqty" not in source

    with pytest.raises(OrderNotFound):
        await new_store("redis", r=ScriptRecorder([])).mark_paid_once(
            "missing", None
        )


async def test_redis_create_and_duplicate(rstore):
    created = await rstore.create_pending(new_order())
    assert created.qty == 2
    assert created.consent_terms is True
    assert created.paid_at is None
    with pytest.raises(DuplicateOrder):
        await rstore.create_pending(new_order())


async def test_redis_mark_paid_once(rstore):
    await rstore.create_pending(new_order())
    results = await asyncio.gather(*[
        rstore.mark_paid_once("demo-show-evt1-abc", f"pay-{i}", amount=20000)
        for i in range(8)
    ])
    assert sum(1 for updated, _ in results if updated) == 1
    order = await rstore.get("demo-show-evt1-abc")
    assert order.status == PAID
    assert await rstore.get_paid_quantity_by_event("demo-show") == {"evt1": 2}

    with pytest.raises(OrderNotFound):
        await rstore.mark_paid_once("missing", None)


async def test_redis_redeem_once(rstore):
    await rstore.create_complimentary(new_order())
    first, order = await rstore.redeem_once("demo-show-evt1-abc", "door")
    second, again = await rstore.redeem_once("demo-show-evt1-abc", "other")
    assert (first, second) == (True, False)
    assert again.redeemed_by == "door"
    assert await rstore.get_paid_quantity_by_event("demo-show") == {"evt1": 2}
