import pytest

from showtix.errors import Reason, StoreError
from showtix.redemption import RedemptionGate, validate
from showtix.tickets import ticket_code

from conftest import new_order

pytestmark = pytest.mark.anyio

ORDER_ID = "demo-show-evt1-abc"
CODE = ticket_code(ORDER_ID)


def test_validate():
    assert validate(ORDER_ID, CODE)
    assert validate(f" {ORDER_ID} ", CODE.lower())
    assert not validate(ORDER_ID, CODE[:-1] + ("0" if CODE[-1] != "0" else "1"))
    assert not validate("", CODE)
    assert not validate(ORDER_ID, "")


async def test_redeem_paid_ticket_once(store):
    await store.create_pending(new_order())
    await store.mark_paid_once(ORDER_ID, "pay-1")
    gate = RedemptionGate(store)

    first = await gate.redeem(ORDER_ID, CODE, "door")
    assert first.ok and first.redeemed and not first.already_redeemed
    assert first.order.redeemed_by == "door"

    second = await gate.redeem(ORDER_ID, CODE, "other")
    assert second.ok and not second.redeemed and second.already_redeemed
    assert second.order.redeemed_by == "door"


async def test_lookup_does_not_redeem(store):
    await store.create_complimentary(new_order())
    gate = RedemptionGate(store)
    result = await gate.lookup(ORDER_ID, CODE)
    assert result.ok and not result.redeemed and not result.already_redeemed
    assert (await store.get(ORDER_ID)).redeemed_at is None


async def test_unpaid_ticket_is_refused(store):
    await store.create_pending(new_order())
    result = await RedemptionGate(store).redeem(ORDER_ID, CODE, "door")
    assert not result.ok
    assert result.reason is Reason.ORDER_NOT_PAID
    assert result.status_code == 400


async def test_wrong_code_and_unknown_order(store):
    gate = RedemptionGate(store)
    bad = await gate.redeem(ORDER_ID, "WRONGCODE123", "door")
    assert bad.reason is Reason.INVALID_TICKET_CODE

    missing = await gate.redeem("nope", ticket_code("nope"), "door")
    assert missing.reason is Reason.ORDER_NOT_FOUND
    assert missing.status_code == 404


class _RacingStore:
    """Order looks unredeemed on read, but another scanner wins the update."""

    def __init__(self, order, winner):
        self.order = order
        self.winner = winner

    async def get(self, order_id):
        return self.order

    async def redeem_once(self, order_id, operator):
        self.order.redeemed_at = 1.0
        self.order.redeemed_by = self.winner
        return False, self.order


async def test_lost_race_reports_already_redeemed(store):
    order = await store.create_complimentary(new_order())
    gate = RedemptionGate(_RacingStore(order, "door-2"))
    result = await gate.redeem(ORDER_ID, CODE, "door-1")
    assert result.ok and result.already_redeemed and not result.redeemed
    assert result.order.redeemed_by == "door-2"


class _BrokenStore:
    async def get(self, order_id):
        raise StoreError("db down")


async def test_store_failures():
    gate = RedemptionGate(_BrokenStore())
    redeem = await gate.redeem(ORDER_ID, CODE, "door")
    assert redeem.reason is Reason.REDEEM_FAILED
    lookup = await gate.lookup(ORDER_ID, CODE)
    assert lookup.reason is Reason.TICKET_LOAD_FAILED
    assert lookup.status_code == 500
