from __future__ import annotations
from typing import Any, AsyncContextManager, Callable, Dict, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..order.orm import PAID, PENDING, FAILED
from ..order.record import ORDER_COLUMNS, NewOrder, StoredOrder, dump_raw
from ...errors import DuplicateOrder, OrderNotFound, StoreError
from ...helpers import now_ts

Gated = Callable[[], AsyncContextManager[None]]

_SELECT_ORDER = (
    f"SELECT {', '.join(ORDER_COLUMNS)} FROM orders WHERE order_id = :id"
)


class OrderStore:
    """
    Orders on PostgreSQL / SQLite.

    Every state change is one conditional UPDATE whose WHERE clause encodes
    the prior state; the affected row count tells the caller whether *it*
    made the transition. Concurrent callers racing on the same row see
    exactly one rowcount of 1.
    """

    def __init__(
        self, *, sessions: async_sessionmaker[AsyncSession], gated: Gated
    ) -> None:
        self.sessions = sessions
        self.gated = gated

    async def _get(self, db: AsyncSession, order_id: str
                   ) -> Optional[StoredOrder]:
        row = (await db.execute(
            text(_SELECT_ORDER), {"id": order_id}
        )).mappings().first()
        return StoredOrder.from_row(row) if row else None

    async def _insert(self, order: NewOrder, *, status: str,
                      paid_at: Optional[float]) -> StoredOrder:
        params: Dict[str, Any] = {
            "order_id": order.order_id,
            "show_id": order.show_id,
            "event_id": order.event_id,
            "qty": int(order.qty),
            "buyer_name": order.buyer_name,
            "buyer_email": order.buyer_email,
            "amount": order.amount,
            "currency": order.currency,
            "status": status,
            "created_at": now_ts(),
            "paid_at": paid_at,
            "payment_ref": order.payment_ref,
            "consent_terms": bool(order.consent_terms),
            "consent_marketing": bool(order.consent_marketing),
            "raw_payload": dump_raw(order.raw_payload),
        }
        try:
            async with self.gated():
                async with self.sessions() as db:
                    async with db.begin():
                        await db.execute(text("""
                          INSERT INTO orders(
                            order_id, show_id, event_id, qty, buyer_name,
                            buyer_email, amount, currency, status, created_at,
                            paid_at, payment_ref, consent_terms,
                            consent_marketing, raw_payload
                          ) VALUES (
                            :order_id, :show_id, :event_id, :qty, :buyer_name,
                            :buyer_email, :amount, :currency, :status,
                            :created_at, :paid_at, :payment_ref,
                            :consent_terms, :consent_marketing, :raw_payload
                          )
                        """), params)
                        stored = await self._get(db, order.order_id)
        except IntegrityError as e:
            raise DuplicateOrder(order.order_id) from e
        except SQLAlchemyError as e:
            raise StoreError(f"insert failed for {order.order_id}") from e
        return stored

    async def create_pending(self, order: NewOrder) -> StoredOrder:
        return await self._insert(order, status=PENDING, paid_at=None)

    async def create_complimentary(self, order: NewOrder) -> StoredOrder:
        return await self._insert(order, status=PAID, paid_at=now_ts())

    async def get(self, order_id: str) -> Optional[StoredOrder]:
        try:
            async with self.gated():
                async with self.sessions() as db:
                    async with db.begin():
                        return await self._get(db, order_id)
        except SQLAlchemyError as e:
            raise StoreError(f"get failed for {order_id}") from e

    async def _conditional_update(
        self, order_id: str, sql: str, params: Dict[str, Any], what: str
    ) -> Tuple[bool, StoredOrder]:
        try:
            async with self.gated():
                async with self.sessions() as db:
                    async with db.begin():
                        # UPDATE first so the write lock is taken before
                        # the read-back
                        result = await db.execute(
                            text(sql), {"id": order_id, **params}
                        )
                        updated = result.rowcount == 1
                        order = await self._get(db, order_id)
        except SQLAlchemyError as e:
            raise StoreError(f"{what} update failed for {order_id}") from e
        if order is None:
            raise OrderNotFound(order_id)
        return updated, order

    async def mark_paid_once(
        self,
        order_id: str,
        payment_ref: Optional[str],
        amount: Optional[int] = None,
        currency: Optional[str] = None,
        raw: Optional[Dict[str, Any]] = None,
    ) -> Tuple[bool, StoredOrder]:
        return await self._conditional_update(order_id, f"""
            UPDATE orders
               SET status = '{PAID}',
                   payment_ref = :payment_ref,
                   amount = COALESCE(:amount, amount),
                   currency = COALESCE(:currency, currency),
                   paid_at = :paid_at,
                   raw_payload = :raw
             WHERE order_id = :id AND status != '{PAID}'
        """, {
            "payment_ref": payment_ref,
            "amount": amount,
            "currency": currency,
            "paid_at": now_ts(),
            "raw": dump_raw(raw),
        }, PAID)

    async def mark_failed(
        self,
        order_id: str,
        payment_ref: Optional[str] = None,
        raw: Optional[Dict[str, Any]] = None,
    ) -> Tuple[bool, StoredOrder]:
        return await self._conditional_update(order_id, f"""
            UPDATE orders
               SET status = '{FAILED}',
                   payment_ref = :payment_ref,
                   raw_payload = :raw
             WHERE order_id = :id AND status = '{PENDING}'
        """, {
            "payment_ref": payment_ref,
            "raw": dump_raw(raw),
        }, FAILED)

    async def redeem_once(
        self, order_id: str, operator: str
    ) -> Tuple[bool, StoredOrder]:
        return await self._conditional_update(order_id, f"""
            UPDATE orders
               SET redeemed_at = :now, redeemed_by = :operator
             WHERE order_id = :id
               AND status = '{PAID}'
               AND redeemed_at IS NULL
        """, {"now": now_ts(), "operator": operator}, "redeem")

    async def get_paid_quantity_by_event(self, show_id: str) -> Dict[str, int]:
        try:
            async with self.gated():
                async with self.sessions() as db:
                    async with db.begin():
                        rows = (await db.execute(text(f"""
                            SELECT event_id, SUM(qty) AS sold
                              FROM orders
                             WHERE show_id = :show AND status = '{PAID}'
                             GROUP BY event_id
                        """), {"show": show_id})).all()
        except SQLAlchemyError as e:
            raise StoreError(f"paid quantity query failed for {show_id}") from e
        return {r[0]: int(r[1] or 0) for r in rows}

    async def list_recent(self, limit: int = 200) -> list[StoredOrder]:
        try:
            async with self.gated():
                async with self.sessions() as db:
                    async with db.begin():
                        rows = (await db.execute(text(f"""
                            SELECT {', '.join(ORDER_COLUMNS)} FROM orders
                             ORDER BY created_at DESC
                             LIMIT :limit
                        """), {"limit": int(limit)})).mappings().all()
        except SQLAlchemyError as e:
            raise StoreError("recent orders query failed") from e
        return [StoredOrder.from_row(r) for r in rows]
