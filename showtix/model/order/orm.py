from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Index,
    Integer,
    String,
    Float,
    Boolean,
    Text,
)


Base = declarative_base()

PENDING = "pending"
PAID = "paid"
FAILED = "failed"


# ----------------------------
# ORM models
# ----------------------------
class Order(Base):
    __tablename__ = "orders"
    order_id = Column(String, primary_key=True)
    show_id = Column(String, nullable=False)
    event_id = Column(String, nullable=False)
    qty = Column(Integer, nullable=False)
    buyer_name = Column(String, nullable=False, default="")
    buyer_email = Column(String, nullable=False)
    amount = Column(Integer, nullable=True)  # agorot
    currency = Column(String, nullable=False, default="ILS")

    # pending | paid | failed
    status = Column(String, nullable=False, default=PENDING)
    created_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)

    # AllPay payment_id
    payment_ref = Column(String, nullable=True)
    consent_terms = Column(Boolean, nullable=False, default=False)
    consent_marketing = Column(Boolean, nullable=False, default=False)
    # JSON snapshot of the last state-changing event
    raw_payload = Column(Text, nullable=True)

    redeemed_at = Column(Float, nullable=True)
    redeemed_by = Column(String, nullable=True)

    __table_args__ = (
        Index("idx_orders_show_status", "show_id", "status"),
    )


async def create_schema(engine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
