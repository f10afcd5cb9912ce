"""
Order Model - marketplace purchase, as far as payment webhooks touch it
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, JSON, Numeric

from app.db.database import Base, utcnow


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    AUTHORIZED = "authorized"
    PAID = "paid"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


# Allowed forward moves. Payment events can arrive out of order or twice,
# so a status never moves backwards (paid is never downgraded to pending).
ORDER_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.PENDING: {
        OrderStatus.AUTHORIZED,
        OrderStatus.PAID,
        OrderStatus.CANCELLED,
    },
    OrderStatus.AUTHORIZED: {
        OrderStatus.PAID,
        OrderStatus.CANCELLED,
    },
    OrderStatus.PAID: {
        OrderStatus.REFUNDED,
    },
    OrderStatus.CANCELLED: set(),
    OrderStatus.REFUNDED: set(),
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    """True if ``current`` may move to ``target``"""
    return target in ORDER_TRANSITIONS.get(current, set())


class Order(Base):
    """Order record"""

    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    listing_id = Column(Integer, nullable=True, index=True)
    buyer_id = Column(String(64), nullable=True)
    seller_id = Column(String(64), nullable=True)
    amount = Column(Numeric(12, 2), nullable=True)

    status = Column(SQLEnum(OrderStatus), default=OrderStatus.PENDING, nullable=False, index=True)

    # Finix references
    finix_authorization_id = Column(String(64), nullable=True, index=True)
    finix_payment_instrument_id = Column(String(64), nullable=True, index=True)
    finix_transfer_id = Column(String(64), nullable=True, unique=True)

    chat_channel_id = Column(String(128), nullable=True)

    authorized_at = Column(DateTime, nullable=True)
    three_ds_completed_at = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)

    # Disputes
    dispute_id = Column(String(64), nullable=True)
    dispute_state = Column(String(32), nullable=True)
    dispute_reason = Column(String(255), nullable=True)
    # minor units (cents), as sent by Finix
    dispute_amount = Column(Integer, nullable=True)
    dispute_respond_by = Column(DateTime, nullable=True)
    dispute_created_at = Column(DateTime, nullable=True)

    metadata_json = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
