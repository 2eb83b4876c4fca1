from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime, timezone

from .status import FulfillmentMethod, OrderStatus

Base = declarative_base()

ORDER_EARNED = "ORDER_EARNED"


def utcnow() -> datetime:
    # naive UTC, matching what the DateTime columns round-trip
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=True, index=True)
    status = Column(String(50), nullable=False, default=OrderStatus.AWAITING_PAYMENT.value, index=True)
    fulfillment_method = Column(String(20), nullable=False, default=FulfillmentMethod.PICKUP.value)
    total = Column(Numeric(10, 2), nullable=False)
    delivery_address = Column(Text, nullable=True)
    order_code = Column(String(16), nullable=True, unique=True)
    checkout_reference = Column(String(100), nullable=True, unique=True)
    checkout_claimed_at = Column(DateTime, nullable=True)  # in-flight checkout reservation
    estimated_ready_time = Column(DateTime, nullable=True)
    ready_at = Column(DateTime, nullable=True)
    driver_id = Column(Integer, nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderItem.id",
    )

    @property
    def is_delivery(self) -> bool:
        return self.fulfillment_method == FulfillmentMethod.DELIVERY.value

    def __repr__(self):
        return f"<Order(id={self.id}, status='{self.status}', fulfillment='{self.fulfillment_method}')>"


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    menu_item_id = Column(Integer, nullable=False)
    name = Column(String(200), nullable=True)  # catalog name at order time
    quantity = Column(Integer, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)  # snapshot of price at order time
    customizations = Column(JSON, nullable=True)

    order = relationship("Order", back_populates="items")


class LoyaltyAccount(Base):
    __tablename__ = "loyalty_accounts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, unique=True, index=True)
    points = Column(Integer, nullable=False, default=0)
    total_spent_this_period = Column(Numeric(12, 2), nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    transactions = relationship("PointsTransaction", back_populates="account")


class PointsTransaction(Base):
    """Append-only ledger entry. One ORDER_EARNED row per (order, user)."""

    __tablename__ = "points_transactions"
    __table_args__ = (
        UniqueConstraint("order_id", "user_id", "reason", name="uq_points_order_user_reason"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    account_id = Column(Integer, ForeignKey("loyalty_accounts.id"), nullable=False)
    points = Column(Integer, nullable=False)
    reason = Column(String(50), nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True, index=True)
    details = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    account = relationship("LoyaltyAccount", back_populates="transactions")
