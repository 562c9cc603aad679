"""
Order models.

This module contains:
- Order: a client order holding one or more garments (order items)
- Payment: a payment recorded against an order
- OrderEvent: append-only order timeline
"""

from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Enum as SQLEnum,
)
from sqlalchemy.dialects.sqlite import JSON
from sqlalchemy.orm import relationship

from .base import BaseModel
from .enums import OrderStatus
from ..utils.datetime_utils import to_iso, utc_now


class Order(BaseModel):
    """
    Client order.

    The order status is driven by the sales stage; while garments are still
    moving through the workshop it stays RECEIVED, INVENTORY_CHECK or
    IN_PROGRESS.

    Attributes:
        order_number: Human-facing order number (unique)
        customer_name: Client name
        total_amount: Amount that payments must cover before dispatch
        currency: ISO currency code
        status: Current OrderStatus
        dispatch_method / tracking_number / dispatched_at: Set on dispatch
        completed_at / completed_by: Set when delivery is confirmed
    """

    __tablename__ = "orders"

    order_number = Column(String(50), nullable=False, unique=True, index=True)
    customer_name = Column(String(200), nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(SQLEnum(OrderStatus), nullable=False, default=OrderStatus.RECEIVED)
    notes = Column(Text, nullable=True)

    dispatch_method = Column(String(100), nullable=True)
    tracking_number = Column(String(100), nullable=True)
    dispatched_at = Column(DateTime, nullable=True)
    dispatched_by = Column(String(100), nullable=True)
    completed_at = Column(DateTime, nullable=True)
    completed_by = Column(String(100), nullable=True)

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderItem.id",
    )
    payments = relationship(
        "Payment",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="Payment.id",
    )
    timeline = relationship(
        "OrderEvent",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderEvent.id",
    )
    sales_requests = relationship(
        "SalesRequest",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="SalesRequest.id",
    )

    __table_args__ = (
        CheckConstraint("total_amount >= 0", name="ck_order_total_non_negative"),
        Index("idx_order_status", "status"),
    )

    @property
    def total_paid(self) -> Decimal:
        """Sum of recorded payments."""
        total = Decimal("0.00")
        for payment in self.payments:
            total += Decimal(str(payment.amount))
        return total

    @property
    def balance_due(self) -> Decimal:
        """Amount still owed; never negative."""
        balance = Decimal(str(self.total_amount)) - self.total_paid
        return balance if balance > 0 else Decimal("0.00")

    def __repr__(self) -> str:
        """String representation of order."""
        return f"Order(id={self.id}, order_number='{self.order_number}', status={self.status.value})"


class Payment(BaseModel):
    """
    Payment recorded against an order.

    Attributes:
        amount: Positive amount paid
        method: Payment method (cash, bank transfer, card, ...)
        reference: Optional external reference (receipt, transaction id)
        recorded_by: User who recorded the payment
    """

    __tablename__ = "payments"

    order_id = Column(
        Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    amount = Column(Numeric(12, 2), nullable=False)
    method = Column(String(50), nullable=False)
    reference = Column(String(200), nullable=True)
    recorded_by = Column(String(100), nullable=True)
    paid_at = Column(DateTime, nullable=False, default=utc_now)

    order = relationship("Order", back_populates="payments")

    __table_args__ = (CheckConstraint("amount > 0", name="ck_payment_amount_positive"),)

    def __repr__(self) -> str:
        return f"Payment(id={self.id}, order_id={self.order_id}, amount={self.amount})"


class OrderEvent(BaseModel):
    """Append-only order timeline entry."""

    __tablename__ = "order_events"

    order_id = Column(
        Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    action = Column(String(100), nullable=False)
    from_status = Column(String(50), nullable=True)
    to_status = Column(String(50), nullable=True)
    user_id = Column(String(100), nullable=True)
    details = Column(JSON, nullable=True)

    order = relationship("Order", back_populates="timeline")

    def to_timeline_entry(self) -> dict:
        return {
            "action": self.action,
            "user": self.user_id,
            "timestamp": to_iso(self.created_at),
            "details": self.details or {},
        }
