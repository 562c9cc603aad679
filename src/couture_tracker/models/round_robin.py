"""
Round-robin assignment models.

- RoundRobinCursor: persisted rotation position for one roster
- ProductionAssignment: production head assigned to an order item
"""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from .base import BaseModel
from ..utils.datetime_utils import utc_now


class RoundRobinCursor(BaseModel):
    """
    Rotation cursor for an ordered roster.

    Attributes:
        key: Roster key (e.g. "production_heads"), unique
        last_assigned_index: Index of the last member assigned; -1 before the first
        last_assigned_user_id: Member picked by the last advance
    """

    __tablename__ = "round_robin_cursors"

    key = Column(String(100), nullable=False, unique=True, index=True)
    last_assigned_index = Column(Integer, nullable=False, default=-1)
    last_assigned_user_id = Column(String(100), nullable=True)

    def __repr__(self) -> str:
        return f"RoundRobinCursor(key='{self.key}', last_assigned_index={self.last_assigned_index})"


class ProductionAssignment(BaseModel):
    """One production head per order item."""

    __tablename__ = "production_assignments"

    order_item_id = Column(
        Integer,
        ForeignKey("order_items.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )
    production_head_id = Column(String(100), nullable=False, index=True)
    assigned_at = Column(DateTime, nullable=False, default=utc_now)

    order_item = relationship("OrderItem", back_populates="production_assignment")

    def __repr__(self) -> str:
        return (
            f"ProductionAssignment(order_item_id={self.order_item_id}, "
            f"production_head_id='{self.production_head_id}')"
        )
