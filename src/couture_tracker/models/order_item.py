"""
Order item models.

This module contains:
- OrderItem: one garment of an order, split into sections (pieces)
- OrderItemEvent: append-only order item timeline
- VideoRecord: QA videos uploaded for the garment, current and historical
"""

from typing import Dict, List, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Enum as SQLEnum,
)
from sqlalchemy.dialects.sqlite import JSON
from sqlalchemy.orm import relationship

from .base import BaseModel
from .enums import OrderItemStatus, SectionStatus
from ..utils.datetime_utils import to_iso, utc_now


class OrderItem(BaseModel):
    """
    A single garment being made to order.

    Each piece of the garment (shirt, trouser, dupatta, ...) is tracked as a
    SectionState with its own status and approval round. The item's status is
    composed from those section statuses and the packet state.

    Attributes:
        order_id: Owning order
        product_id / product_name: Product reference (catalog is external)
        size: Size code (mandatory)
        quantity: Number of garments
        status: Current OrderItemStatus
        due_date: Promised delivery date
        is_ready_stock: Decided at packet approval; True skips dyeing/production
    """

    __tablename__ = "order_items"

    order_id = Column(
        Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id = Column(String(100), nullable=False)
    product_name = Column(String(200), nullable=False)
    size = Column(String(20), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    status = Column(SQLEnum(OrderItemStatus), nullable=False, default=OrderItemStatus.RECEIVED)
    due_date = Column(Date, nullable=True)
    is_ready_stock = Column(Boolean, nullable=True)
    notes = Column(Text, nullable=True)

    order = relationship("Order", back_populates="items")
    sections = relationship(
        "SectionState",
        back_populates="order_item",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="SectionState.position",
    )
    timeline = relationship(
        "OrderItemEvent",
        back_populates="order_item",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderItemEvent.id",
    )
    videos = relationship(
        "VideoRecord",
        back_populates="order_item",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="VideoRecord.id",
    )
    packet = relationship(
        "Packet",
        back_populates="order_item",
        uselist=False,
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    production_assignment = relationship(
        "ProductionAssignment",
        back_populates="order_item",
        uselist=False,
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    production_tasks = relationship(
        "ProductionTask",
        back_populates="order_item",
        cascade="all, delete-orphan",
        order_by="ProductionTask.id",
    )

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_item_quantity_positive"),
        Index("idx_order_item_status", "status"),
    )

    def get_section(self, name: str) -> Optional["SectionState"]:
        """Return the section with the given (normalized) name, or None."""
        for section in self.sections:
            if section.name == name:
                return section
        return None

    @property
    def section_names(self) -> List[str]:
        return [section.name for section in self.sections]

    @property
    def section_statuses(self) -> Dict[str, SectionStatus]:
        """Map of section name to status."""
        return {section.name: section.status for section in self.sections}

    @property
    def current_video(self) -> Optional["VideoRecord"]:
        for video in self.videos:
            if video.is_current:
                return video
        return None

    @property
    def video_history(self) -> List["VideoRecord"]:
        return [video for video in self.videos if not video.is_current]

    def __repr__(self) -> str:
        """String representation of order item."""
        return (
            f"OrderItem(id={self.id}, order_id={self.order_id}, "
            f"product='{self.product_name}', status={self.status.value})"
        )


class OrderItemEvent(BaseModel):
    """
    Append-only order item timeline entry.

    from_status / to_status are recorded for every status change so that the
    current status can be rebuilt by folding over the log.
    """

    __tablename__ = "order_item_events"

    order_item_id = Column(
        Integer, ForeignKey("order_items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    action = Column(String(100), nullable=False)
    from_status = Column(String(50), nullable=True)
    to_status = Column(String(50), nullable=True)
    user_id = Column(String(100), nullable=True)
    details = Column(JSON, nullable=True)

    order_item = relationship("OrderItem", back_populates="timeline")

    def to_timeline_entry(self) -> dict:
        return {
            "action": self.action,
            "user": self.user_id,
            "timestamp": to_iso(self.created_at),
            "details": self.details or {},
        }


class VideoRecord(BaseModel):
    """
    QA video of a finished garment.

    Only the playback reference returned by media storage is kept. Exactly one
    record per order item is current; re-video requests move the previous one
    to history.
    """

    __tablename__ = "video_records"

    order_item_id = Column(
        Integer, ForeignKey("order_items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    playback_reference = Column(String(500), nullable=False)
    uploaded_at = Column(DateTime, nullable=False, default=utc_now)
    uploaded_by = Column(String(100), nullable=True)
    is_current = Column(Boolean, nullable=False, default=True)
    replaced_at = Column(DateTime, nullable=True)
    replaced_reason = Column(Text, nullable=True)

    order_item = relationship("OrderItem", back_populates="videos")

    def __repr__(self) -> str:
        return (
            f"VideoRecord(id={self.id}, order_item_id={self.order_item_id}, "
            f"is_current={self.is_current})"
        )
