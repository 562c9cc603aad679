"""
SalesRequest model for client-driven requests raised during sales approval.

Re-video requests stay OPEN until QA uploads a replacement video; the other
request types are recorded already RESOLVED because they take effect
immediately.
"""

from sqlalchemy import (
    Column,
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
from .enums import SalesRequestStatus, SalesRequestType


class SalesRequest(BaseModel):
    """
    Request raised by sales after client feedback.

    Attributes:
        order_id: Order the request belongs to
        order_item_id: Garment the request targets, when it targets one
        request_type: re_video, alteration, scratch or cancel
        sections: List of {"order_item_id", "section", "notes"} targets
        notes: Mandatory free-text notes (reason for scratch/cancel)
        requested_by: Sales user
        status: OPEN or RESOLVED
    """

    __tablename__ = "sales_requests"

    order_id = Column(
        Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    order_item_id = Column(
        Integer, ForeignKey("order_items.id", ondelete="CASCADE"), nullable=True, index=True
    )
    request_type = Column(SQLEnum(SalesRequestType), nullable=False)
    sections = Column(JSON, nullable=False, default=list)
    notes = Column(Text, nullable=False)
    requested_by = Column(String(100), nullable=True)
    status = Column(SQLEnum(SalesRequestStatus), nullable=False, default=SalesRequestStatus.OPEN)
    resolved_at = Column(DateTime, nullable=True)
    resolved_by = Column(String(100), nullable=True)

    order = relationship("Order", back_populates="sales_requests")

    __table_args__ = (Index("idx_sales_request_type_status", "request_type", "status"),)

    def __repr__(self) -> str:
        return (
            f"SalesRequest(id={self.id}, order_id={self.order_id}, "
            f"type={self.request_type.value}, status={self.status.value})"
        )
