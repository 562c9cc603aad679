"""
Production task model.

A production head splits the production of one section into a sequence of
tasks (cutting, stitching, embroidery, ...), each assigned to a worker. Only
the first task of a plan starts READY; completing a task makes the next one
READY. The section is production-complete when every active task is.
"""

from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Enum as SQLEnum,
)
from sqlalchemy.orm import relationship

from .base import BaseModel
from .enums import ProductionTaskStatus


class ProductionTask(BaseModel):
    """
    One step of a section's production plan.

    Attributes:
        order_item_id: Garment the task belongs to
        section_name: Section (piece) the task works on
        section_round: Approval round of the section when the plan was made
        task_type: One of PRODUCTION_TASK_TYPES
        custom_task_name: Name of a CUSTOM task
        sequence_order: Position in the plan (1-based, unique per plan)
        assigned_to: Worker doing the task
        assigned_by: Production head who planned it
        status: Current ProductionTaskStatus
        is_active: False once the section restarts production with a new plan
        duration_minutes: Minutes between start and completion
    """

    __tablename__ = "production_tasks"

    order_item_id = Column(
        Integer, ForeignKey("order_items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    section_name = Column(String(100), nullable=False)
    section_round = Column(Integer, nullable=False, default=1)
    task_type = Column(String(50), nullable=False)
    custom_task_name = Column(String(200), nullable=True)
    sequence_order = Column(Integer, nullable=False)
    assigned_to = Column(String(100), nullable=False, index=True)
    assigned_by = Column(String(100), nullable=True)
    status = Column(
        SQLEnum(ProductionTaskStatus), nullable=False, default=ProductionTaskStatus.PENDING
    )
    is_active = Column(Boolean, nullable=False, default=True)
    notes = Column(Text, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    duration_minutes = Column(Integer, nullable=True)

    order_item = relationship("OrderItem", back_populates="production_tasks")

    __table_args__ = (
        CheckConstraint("sequence_order >= 1", name="ck_production_task_sequence_positive"),
        Index("idx_production_task_section", "order_item_id", "section_name"),
    )

    @property
    def display_name(self) -> str:
        if self.task_type == "CUSTOM" and self.custom_task_name:
            return self.custom_task_name
        return self.task_type

    @property
    def is_completed(self) -> bool:
        return self.status == ProductionTaskStatus.COMPLETED

    def blocking_summary(self) -> Optional[dict]:
        """Short description used when this task blocks the next one."""
        if self.is_completed:
            return None
        return {
            "task_id": self.id,
            "task_name": self.display_name,
            "status": self.status.value,
            "assigned_to": self.assigned_to,
        }

    def __repr__(self) -> str:
        return (
            f"ProductionTask(id={self.id}, order_item_id={self.order_item_id}, "
            f"section='{self.section_name}', seq={self.sequence_order}, "
            f"status={self.status.value})"
        )
