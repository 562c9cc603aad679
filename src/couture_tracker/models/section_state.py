"""
Section state models.

A section is one garment piece. SectionState holds its current status and
round counters; SectionEvent is the append-only history of every status
change, including the rejection reasons and notes.
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Enum as SQLEnum,
)
from sqlalchemy.dialects.sqlite import JSON
from sqlalchemy.orm import relationship

from .base import BaseModel
from .enums import ReviewStage, SectionStatus
from ..utils.datetime_utils import to_iso


class SectionState(BaseModel):
    """
    Per-section workflow state.

    Attributes:
        name: Lower-case piece name, unique within the order item
        position: Display order within the garment
        status: Current SectionStatus
        current_round: QA/client approval round (starts at 1, +1 per rejection)
        dyeing_round: Dyeing attempt (starts at 1, +1 per dyeing rejection)
        qa_video_reference: Playback reference of the video covering this section
        dyeing_accepted_by: Dyer who accepted the section
    """

    __tablename__ = "section_states"

    order_item_id = Column(
        Integer, ForeignKey("order_items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name = Column(String(100), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    status = Column(
        SQLEnum(SectionStatus), nullable=False, default=SectionStatus.PENDING_INVENTORY_CHECK
    )
    current_round = Column(Integer, nullable=False, default=1)
    dyeing_round = Column(Integer, nullable=False, default=1)
    qa_video_reference = Column(String(500), nullable=True)
    dyeing_accepted_by = Column(String(100), nullable=True)

    order_item = relationship("OrderItem", back_populates="sections")
    events = relationship(
        "SectionEvent",
        back_populates="section_state",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="SectionEvent.id",
    )

    __table_args__ = (
        UniqueConstraint("order_item_id", "name", name="uq_section_state_item_name"),
        CheckConstraint("current_round >= 1", name="ck_section_current_round_positive"),
        CheckConstraint("dyeing_round >= 1", name="ck_section_dyeing_round_positive"),
        Index("idx_section_state_status", "status"),
    )

    @property
    def rejection_history(self):
        """Events that sent this section back (QA, client or dyeing)."""
        return [event for event in self.events if event.stage is not None]

    def __repr__(self) -> str:
        return (
            f"SectionState(id={self.id}, name='{self.name}', status={self.status.value}, "
            f"round={self.current_round})"
        )


class SectionEvent(BaseModel):
    """
    Append-only section history entry.

    Attributes:
        action: What happened (e.g. "qa_rejected", "dyeing_started")
        from_status / to_status: Status change applied
        round: Approval round the event belongs to (before any increment)
        stage: Reviewer stage for rejections and alterations, else None
        reason_code / notes: Rejection reason and reviewer notes
    """

    __tablename__ = "section_events"

    section_state_id = Column(
        Integer, ForeignKey("section_states.id", ondelete="CASCADE"), nullable=False, index=True
    )
    action = Column(String(100), nullable=False)
    from_status = Column(String(50), nullable=True)
    to_status = Column(String(50), nullable=True)
    round = Column(Integer, nullable=False, default=1)
    stage = Column(SQLEnum(ReviewStage), nullable=True)
    reason_code = Column(String(50), nullable=True)
    notes = Column(Text, nullable=True)
    user_id = Column(String(100), nullable=True)
    details = Column(JSON, nullable=True)

    section_state = relationship("SectionState", back_populates="events")

    def to_timeline_entry(self) -> dict:
        details = dict(self.details or {})
        details.update({"round": self.round})
        if self.reason_code:
            details["reason_code"] = self.reason_code
        if self.notes:
            details["notes"] = self.notes
        return {
            "action": self.action,
            "user": self.user_id,
            "timestamp": to_iso(self.created_at),
            "details": details,
        }
