"""
Material packet models.

This module contains:
- Packet: the bundle of materials gathered for one order item (1:1, created lazily)
- PickListItem: one material row of the packet's pick list
- PacketRemovedItem: audit log of rows purged when sections are re-packeted
- PacketEvent: append-only packet timeline
"""

from decimal import Decimal
from typing import List

from sqlalchemy import (
    Boolean,
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
from .enums import PacketStatus
from ..utils.constants import DEFAULT_RACK_LOCATION
from ..utils.datetime_utils import to_iso


class Packet(BaseModel):
    """
    Material packet for an order item.

    A packet is never recreated for the same order item. Sections that pass the
    inventory check later extend it in place, incrementing packet_round.

    Counters:
        total_items: Number of pick-list rows (always len(pick_list))
        picked_items: Number of picked rows across all rounds
            (always the count of rows with is_picked)
        previous_round_picked_items: picked_items as it stood when the packet
            was last extended

    Attributes:
        status: Current PacketStatus
        is_partial: True while some sections are still pending material
        packet_round: Starts at 1, +1 per extension
        sections_included / sections_pending: Disjoint lists of section names
        current_round_sections: Sections added in the current round
        assigned_to / assigned_by / assigned_at: Current assignment
        previous_assignee_id: Assignee snapshot taken at extension
    """

    __tablename__ = "packets"

    order_item_id = Column(
        Integer,
        ForeignKey("order_items.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )
    status = Column(SQLEnum(PacketStatus), nullable=False, default=PacketStatus.PENDING)
    is_partial = Column(Boolean, nullable=False, default=False)
    packet_round = Column(Integer, nullable=False, default=1)

    sections_included = Column(JSON, nullable=False, default=list)
    sections_pending = Column(JSON, nullable=False, default=list)
    current_round_sections = Column(JSON, nullable=False, default=list)

    assigned_to = Column(String(100), nullable=True)
    assigned_by = Column(String(100), nullable=True)
    assigned_at = Column(DateTime, nullable=True)
    previous_assignee_id = Column(String(100), nullable=True)

    picked_items = Column(Integer, nullable=False, default=0)
    total_items = Column(Integer, nullable=False, default=0)
    previous_round_picked_items = Column(Integer, nullable=False, default=0)

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    completion_notes = Column(Text, nullable=True)

    # Result of the most recent packet check
    checked_by = Column(String(100), nullable=True)
    checked_at = Column(DateTime, nullable=True)
    check_result = Column(String(20), nullable=True)
    check_notes = Column(Text, nullable=True)
    rejection_reason_code = Column(String(50), nullable=True)
    rejection_reason = Column(Text, nullable=True)
    is_ready_stock = Column(Boolean, nullable=True)

    order_item = relationship("OrderItem", back_populates="packet")
    pick_list = relationship(
        "PickListItem",
        back_populates="packet",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="PickListItem.position",
    )
    removed_items = relationship(
        "PacketRemovedItem",
        back_populates="packet",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="PacketRemovedItem.id",
    )
    timeline = relationship(
        "PacketEvent",
        back_populates="packet",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="PacketEvent.id",
    )

    __table_args__ = (
        CheckConstraint("packet_round >= 1", name="ck_packet_round_positive"),
        CheckConstraint("picked_items >= 0", name="ck_packet_picked_non_negative"),
        CheckConstraint("picked_items <= total_items", name="ck_packet_picked_le_total"),
        Index("idx_packet_status", "status"),
        Index("idx_packet_assigned_to", "assigned_to"),
    )

    @property
    def current_round_items(self) -> List["PickListItem"]:
        """Pick-list rows added in the current round."""
        return [item for item in self.pick_list if item.added_in_round == self.packet_round]

    @property
    def round_picked_items(self) -> int:
        """Picked rows among those added in the current round."""
        return sum(1 for item in self.current_round_items if item.is_picked)

    @property
    def round_total_items(self) -> int:
        return len(self.current_round_items)

    @property
    def remaining_items(self) -> int:
        return self.total_items - self.picked_items

    def to_dict(self, include_relationships: bool = False) -> dict:
        """
        Convert packet to dictionary.

        Args:
            include_relationships: If True, include pick list, removal log and timeline

        Returns:
            Dictionary with the persisted packet shape plus round counters
        """
        result = super().to_dict(include_relationships=False)
        result["round_picked_items"] = self.round_picked_items
        result["round_total_items"] = self.round_total_items
        if include_relationships:
            result["pick_list"] = [item.to_dict() for item in self.pick_list]
            result["removed_items"] = [item.to_dict() for item in self.removed_items]
            result["timeline"] = [event.to_timeline_entry() for event in self.timeline]
        return result

    def __repr__(self) -> str:
        return (
            f"Packet(id={self.id}, order_item_id={self.order_item_id}, "
            f"status={self.status.value}, round={self.packet_round})"
        )


class PickListItem(BaseModel):
    """
    One material row of a packet's pick list.

    Attributes:
        inventory_item_id: External inventory item reference
        inventory_item_name / sku / unit / rack_location: Enrichment from inventory
        required_qty: Quantity to collect
        piece: Section the material is for
        is_picked / picked_qty / picked_at / picked_by: Pick result
        added_in_round: Packet round in which the row was added
        position: Order within the pick list
    """

    __tablename__ = "pick_list_items"

    packet_id = Column(
        Integer, ForeignKey("packets.id", ondelete="CASCADE"), nullable=False, index=True
    )
    inventory_item_id = Column(String(100), nullable=False)
    inventory_item_name = Column(String(200), nullable=False)
    sku = Column(String(100), nullable=True)
    required_qty = Column(Numeric(12, 3), nullable=False)
    unit = Column(String(50), nullable=False)
    rack_location = Column(String(100), nullable=False, default=DEFAULT_RACK_LOCATION)
    piece = Column(String(100), nullable=False)
    is_picked = Column(Boolean, nullable=False, default=False)
    picked_qty = Column(Numeric(12, 3), nullable=True)
    picked_at = Column(DateTime, nullable=True)
    picked_by = Column(String(100), nullable=True)
    pick_notes = Column(Text, nullable=True)
    added_in_round = Column(Integer, nullable=False, default=1)
    position = Column(Integer, nullable=False, default=0)

    packet = relationship("Packet", back_populates="pick_list")

    __table_args__ = (
        CheckConstraint("required_qty > 0", name="ck_pick_item_required_positive"),
        Index("idx_pick_item_piece", "packet_id", "piece"),
    )

    def __repr__(self) -> str:
        return (
            f"PickListItem(id={self.id}, item='{self.inventory_item_id}', "
            f"piece='{self.piece}', picked={self.is_picked})"
        )


class PacketRemovedItem(BaseModel):
    """
    Pick-list row purged from a packet when its section was re-packeted.

    Keeps a copy of the row as it was, plus why and in which round it was removed.
    """

    __tablename__ = "packet_removed_items"

    packet_id = Column(
        Integer, ForeignKey("packets.id", ondelete="CASCADE"), nullable=False, index=True
    )
    original_item_id = Column(Integer, nullable=True)
    inventory_item_id = Column(String(100), nullable=False)
    inventory_item_name = Column(String(200), nullable=False)
    sku = Column(String(100), nullable=True)
    required_qty = Column(Numeric(12, 3), nullable=False, default=Decimal("0"))
    unit = Column(String(50), nullable=False)
    rack_location = Column(String(100), nullable=True)
    piece = Column(String(100), nullable=False)
    was_picked = Column(Boolean, nullable=False, default=False)
    picked_qty = Column(Numeric(12, 3), nullable=True)
    added_in_round = Column(Integer, nullable=False)
    removed_at_round = Column(Integer, nullable=False)
    reason = Column(Text, nullable=False)
    removed_by = Column(String(100), nullable=True)

    packet = relationship("Packet", back_populates="removed_items")


class PacketEvent(BaseModel):
    """Append-only packet timeline entry ({action, user, timestamp, details})."""

    __tablename__ = "packet_events"

    packet_id = Column(
        Integer, ForeignKey("packets.id", ondelete="CASCADE"), nullable=False, index=True
    )
    action = Column(String(100), nullable=False)
    from_status = Column(String(50), nullable=True)
    to_status = Column(String(50), nullable=True)
    user_id = Column(String(100), nullable=True)
    packet_round = Column(Integer, nullable=False, default=1)
    details = Column(JSON, nullable=True)

    packet = relationship("Packet", back_populates="timeline")

    def to_timeline_entry(self) -> dict:
        return {
            "action": self.action,
            "user": self.user_id,
            "timestamp": to_iso(self.created_at),
            "details": self.details or {},
        }

    def __repr__(self) -> str:
        return f"PacketEvent(id={self.id}, packet_id={self.packet_id}, action='{self.action}')"
