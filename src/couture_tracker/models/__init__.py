"""
Database models package.

This package contains all SQLAlchemy ORM models for the workflow engine.
"""

from .base import Base, BaseModel
from .enums import (
    OrderItemStatus,
    OrderStatus,
    PacketStatus,
    ProductionTaskStatus,
    ReviewStage,
    SalesRequestStatus,
    SalesRequestType,
    SectionStatus,
)
from .order import Order, OrderEvent, Payment
from .order_item import OrderItem, OrderItemEvent, VideoRecord
from .section_state import SectionEvent, SectionState
from .packet import Packet, PacketEvent, PacketRemovedItem, PickListItem
from .production_task import ProductionTask
from .round_robin import ProductionAssignment, RoundRobinCursor
from .sales_request import SalesRequest

__all__ = [
    "Base",
    "BaseModel",
    # Enums
    "OrderItemStatus",
    "OrderStatus",
    "PacketStatus",
    "ProductionTaskStatus",
    "ReviewStage",
    "SalesRequestStatus",
    "SalesRequestType",
    "SectionStatus",
    # Orders
    "Order",
    "OrderEvent",
    "Payment",
    "OrderItem",
    "OrderItemEvent",
    "VideoRecord",
    "SectionState",
    "SectionEvent",
    # Packets
    "Packet",
    "PacketEvent",
    "PacketRemovedItem",
    "PickListItem",
    # Assignment
    "ProductionAssignment",
    "RoundRobinCursor",
    "ProductionTask",
    # Sales
    "SalesRequest",
]
