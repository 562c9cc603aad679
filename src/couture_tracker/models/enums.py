"""
Enumerations for the garment workflow.

This module contains the status enums shared by models and services:
- PacketStatus: material packet lifecycle
- SectionStatus: per-piece lifecycle from inventory check to client approval
- OrderItemStatus: aggregate status of one garment
- OrderStatus: order-level status driven by the sales stage
- SalesRequestType / SalesRequestStatus: client-driven requests
- ReviewStage: which reviewer sent a section back
- ProductionTaskStatus: sequenced production work on one section
"""

from enum import Enum


class PacketStatus(str, Enum):
    """
    Material packet status.

    Values:
        PENDING: Waiting for an assignee
        ASSIGNED: Assigned to a picker (also the state a rejected packet returns to)
        IN_PROGRESS: Picker is collecting materials
        COMPLETED: Every pick-list row picked, waiting for the packet check
        APPROVED: Packet check passed; terminal until the packet is extended
    """

    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    APPROVED = "APPROVED"


class SectionStatus(str, Enum):
    """
    Status of one garment section (piece).

    A section starts at PENDING_INVENTORY_CHECK and ends at CLIENT_APPROVED.
    Ready-stock sections skip dyeing and production and go straight from
    CREATE_PACKET to QA_PENDING.
    """

    PENDING_INVENTORY_CHECK = "PENDING_INVENTORY_CHECK"
    AWAITING_MATERIAL = "AWAITING_MATERIAL"
    CREATE_PACKET = "CREATE_PACKET"
    READY_FOR_DYEING = "READY_FOR_DYEING"
    DYEING_ACCEPTED = "DYEING_ACCEPTED"
    DYEING_IN_PROGRESS = "DYEING_IN_PROGRESS"
    READY_FOR_PRODUCTION = "READY_FOR_PRODUCTION"
    IN_PRODUCTION = "IN_PRODUCTION"
    PRODUCTION_COMPLETED = "PRODUCTION_COMPLETED"
    QA_PENDING = "QA_PENDING"
    QA_APPROVED = "QA_APPROVED"
    REWORK_REQUIRED = "REWORK_REQUIRED"
    CLIENT_APPROVED = "CLIENT_APPROVED"


class OrderItemStatus(str, Enum):
    """
    Aggregate status of an order item.

    Up to ALL_SECTIONS_QA_APPROVED the value is derived from the section
    statuses and the packet; from VIDEO_UPLOADED onwards it is set by the
    QA video and sales operations.
    """

    RECEIVED = "RECEIVED"
    INVENTORY_CHECK = "INVENTORY_CHECK"
    AWAITING_MATERIAL = "AWAITING_MATERIAL"
    CREATE_PACKET = "CREATE_PACKET"
    PARTIAL_CREATE_PACKET = "PARTIAL_CREATE_PACKET"
    PACKET_CHECK = "PACKET_CHECK"
    READY_FOR_DYEING = "READY_FOR_DYEING"
    IN_DYEING = "IN_DYEING"
    PARTIALLY_IN_DYEING = "PARTIALLY_IN_DYEING"
    READY_FOR_PRODUCTION = "READY_FOR_PRODUCTION"
    IN_PRODUCTION = "IN_PRODUCTION"
    PARTIAL_IN_PRODUCTION = "PARTIAL_IN_PRODUCTION"
    PRODUCTION_COMPLETED = "PRODUCTION_COMPLETED"
    REWORK_REQUIRED = "REWORK_REQUIRED"
    QUALITY_ASSURANCE = "QUALITY_ASSURANCE"
    ALL_SECTIONS_QA_APPROVED = "ALL_SECTIONS_QA_APPROVED"
    VIDEO_UPLOADED = "VIDEO_UPLOADED"
    READY_FOR_CLIENT_APPROVAL = "READY_FOR_CLIENT_APPROVAL"
    AWAITING_CLIENT_APPROVAL = "AWAITING_CLIENT_APPROVAL"
    ALTERATION_REQUIRED = "ALTERATION_REQUIRED"
    AWAITING_ACCOUNT_APPROVAL = "AWAITING_ACCOUNT_APPROVAL"
    READY_FOR_DISPATCH = "READY_FOR_DISPATCH"
    DISPATCHED = "DISPATCHED"
    COMPLETED = "COMPLETED"
    CANCELLED_BY_CLIENT = "CANCELLED_BY_CLIENT"


class OrderStatus(str, Enum):
    """Order-level status."""

    RECEIVED = "RECEIVED"
    INVENTORY_CHECK = "INVENTORY_CHECK"
    IN_PROGRESS = "IN_PROGRESS"
    READY_FOR_CLIENT_APPROVAL = "READY_FOR_CLIENT_APPROVAL"
    AWAITING_CLIENT_APPROVAL = "AWAITING_CLIENT_APPROVAL"
    AWAITING_ACCOUNT_APPROVAL = "AWAITING_ACCOUNT_APPROVAL"
    READY_FOR_DISPATCH = "READY_FOR_DISPATCH"
    DISPATCHED = "DISPATCHED"
    COMPLETED = "COMPLETED"
    CANCELLED_BY_CLIENT = "CANCELLED_BY_CLIENT"


class SalesRequestType(str, Enum):
    """Kinds of client-driven requests raised from the sales stage."""

    RE_VIDEO = "re_video"
    ALTERATION = "alteration"
    SCRATCH = "scratch"
    CANCEL = "cancel"


class SalesRequestStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class ReviewStage(str, Enum):
    """Stage that sent a section back for rework."""

    QA = "qa"
    CLIENT = "client"
    DYEING = "dyeing"


class ProductionTaskStatus(str, Enum):
    """
    Status of one production task.

    Values:
        PENDING: Waiting for the previous task in the sequence
        READY: May be started by the assigned worker
        IN_PROGRESS: Worker has started the task
        COMPLETED: Done; the next task in the sequence becomes READY
    """

    PENDING = "PENDING"
    READY = "READY"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
