"""Services package - workflow logic for Couture Tracker.

This package contains the service modules that move orders, garments,
sections and packets through the workshop.

Architecture:
- Services: Stateless functions organized by stage (packet, dyeing, production, QA, sales)
- Transactions: Managed via session_scope(); mutations hold the order item lock
- State machines: Transition tables in state_machine, validated before any write
- Exceptions: Consistent error handling via ServiceError hierarchy
- Collaborators: Inventory, identity, media storage and notifications behind Protocols

Service Modules:
- order_item_service: Order intake, status derivation, timelines
- inventory_check_service: Material availability check per section
- packet_service: Packet and pick-list lifecycle
- dyeing_service: Dyeing stage
- production_service: Production head assignment and section production
- qa_service: Section review, video barrier and QA videos
- sales_approval_service: Client approval, payments and dispatch
- round_robin_service: Production head rotation

Infrastructure:
- exceptions: Custom exception classes for service layer errors
- database: Session management, locks and notification hooks
- collaborators: External service interfaces and in-memory defaults
- logging_utils: Structured operation logging
"""

from . import (
    collaborators,
    database,
    dyeing_service,
    inventory_check_service,
    order_item_service,
    packet_service,
    production_service,
    qa_service,
    round_robin_service,
    sales_approval_service,
    state_machine,
)

from .exceptions import (
    AuthorizationError,
    ExternalServiceError,
    NotFoundError,
    OrderItemNotFound,
    OrderNotFound,
    PacketNotFound,
    PaymentIncompleteError,
    PickListItemNotFound,
    SectionNotFound,
    ServiceError,
    StateConflictError,
    ValidationError,
)

__all__ = [
    # Modules
    "collaborators",
    "database",
    "dyeing_service",
    "inventory_check_service",
    "order_item_service",
    "packet_service",
    "production_service",
    "qa_service",
    "round_robin_service",
    "sales_approval_service",
    "state_machine",
    # Exceptions
    "AuthorizationError",
    "ExternalServiceError",
    "NotFoundError",
    "OrderItemNotFound",
    "OrderNotFound",
    "PacketNotFound",
    "PaymentIncompleteError",
    "PickListItemNotFound",
    "SectionNotFound",
    "ServiceError",
    "StateConflictError",
    "ValidationError",
]
