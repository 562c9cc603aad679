"""Transition tables for packets, sections, order items and orders.

Each entity type has an explicit table mapping (state, event) to the next
state. Services call apply_transition() before mutating anything else, so an
illegal transition raises StateConflictError with the entity untouched.

The append-only event tables record from_status/to_status for every change;
replay() folds such a log back into the current state.

Usage:
    from couture_tracker.services.state_machine import PACKET_FSM, apply_transition

    from_status, to_status = apply_transition(PACKET_FSM, packet, "complete", packet.id)
"""

from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple, Type

from ..models.enums import OrderItemStatus, OrderStatus, PacketStatus, SectionStatus
from .exceptions import StateConflictError


class TransitionTable:
    """
    Finite state machine table for one entity type.

    Args:
        entity: Entity name used in error messages
        state_enum: Enum of legal states
        transitions: Mapping of (state, event) to next state
    """

    def __init__(
        self,
        entity: str,
        state_enum: Type[Enum],
        transitions: Dict[Tuple[Enum, str], Enum],
    ):
        self.entity = entity
        self.state_enum = state_enum
        self.transitions = dict(transitions)

    def can(self, current: Enum, event: str) -> bool:
        return (current, event) in self.transitions

    def sources(self, event: str) -> List[Enum]:
        """States from which the event is legal."""
        return [state for (state, name) in self.transitions if name == event]

    def allowed_events(self, current: Enum) -> List[str]:
        return sorted({name for (state, name) in self.transitions if state == current})

    def next_state(self, current: Enum, event: str, entity_id=None, entity: Optional[str] = None):
        """
        Look up the next state.

        Raises:
            StateConflictError: If the event is not legal from current
        """
        try:
            return self.transitions[(current, event)]
        except KeyError:
            sources = ", ".join(state.value for state in self.sources(event)) or "no"
            raise StateConflictError(
                entity or self.entity,
                entity_id,
                current,
                f"{event.replace('_', ' ')} (must be in {sources} state)",
            )


def _all_to(states: Iterable[Enum], event: str, target: Enum) -> Dict[Tuple[Enum, str], Enum]:
    return {(state, event): target for state in states}


# ============================================================================
# Packet
# ============================================================================

PACKET_FSM = TransitionTable(
    "Packet",
    PacketStatus,
    {
        (PacketStatus.PENDING, "assign"): PacketStatus.ASSIGNED,
        (PacketStatus.ASSIGNED, "reassign"): PacketStatus.ASSIGNED,
        (PacketStatus.ASSIGNED, "start"): PacketStatus.IN_PROGRESS,
        (PacketStatus.IN_PROGRESS, "pick"): PacketStatus.IN_PROGRESS,
        (PacketStatus.IN_PROGRESS, "complete"): PacketStatus.COMPLETED,
        (PacketStatus.COMPLETED, "approve"): PacketStatus.APPROVED,
        (PacketStatus.COMPLETED, "reject"): PacketStatus.ASSIGNED,
        # Extension is legal from every state; the assignee decides the target
        **_all_to(PacketStatus, "extend", PacketStatus.PENDING),
        **_all_to(PacketStatus, "extend_continue", PacketStatus.ASSIGNED),
    },
)

# ============================================================================
# Section
# ============================================================================

_DYEING_STATES = (
    SectionStatus.READY_FOR_DYEING,
    SectionStatus.DYEING_ACCEPTED,
    SectionStatus.DYEING_IN_PROGRESS,
)

SECTION_FSM = TransitionTable(
    "Section",
    SectionStatus,
    {
        (SectionStatus.PENDING_INVENTORY_CHECK, "inventory_passed"): SectionStatus.CREATE_PACKET,
        (SectionStatus.PENDING_INVENTORY_CHECK, "inventory_failed"): SectionStatus.AWAITING_MATERIAL,
        (SectionStatus.AWAITING_MATERIAL, "inventory_passed"): SectionStatus.CREATE_PACKET,
        (SectionStatus.AWAITING_MATERIAL, "inventory_failed"): SectionStatus.AWAITING_MATERIAL,
        (SectionStatus.CREATE_PACKET, "packet_approved"): SectionStatus.READY_FOR_DYEING,
        (SectionStatus.CREATE_PACKET, "packet_approved_ready_stock"): SectionStatus.QA_PENDING,
        (SectionStatus.READY_FOR_DYEING, "accept_dyeing"): SectionStatus.DYEING_ACCEPTED,
        (SectionStatus.DYEING_ACCEPTED, "start_dyeing"): SectionStatus.DYEING_IN_PROGRESS,
        (SectionStatus.DYEING_ACCEPTED, "complete_dyeing"): SectionStatus.READY_FOR_PRODUCTION,
        (SectionStatus.DYEING_IN_PROGRESS, "complete_dyeing"): SectionStatus.READY_FOR_PRODUCTION,
        **_all_to(_DYEING_STATES, "reject_dyeing", SectionStatus.PENDING_INVENTORY_CHECK),
        (SectionStatus.READY_FOR_PRODUCTION, "start_production"): SectionStatus.IN_PRODUCTION,
        (SectionStatus.REWORK_REQUIRED, "start_production"): SectionStatus.IN_PRODUCTION,
        (SectionStatus.IN_PRODUCTION, "complete_production"): SectionStatus.PRODUCTION_COMPLETED,
        (SectionStatus.PRODUCTION_COMPLETED, "send_to_qa"): SectionStatus.QA_PENDING,
        (SectionStatus.QA_PENDING, "qa_approve"): SectionStatus.QA_APPROVED,
        (SectionStatus.QA_PENDING, "qa_reject"): SectionStatus.REWORK_REQUIRED,
        (SectionStatus.QA_APPROVED, "client_approve"): SectionStatus.CLIENT_APPROVED,
        (SectionStatus.QA_APPROVED, "alteration"): SectionStatus.REWORK_REQUIRED,
        (SectionStatus.CLIENT_APPROVED, "alteration"): SectionStatus.REWORK_REQUIRED,
        **_all_to(SectionStatus, "start_from_scratch", SectionStatus.PENDING_INVENTORY_CHECK),
    },
)

# ============================================================================
# Order item (explicit transitions after the QA barrier)
# ============================================================================

# No fresh start once the goods have left or the client cancelled
ORDER_ITEM_CLOSED = (
    OrderItemStatus.DISPATCHED,
    OrderItemStatus.COMPLETED,
    OrderItemStatus.CANCELLED_BY_CLIENT,
)

ORDER_ITEM_FSM = TransitionTable(
    "Order item",
    OrderItemStatus,
    {
        (OrderItemStatus.ALL_SECTIONS_QA_APPROVED, "upload_video"): OrderItemStatus.VIDEO_UPLOADED,
        (OrderItemStatus.VIDEO_UPLOADED, "send_to_sales"): OrderItemStatus.READY_FOR_CLIENT_APPROVAL,
        (OrderItemStatus.READY_FOR_CLIENT_APPROVAL, "send_to_client"): (
            OrderItemStatus.AWAITING_CLIENT_APPROVAL
        ),
        (OrderItemStatus.AWAITING_CLIENT_APPROVAL, "client_approve"): (
            OrderItemStatus.AWAITING_ACCOUNT_APPROVAL
        ),
        (OrderItemStatus.AWAITING_CLIENT_APPROVAL, "re_video_upload"): (
            OrderItemStatus.AWAITING_CLIENT_APPROVAL
        ),
        (OrderItemStatus.AWAITING_CLIENT_APPROVAL, "alteration"): OrderItemStatus.ALTERATION_REQUIRED,
        (OrderItemStatus.AWAITING_CLIENT_APPROVAL, "cancel"): OrderItemStatus.CANCELLED_BY_CLIENT,
        (OrderItemStatus.AWAITING_ACCOUNT_APPROVAL, "approve_payments"): (
            OrderItemStatus.READY_FOR_DISPATCH
        ),
        (OrderItemStatus.READY_FOR_DISPATCH, "dispatch"): OrderItemStatus.DISPATCHED,
        (OrderItemStatus.DISPATCHED, "complete"): OrderItemStatus.COMPLETED,
        **_all_to(
            [s for s in OrderItemStatus if s not in ORDER_ITEM_CLOSED],
            "start_from_scratch",
            OrderItemStatus.INVENTORY_CHECK,
        ),
    },
)

# ============================================================================
# Order
# ============================================================================

ORDER_CLOSED = (OrderStatus.DISPATCHED, OrderStatus.COMPLETED, OrderStatus.CANCELLED_BY_CLIENT)

ORDER_FSM = TransitionTable(
    "Order",
    OrderStatus,
    {
        (OrderStatus.RECEIVED, "inventory_check"): OrderStatus.INVENTORY_CHECK,
        (OrderStatus.RECEIVED, "start_work"): OrderStatus.IN_PROGRESS,
        (OrderStatus.INVENTORY_CHECK, "start_work"): OrderStatus.IN_PROGRESS,
        (OrderStatus.IN_PROGRESS, "send_to_sales"): OrderStatus.READY_FOR_CLIENT_APPROVAL,
        (OrderStatus.READY_FOR_CLIENT_APPROVAL, "send_to_client"): (
            OrderStatus.AWAITING_CLIENT_APPROVAL
        ),
        (OrderStatus.AWAITING_CLIENT_APPROVAL, "client_approve"): (
            OrderStatus.AWAITING_ACCOUNT_APPROVAL
        ),
        (OrderStatus.AWAITING_CLIENT_APPROVAL, "request_re_video"): (
            OrderStatus.AWAITING_CLIENT_APPROVAL
        ),
        (OrderStatus.AWAITING_CLIENT_APPROVAL, "alteration"): OrderStatus.IN_PROGRESS,
        (OrderStatus.AWAITING_CLIENT_APPROVAL, "cancel"): OrderStatus.CANCELLED_BY_CLIENT,
        (OrderStatus.AWAITING_ACCOUNT_APPROVAL, "approve_payments"): OrderStatus.READY_FOR_DISPATCH,
        (OrderStatus.READY_FOR_DISPATCH, "dispatch"): OrderStatus.DISPATCHED,
        (OrderStatus.DISPATCHED, "complete"): OrderStatus.COMPLETED,
        **_all_to(
            [s for s in OrderStatus if s not in ORDER_CLOSED],
            "start_from_scratch",
            OrderStatus.INVENTORY_CHECK,
        ),
    },
)


def apply_transition(
    table: TransitionTable,
    obj,
    event: str,
    entity_id=None,
    entity: Optional[str] = None,
    target=None,
) -> Tuple[Enum, Enum]:
    """
    Validate and apply a transition to obj.status.

    Args:
        table: Transition table for the entity type
        obj: Model instance with a status attribute
        event: Event name
        entity_id: Identifier used in error messages (defaults to obj.id)
        entity: Entity label used in error messages (defaults to table.entity)
        target: Optional expected target; raises ValueError if the table disagrees

    Returns:
        (from_status, to_status)

    Raises:
        StateConflictError: If the event is not legal in the current state
    """
    current = obj.status
    if entity_id is None:
        entity_id = getattr(obj, "id", None)
    next_status = table.next_state(current, event, entity_id=entity_id, entity=entity)
    if target is not None and next_status != target:
        raise ValueError(f"{table.entity} event '{event}' leads to {next_status}, not {target}")
    obj.status = next_status
    return current, next_status


def replay(events: Iterable, initial, state_enum: Type[Enum] = None):
    """
    Fold an append-only event log into the current status.

    Each event must expose from_status and to_status (string values or enum
    members). Events without a to_status leave the state unchanged. An event
    whose from_status does not match the folded state means the log is not
    contiguous.

    Args:
        events: Events in the order they were appended
        initial: Status before the first event
        state_enum: Enum to coerce string values into (defaults to type(initial))

    Returns:
        Final status

    Raises:
        ValueError: If the log is not contiguous
    """
    state_enum = state_enum or type(initial)
    state = initial
    for index, event in enumerate(events):
        if event.to_status is None:
            continue
        if event.from_status is not None and state_enum(event.from_status) != state:
            raise ValueError(
                f"Event {index} ({event.action}) starts from {event.from_status} "
                f"but the log is at {state.value}"
            )
        state = state_enum(event.to_status)
    return state
