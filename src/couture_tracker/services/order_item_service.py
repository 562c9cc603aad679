"""Order Item Service - order intake and the order item state machine.

An order item's status up to ALL_SECTIONS_QA_APPROVED is composed from its
section statuses and its packet; after that it is driven explicitly by the QA
video and sales operations through ORDER_ITEM_FSM.

This module also holds the helpers every workflow service uses to load
entities under lock and to record status changes on the append-only
timelines.

Session Management Pattern:
- All public functions accept session=None parameter
- If session provided, use it directly
- If session is None, create a new session via session_scope()
"""

from contextlib import ExitStack, contextmanager
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..models.enums import (
    OrderItemStatus,
    OrderStatus,
    PacketStatus,
    ReviewStage,
    SectionStatus,
)
from ..models.order import Order, OrderEvent
from ..models.order_item import OrderItem, OrderItemEvent
from ..models.packet import Packet
from ..models.section_state import SectionEvent, SectionState
from ..utils.validators import (
    normalize_section_name,
    normalize_section_names,
    validate_optional_date,
    validate_positive_whole_number,
    validate_required_string,
)
from .database import order_item_lock, order_lock, queue_notification, session_scope
from .exceptions import (
    OrderItemNotFound,
    OrderNotFound,
    SectionNotFound,
    ValidationError,
)
from .logging_utils import get_service_logger, log_operation
from .state_machine import (
    ORDER_FSM,
    ORDER_ITEM_FSM,
    SECTION_FSM,
    apply_transition,
)

logger = get_service_logger(__name__)

# Statuses set by the QA video and sales operations; never re-derived
SALES_OWNED_STATUSES = (
    OrderItemStatus.VIDEO_UPLOADED,
    OrderItemStatus.READY_FOR_CLIENT_APPROVAL,
    OrderItemStatus.AWAITING_CLIENT_APPROVAL,
    OrderItemStatus.AWAITING_ACCOUNT_APPROVAL,
    OrderItemStatus.READY_FOR_DISPATCH,
    OrderItemStatus.DISPATCHED,
    OrderItemStatus.COMPLETED,
    OrderItemStatus.CANCELLED_BY_CLIENT,
)

_INVENTORY_STAGE = (SectionStatus.PENDING_INVENTORY_CHECK, SectionStatus.AWAITING_MATERIAL)
_DYEING_STAGE = (
    SectionStatus.READY_FOR_DYEING,
    SectionStatus.DYEING_ACCEPTED,
    SectionStatus.DYEING_IN_PROGRESS,
)
_PRODUCTION_STAGE = (SectionStatus.IN_PRODUCTION, SectionStatus.PRODUCTION_COMPLETED)
_QA_STAGE = (SectionStatus.QA_PENDING,)
_APPROVED_STAGE = (SectionStatus.QA_APPROVED, SectionStatus.CLIENT_APPROVED)


# =============================================================================
# Loading helpers
# =============================================================================


def get_order_item_for_update(order_item_id: int, session: Session) -> OrderItem:
    """Load an order item with a row lock.

    Transaction boundary: Inherits session from caller.

    Raises:
        OrderItemNotFound: If the order item does not exist
    """
    item = (
        session.query(OrderItem)
        .filter(OrderItem.id == order_item_id)
        .with_for_update()
        .first()
    )
    if item is None:
        raise OrderItemNotFound(order_item_id)
    return item


def get_order_for_update(order_id: int, session: Session) -> Order:
    """Load an order with a row lock on the order and its items.

    Transaction boundary: Inherits session from caller.

    Raises:
        OrderNotFound: If the order does not exist
    """
    order = session.query(Order).filter(Order.id == order_id).with_for_update().first()
    if order is None:
        raise OrderNotFound(order_id)
    session.query(OrderItem).filter(OrderItem.order_id == order_id).with_for_update().all()
    return order


def get_section_or_raise(item: OrderItem, section_name: str) -> SectionState:
    """Find a section by name (case-insensitive) or raise SectionNotFound."""
    section = item.get_section(normalize_section_name(section_name))
    if section is None:
        raise SectionNotFound(item.id, section_name)
    return section


def resolve_sections_for_event(
    item: OrderItem, sections: List[str], event: str
) -> List[SectionState]:
    """Resolve section names and check the event is legal for every one of them.

    Nothing is mutated; callers apply the transitions only after all sections pass.

    Raises:
        ValidationError: If no section is given
        SectionNotFound: If a name is not a section of the item
        StateConflictError: If the event is illegal for any section
    """
    names = normalize_section_names(sections)
    if not names:
        raise ValidationError(["sections: At least one section is required"], field="sections")
    resolved = [get_section_or_raise(item, name) for name in names]
    for section in resolved:
        SECTION_FSM.next_state(
            section.status,
            event,
            entity_id=item.id,
            entity=f"Section '{section.name}' of order item",
        )
    return resolved


@contextmanager
def order_scope(order_id: int):
    """
    Transactional scope for order-level mutations.

    Holds the order lock and the lock of every item of the order (in id order)
    until the transaction has committed or rolled back.
    """
    with session_scope() as session:
        item_ids = [
            row[0]
            for row in session.query(OrderItem.id).filter(OrderItem.order_id == order_id).all()
        ]

    with ExitStack() as stack:
        stack.enter_context(order_lock(order_id))
        for item_id in sorted(item_ids):
            stack.enter_context(order_item_lock(item_id))
        with session_scope() as session:
            yield session


# =============================================================================
# Status recording
# =============================================================================


def transition_section(
    section: SectionState,
    event: str,
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    stage: Optional[ReviewStage] = None,
    reason_code: Optional[str] = None,
    notes: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> SectionEvent:
    """Apply a section transition and append the matching history row.

    The history row carries the round in effect when the event happened.

    Raises:
        StateConflictError: If the event is not legal for the section's status
    """
    from_status, to_status = apply_transition(
        SECTION_FSM,
        section,
        event,
        entity_id=section.order_item_id,
        entity=f"Section '{section.name}' of order item",
    )
    history = SectionEvent(
        action=action or event,
        from_status=from_status.value,
        to_status=to_status.value,
        round=section.current_round,
        stage=stage,
        reason_code=reason_code,
        notes=notes,
        user_id=user_id,
        details=details,
    )
    section.events.append(history)
    return history


def send_section_to_rework(
    section: SectionState,
    event: str,
    stage: ReviewStage,
    user_id: Optional[str],
    reason_code: Optional[str],
    notes: str,
) -> SectionEvent:
    """Route a section to REWORK_REQUIRED and open the next approval round.

    Shared by QA rejection and client alteration requests.
    """
    history = transition_section(
        section,
        event,
        user_id=user_id,
        stage=stage,
        reason_code=reason_code,
        notes=notes,
    )
    section.current_round += 1
    return history


def set_order_item_status(
    item: OrderItem,
    new_status: OrderItemStatus,
    action: str,
    user_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> bool:
    """Set an order item status, appending a timeline entry when it changes.

    Returns:
        True if the status changed
    """
    old_status = item.status
    if old_status == new_status:
        return False
    item.status = new_status
    item.timeline.append(
        OrderItemEvent(
            action=action,
            from_status=old_status.value if old_status else None,
            to_status=new_status.value,
            user_id=user_id,
            details=details,
        )
    )
    return True


def transition_order_item(
    item: OrderItem,
    event: str,
    user_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> OrderItemStatus:
    """Apply an explicit order item transition and record it on the timeline.

    Raises:
        StateConflictError: If the event is not legal for the item's status
    """
    from_status, to_status = apply_transition(ORDER_ITEM_FSM, item, event)
    item.timeline.append(
        OrderItemEvent(
            action=event,
            from_status=from_status.value,
            to_status=to_status.value,
            user_id=user_id,
            details=details,
        )
    )
    return to_status


def add_order_item_note(
    item: OrderItem,
    action: str,
    user_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    """Append a timeline entry that does not change the status."""
    item.timeline.append(OrderItemEvent(action=action, user_id=user_id, details=details))


def transition_order(
    order: Order,
    event: str,
    user_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> OrderStatus:
    """Apply an order transition and record it on the order timeline.

    Raises:
        StateConflictError: If the event is not legal for the order's status
    """
    from_status, to_status = apply_transition(ORDER_FSM, order, event)
    order.timeline.append(
        OrderEvent(
            action=event,
            from_status=from_status.value,
            to_status=to_status.value,
            user_id=user_id,
            details=details,
        )
    )
    return to_status


# =============================================================================
# Status derivation
# =============================================================================


def derive_order_item_status(
    sections: List[SectionState], packet: Optional[Packet] = None
) -> OrderItemStatus:
    """Compose the order item status from section statuses and packet state.

    The most advanced stage that any section has reached wins; "partial"
    variants are used when other sections still trail behind at the
    inventory or packet stage.

    Args:
        sections: Sections of the order item
        packet: The item's packet, if one exists

    Returns:
        Derived OrderItemStatus
    """
    statuses = [section.status for section in sections]
    if not statuses:
        return OrderItemStatus.RECEIVED

    def all_in(*groups) -> bool:
        allowed = [status for group in groups for status in group]
        return all(status in allowed for status in statuses)

    def any_in(*groups) -> bool:
        allowed = [status for group in groups for status in group]
        return any(status in allowed for status in statuses)

    if all_in(_APPROVED_STAGE):
        return OrderItemStatus.ALL_SECTIONS_QA_APPROVED

    if SectionStatus.REWORK_REQUIRED in statuses:
        return OrderItemStatus.REWORK_REQUIRED

    if all_in(_QA_STAGE, _APPROVED_STAGE):
        return OrderItemStatus.QUALITY_ASSURANCE

    if any_in(_PRODUCTION_STAGE):
        if all_in((SectionStatus.PRODUCTION_COMPLETED,), _QA_STAGE, _APPROVED_STAGE):
            return OrderItemStatus.PRODUCTION_COMPLETED
        if all_in(_PRODUCTION_STAGE, _QA_STAGE, _APPROVED_STAGE):
            return OrderItemStatus.IN_PRODUCTION
        return OrderItemStatus.PARTIAL_IN_PRODUCTION

    if SectionStatus.READY_FOR_PRODUCTION in statuses and all_in(
        (SectionStatus.READY_FOR_PRODUCTION,), _QA_STAGE, _APPROVED_STAGE
    ):
        return OrderItemStatus.READY_FOR_PRODUCTION

    if any_in(_DYEING_STAGE, (SectionStatus.READY_FOR_PRODUCTION,)):
        if all_in((SectionStatus.READY_FOR_DYEING,)):
            return OrderItemStatus.READY_FOR_DYEING
        if all_in(_DYEING_STAGE):
            return OrderItemStatus.IN_DYEING
        return OrderItemStatus.PARTIALLY_IN_DYEING

    if SectionStatus.CREATE_PACKET in statuses:
        if packet is not None and packet.status == PacketStatus.COMPLETED:
            return OrderItemStatus.PACKET_CHECK
        if any_in(_INVENTORY_STAGE):
            return OrderItemStatus.PARTIAL_CREATE_PACKET
        return OrderItemStatus.CREATE_PACKET

    if any_in(_QA_STAGE, _APPROVED_STAGE):
        return OrderItemStatus.QUALITY_ASSURANCE

    if SectionStatus.AWAITING_MATERIAL in statuses:
        return OrderItemStatus.AWAITING_MATERIAL

    return OrderItemStatus.INVENTORY_CHECK


def refresh_order_item_status(
    item: OrderItem, user_id: Optional[str] = None, action: str = "status_updated"
) -> OrderItemStatus:
    """Re-derive the item status after a workshop operation.

    Statuses owned by the sales stage are left alone. When work starts on an
    item, the order moves to IN_PROGRESS.

    Transaction boundary: Inherits session from caller.
    """
    if item.status in SALES_OWNED_STATUSES:
        return item.status

    new_status = derive_order_item_status(item.sections, item.packet)
    set_order_item_status(item, new_status, action, user_id=user_id)

    order = item.order
    if order is not None and new_status not in (
        OrderItemStatus.RECEIVED,
        OrderItemStatus.INVENTORY_CHECK,
        OrderItemStatus.AWAITING_MATERIAL,
    ):
        if ORDER_FSM.can(order.status, "start_work"):
            transition_order(order, "start_work", user_id=user_id)
    return new_status


# =============================================================================
# Order intake
# =============================================================================


def _validate_order_input(
    order_number: str,
    customer_name: str,
    total_amount,
    items: List[Dict[str, Any]],
) -> List[str]:
    errors = []
    for value, field in ((order_number, "order_number"), (customer_name, "customer_name")):
        is_valid, error = validate_required_string(value, field)
        if not is_valid:
            errors.append(error)

    try:
        if total_amount is None or Decimal(str(total_amount)) < 0:
            errors.append("total_amount: Must be zero or greater")
    except InvalidOperation:
        errors.append("total_amount: Must be a number")

    if not items:
        errors.append("items: At least one order item is required")

    for index, item in enumerate(items or []):
        prefix = f"items[{index}]"
        for field in ("product_id", "product_name", "size"):
            is_valid, error = validate_required_string(item.get(field), f"{prefix}.{field}")
            if not is_valid:
                errors.append(error)
        is_valid, error = validate_positive_whole_number(
            item.get("quantity", 1), f"{prefix}.quantity"
        )
        if not is_valid:
            errors.append(error)
        is_valid, error = validate_optional_date(item.get("due_date"), f"{prefix}.due_date")
        if not is_valid:
            errors.append(error)
        if not normalize_section_names(item.get("sections") or []):
            errors.append(f"{prefix}.sections: At least one section is required")
    return errors


def _create_order_impl(
    order_number: str,
    customer_name: str,
    total_amount,
    items: List[Dict[str, Any]],
    currency: str,
    notes: Optional[str],
    created_by: Optional[str],
    session: Session,
) -> Order:
    errors = _validate_order_input(order_number, customer_name, total_amount, items)
    if errors:
        raise ValidationError(errors, field=errors[0].split(":")[0])

    existing = session.query(Order).filter(Order.order_number == order_number.strip()).first()
    if existing is not None:
        raise ValidationError(
            [f"order_number: Order '{order_number}' already exists"], field="order_number"
        )

    order = Order(
        order_number=order_number.strip(),
        customer_name=customer_name.strip(),
        total_amount=Decimal(str(total_amount)),
        currency=currency,
        status=OrderStatus.RECEIVED,
        notes=notes,
    )
    order.timeline.append(
        OrderEvent(action="order_created", to_status=OrderStatus.RECEIVED.value, user_id=created_by)
    )

    for item_data in items:
        due_date = item_data.get("due_date")
        if isinstance(due_date, str):
            due_date = date.fromisoformat(due_date.strip()) if due_date.strip() else None
        item = OrderItem(
            product_id=str(item_data["product_id"]),
            product_name=item_data["product_name"].strip(),
            size=item_data["size"].strip(),
            quantity=int(Decimal(str(item_data.get("quantity", 1)).strip())),
            status=OrderItemStatus.RECEIVED,
            due_date=due_date,
            notes=item_data.get("notes"),
        )
        for position, name in enumerate(normalize_section_names(item_data["sections"])):
            item.sections.append(
                SectionState(
                    name=name,
                    position=position,
                    status=SectionStatus.PENDING_INVENTORY_CHECK,
                    current_round=1,
                    dyeing_round=1,
                )
            )
        item.timeline.append(
            OrderItemEvent(
                action="item_created",
                to_status=OrderItemStatus.RECEIVED.value,
                user_id=created_by,
                details={"sections": item.section_names},
            )
        )
        order.items.append(item)

    session.add(order)
    session.flush()

    queue_notification(
        session, "order.created", {"order_id": order.id, "order_number": order.order_number}
    )
    log_operation(
        logger,
        operation="create_order",
        outcome="success",
        order_id=order.id,
        item_count=len(order.items),
    )
    return order


def create_order(
    order_number: str,
    customer_name: str,
    total_amount,
    items: List[Dict[str, Any]],
    currency: str = "USD",
    notes: Optional[str] = None,
    created_by: Optional[str] = None,
    session: Session = None,
) -> Order:
    """Create an order with its items and sections.

    Transaction boundary: Single-step write.
    Every item starts RECEIVED; every section starts PENDING_INVENTORY_CHECK
    in round 1.

    Args:
        order_number: Unique order number
        customer_name: Client name
        total_amount: Amount payments must cover before dispatch
        items: List of dicts with product_id, product_name, size (mandatory),
            quantity (positive whole number, default 1), due_date (date or
            ISO string) and sections (list of piece names)
        currency: ISO currency code
        notes: Optional order notes
        created_by: User creating the order
        session: Optional session for transaction sharing

    Returns:
        Created Order

    Raises:
        ValidationError: If a mandatory field is missing, a quantity is not a
            positive whole number, a due_date is not an ISO date or the order
            number is taken
    """
    if session is not None:
        return _create_order_impl(
            order_number, customer_name, total_amount, items, currency, notes, created_by, session
        )

    with session_scope() as session:
        return _create_order_impl(
            order_number, customer_name, total_amount, items, currency, notes, created_by, session
        )


# =============================================================================
# Queries
# =============================================================================


def get_order(order_id: int, session: Session = None) -> Order:
    """Get an order with its items, payments and timeline.

    Raises:
        OrderNotFound: If the order does not exist
    """

    def _impl(session: Session) -> Order:
        order = session.query(Order).filter(Order.id == order_id).first()
        if order is None:
            raise OrderNotFound(order_id)
        return order

    if session is not None:
        return _impl(session)

    with session_scope() as session:
        return _impl(session)


def get_order_item(order_item_id: int, session: Session = None) -> OrderItem:
    """Get an order item with its sections, packet and timeline.

    Raises:
        OrderItemNotFound: If the order item does not exist
    """

    def _impl(session: Session) -> OrderItem:
        item = session.query(OrderItem).filter(OrderItem.id == order_item_id).first()
        if item is None:
            raise OrderItemNotFound(order_item_id)
        return item

    if session is not None:
        return _impl(session)

    with session_scope() as session:
        return _impl(session)


def list_order_items(
    status: Optional[OrderItemStatus] = None, session: Session = None
) -> List[OrderItem]:
    """List order items, optionally filtered by status, oldest first."""

    def _impl(session: Session) -> List[OrderItem]:
        query = session.query(OrderItem)
        if status is not None:
            query = query.filter(OrderItem.status == status)
        return query.order_by(OrderItem.id).all()

    if session is not None:
        return _impl(session)

    with session_scope() as session:
        return _impl(session)


def _timeline_impl(order_item_id: int, session: Session) -> List[Dict[str, Any]]:
    item = get_order_item(order_item_id, session=session)

    rows = []
    for event in item.timeline:
        rows.append((event.created_at, 0, event.id, "order_item", event.to_timeline_entry()))
    for section in item.sections:
        for event in section.events:
            entry = event.to_timeline_entry()
            entry["details"]["section"] = section.name
            rows.append((event.created_at, 1, event.id, "section", entry))
    if item.packet is not None:
        for event in item.packet.timeline:
            rows.append((event.created_at, 2, event.id, "packet", event.to_timeline_entry()))

    rows.sort(key=lambda row: (row[0], row[1], row[2]))
    timeline = []
    for _, _, _, source, entry in rows:
        entry["source"] = source
        timeline.append(entry)
    return timeline


def get_order_item_timeline(order_item_id: int, session: Session = None) -> List[Dict[str, Any]]:
    """Merged timeline of the order item, its sections and its packet.

    Each entry is {action, user, timestamp, details, source}, oldest first.

    Raises:
        OrderItemNotFound: If the order item does not exist
    """
    if session is not None:
        return _timeline_impl(order_item_id, session)

    with session_scope() as session:
        return _timeline_impl(order_item_id, session)
