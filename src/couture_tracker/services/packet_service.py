"""Packet Service - material packet lifecycle for order items.

A packet is the bundle of materials gathered for one order item. It is
created the first time sections of the item pass the inventory check and is
never recreated; sections that pass later extend it in place.

Status machine:
    PENDING -> ASSIGNED -> IN_PROGRESS -> COMPLETED -> APPROVED
                  ^                           |
                  +-------- reject -----------+
    extend: any state -> ASSIGNED (existing assignee continues) or PENDING

Counters:
    total_items always equals len(pick_list) and picked_items always equals
    the number of picked rows. Rows picked in earlier rounds stay picked, so a
    packet can only be completed once every row, old and new, is picked.
    previous_round_picked_items records picked_items as it stood when the
    packet was extended; the round-scoped view is Packet.round_picked_items.

Session Management Pattern:
- All public functions accept session=None parameter
- If session provided, use it directly
- If session is None, take the order item lock and create a new session
  via session_scope()
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from ..models.enums import PacketStatus, SectionStatus
from ..models.order_item import OrderItem
from ..models.packet import Packet, PacketEvent, PacketRemovedItem, PickListItem
from ..utils.constants import (
    DEFAULT_PIECE,
    DEFAULT_RACK_LOCATION,
    DEFAULT_UNIT,
    PACKET_REJECTION_REASONS,
    PERMISSION_APPROVE_PACKETS,
    PERMISSION_ASSIGN_TASKS,
)
from ..utils.datetime_utils import utc_now
from ..utils.validators import (
    normalize_section_name,
    normalize_section_names,
    validate_choice,
    validate_positive_number,
    validate_required_string,
)
from .collaborators import (
    MaterialRequirement,
    call_external,
    get_collaborators,
    require_permission,
)
from .database import order_item_lock, queue_notification, session_scope
from .exceptions import (
    AuthorizationError,
    PacketNotFound,
    PickListItemNotFound,
    StateConflictError,
    ValidationError,
)
from .logging_utils import get_service_logger, log_operation
from .order_item_service import (
    get_order_item_for_update,
    get_section_or_raise,
    refresh_order_item_status,
    transition_section,
)
from .state_machine import PACKET_FSM, apply_transition

logger = get_service_logger(__name__)

_PACKETABLE_SECTION_STATES = (
    SectionStatus.PENDING_INVENTORY_CHECK,
    SectionStatus.AWAITING_MATERIAL,
    SectionStatus.CREATE_PACKET,
)

EXTENSION_REMOVAL_REASON = "Section re-entered packeting"


# =============================================================================
# Internal helpers
# =============================================================================


def _get_packet_or_raise(item: OrderItem, session: Session) -> Packet:
    """Lock and return the item's packet.

    Transaction boundary: Inherits session from caller.

    Raises:
        PacketNotFound: If the item has no packet yet
    """
    packet = (
        session.query(Packet).filter(Packet.order_item_id == item.id).with_for_update().first()
    )
    if packet is None:
        raise PacketNotFound(item.id)
    return packet


def _add_event(
    packet: Packet,
    action: str,
    user_id: Optional[str],
    from_status: Optional[PacketStatus] = None,
    to_status: Optional[PacketStatus] = None,
    details: Optional[Dict[str, Any]] = None,
) -> PacketEvent:
    event = PacketEvent(
        action=action,
        from_status=from_status.value if from_status else None,
        to_status=to_status.value if to_status else None,
        user_id=user_id,
        packet_round=packet.packet_round,
        details=details or {},
    )
    packet.timeline.append(event)
    return event


def _sync_counters(packet: Packet) -> None:
    packet.total_items = len(packet.pick_list)
    packet.picked_items = sum(1 for row in packet.pick_list if row.is_picked)


def _coerce_requirement(raw) -> MaterialRequirement:
    if isinstance(raw, MaterialRequirement):
        return raw
    return MaterialRequirement(
        inventory_item_id=raw.get("inventory_item_id"),
        required_qty=raw.get("required_qty", raw.get("quantity")),
        piece=raw.get("piece") or DEFAULT_PIECE,
        unit=raw.get("unit"),
        inventory_item_name=raw.get("inventory_item_name") or raw.get("name"),
        sku=raw.get("sku"),
        rack_location=raw.get("rack_location"),
        available_qty=raw.get("available_qty"),
    )


def _validate_requirements(
    requirements: Iterable, allowed_sections: List[str]
) -> List[MaterialRequirement]:
    """Coerce, validate and merge requirements.

    Rows for the same (piece, inventory item) are merged by summing quantities,
    so a pick list never holds the same material twice for one piece.

    Raises:
        ValidationError: If any requirement is malformed or targets a section
            outside allowed_sections
    """
    errors = []
    merged: Dict[tuple, MaterialRequirement] = {}

    requirements = list(requirements or [])
    if not requirements:
        raise ValidationError(["requirements: At least one material is required"], field="requirements")

    for index, raw in enumerate(requirements):
        requirement = _coerce_requirement(raw)
        prefix = f"requirements[{index}]"

        is_valid, error = validate_required_string(
            requirement.inventory_item_id, f"{prefix}.inventory_item_id"
        )
        if not is_valid:
            errors.append(error)
        is_valid, error = validate_positive_number(requirement.required_qty, f"{prefix}.required_qty")
        if not is_valid:
            errors.append(error)

        piece = normalize_section_name(requirement.piece)
        if piece not in allowed_sections:
            errors.append(
                f"{prefix}.piece: '{piece}' is not one of the sections being packeted "
                f"({', '.join(allowed_sections)})"
            )
        if errors:
            continue

        key = (piece, str(requirement.inventory_item_id))
        quantity = Decimal(str(requirement.required_qty))
        if key in merged:
            merged[key].required_qty = merged[key].required_qty + quantity
        else:
            merged[key] = MaterialRequirement(
                inventory_item_id=str(requirement.inventory_item_id),
                required_qty=quantity,
                piece=piece,
                unit=requirement.unit,
                inventory_item_name=requirement.inventory_item_name,
                sku=requirement.sku,
                rack_location=requirement.rack_location,
                available_qty=requirement.available_qty,
            )

    if errors:
        raise ValidationError(errors, field="requirements")
    return list(merged.values())


def _build_pick_items(
    requirements: List[MaterialRequirement], added_in_round: int, start_position: int
) -> List[PickListItem]:
    """Build pick-list rows, enriching missing metadata from inventory.

    Raises:
        ExternalServiceError: If the inventory lookup fails
    """
    inventory = get_collaborators().inventory
    rows = []
    for offset, requirement in enumerate(requirements):
        details = None
        if not (
            requirement.inventory_item_name
            and requirement.unit
            and requirement.rack_location
            and requirement.sku
        ):
            details = call_external(
                "inventory", inventory.get_item_details, requirement.inventory_item_id
            )

        rows.append(
            PickListItem(
                inventory_item_id=requirement.inventory_item_id,
                inventory_item_name=(
                    requirement.inventory_item_name
                    or (details.name if details else None)
                    or requirement.inventory_item_id
                ),
                sku=requirement.sku or (details.sku if details else None),
                required_qty=requirement.required_qty,
                unit=requirement.unit or (details.unit if details else None) or DEFAULT_UNIT,
                rack_location=(
                    requirement.rack_location
                    or (details.rack_location if details else None)
                    or DEFAULT_RACK_LOCATION
                ),
                piece=requirement.piece,
                is_picked=False,
                added_in_round=added_in_round,
                position=start_position + offset,
            )
        )
    return rows


def _validate_sections(item: OrderItem, names: Iterable[str], field: str) -> List[str]:
    """Normalize section names and check they exist on the item."""
    sections = normalize_section_names(names)
    if not sections:
        raise ValidationError([f"{field}: At least one section is required"], field=field)
    for name in sections:
        get_section_or_raise(item, name)
    return sections


def _enter_packeting(item: OrderItem, sections: List[str], user_id: Optional[str]) -> None:
    """Move sections still at the inventory stage to CREATE_PACKET.

    Raises:
        StateConflictError: If a section is past the packeting stage
    """
    for name in sections:
        section = get_section_or_raise(item, name)
        if section.status not in _PACKETABLE_SECTION_STATES:
            raise StateConflictError(
                f"Section '{section.name}' of order item",
                item.id,
                section.status,
                "add section to packet (must be in inventory check or create packet stage)",
            )
    for name in sections:
        section = get_section_or_raise(item, name)
        if section.status != SectionStatus.CREATE_PACKET:
            transition_section(section, "inventory_passed", user_id=user_id)


def _decimal_str(value) -> Optional[str]:
    if value is None:
        return None
    try:
        return str(Decimal(str(value)).normalize())
    except InvalidOperation:
        return str(value)


# =============================================================================
# Creation
# =============================================================================


def _create_impl(
    order_item_id: int,
    requirements,
    passed_sections: Optional[List[str]],
    pending_sections: Optional[List[str]],
    is_partial: bool,
    created_by: Optional[str],
    session: Session,
) -> Packet:
    item = get_order_item_for_update(order_item_id, session)

    existing = session.query(Packet).filter(Packet.order_item_id == item.id).first()
    if existing is not None:
        raise StateConflictError(
            "Packet",
            existing.id,
            existing.status,
            "create packet (one already exists for this order item; extend it instead)",
        )

    if passed_sections is None:
        included = item.section_names
    else:
        included = _validate_sections(item, passed_sections, "passed_sections")

    pending: List[str] = []
    if is_partial:
        pending = _validate_sections(item, pending_sections or [], "pending_sections")
        overlap = sorted(set(included) & set(pending))
        if overlap:
            raise ValidationError(
                [f"pending_sections: {', '.join(overlap)} cannot be both passed and pending"],
                field="pending_sections",
            )

    merged = _validate_requirements(requirements, included)
    _enter_packeting(item, included, created_by)

    packet = Packet(
        order_item_id=item.id,
        status=PacketStatus.PENDING,
        is_partial=is_partial,
        packet_round=1,
        sections_included=list(included),
        sections_pending=list(pending),
        current_round_sections=list(included),
        picked_items=0,
        previous_round_picked_items=0,
    )
    for row in _build_pick_items(merged, added_in_round=1, start_position=0):
        packet.pick_list.append(row)
    _sync_counters(packet)

    _add_event(
        packet,
        "partial_packet_created" if is_partial else "packet_created",
        created_by,
        to_status=PacketStatus.PENDING,
        details={
            "sections_included": list(included),
            "sections_pending": list(pending),
            "total_items": packet.total_items,
        },
    )
    item.packet = packet
    session.add(packet)
    session.flush()

    refresh_order_item_status(item, user_id=created_by, action="packet_created")

    queue_notification(
        session,
        "packet.created",
        {"order_item_id": item.id, "packet_id": packet.id, "is_partial": is_partial},
    )
    log_operation(
        logger,
        operation="create_partial_packet" if is_partial else "create_packet",
        outcome="success",
        order_item_id=item.id,
        packet_id=packet.id,
        total_items=packet.total_items,
    )
    return packet


def create_packet(
    order_item_id: int,
    requirements,
    sections: Optional[List[str]] = None,
    created_by: Optional[str] = None,
    session: Session = None,
) -> Packet:
    """Create the packet for an order item covering all (or the given) sections.

    Transaction boundary: Multi-step operation (atomic).
        1. Validate requirements and sections
        2. Move included sections to CREATE_PACKET
        3. Create the packet (round 1, PENDING) with one pick-list row per
           material, enriched with inventory metadata
        4. Re-derive the order item status

    Args:
        order_item_id: Order item to create the packet for
        requirements: MaterialRequirement objects or dicts
        sections: Sections the packet covers (default: every section of the item)
        created_by: User creating the packet
        session: Optional session for transaction sharing

    Returns:
        Created Packet

    Raises:
        OrderItemNotFound: If the order item does not exist
        ValidationError: If requirements are empty or malformed
        StateConflictError: If a packet already exists or a section is past packeting
        ExternalServiceError: If the inventory lookup fails
    """
    if session is not None:
        return _create_impl(order_item_id, requirements, sections, None, False, created_by, session)

    with order_item_lock(order_item_id), session_scope() as session:
        return _create_impl(order_item_id, requirements, sections, None, False, created_by, session)


def create_partial_packet(
    order_item_id: int,
    requirements,
    passed_sections: List[str],
    pending_sections: List[str],
    created_by: Optional[str] = None,
    session: Session = None,
) -> Packet:
    """Create a packet covering only the sections whose materials are available.

    Same as create_packet() with is_partial set and the pending sections
    recorded. passed_sections and pending_sections must be disjoint.

    Raises:
        ValidationError: If the section sets overlap or requirements are malformed
        StateConflictError: If a packet already exists
    """
    if session is not None:
        return _create_impl(
            order_item_id, requirements, passed_sections, pending_sections, True, created_by, session
        )

    with order_item_lock(order_item_id), session_scope() as session:
        return _create_impl(
            order_item_id, requirements, passed_sections, pending_sections, True, created_by, session
        )


# =============================================================================
# Extension
# =============================================================================


def _extend_impl(
    order_item_id: int,
    new_requirements,
    new_sections: List[str],
    extended_by: Optional[str],
    removal_reason: Optional[str],
    session: Session,
) -> Packet:
    item = get_order_item_for_update(order_item_id, session)
    packet = _get_packet_or_raise(item, session)

    sections = _validate_sections(item, new_sections, "new_sections")
    merged = _validate_requirements(new_requirements, sections)
    _enter_packeting(item, sections, extended_by)

    previous_round = packet.packet_round
    next_round = previous_round + 1
    packet.previous_round_picked_items = packet.picked_items

    # 1. Purge stale rows of the re-added sections into the removal log
    removed = [row for row in packet.pick_list if row.piece in sections]
    for row in removed:
        packet.removed_items.append(
            PacketRemovedItem(
                original_item_id=row.id,
                inventory_item_id=row.inventory_item_id,
                inventory_item_name=row.inventory_item_name,
                sku=row.sku,
                required_qty=row.required_qty,
                unit=row.unit,
                rack_location=row.rack_location,
                piece=row.piece,
                was_picked=row.is_picked,
                picked_qty=row.picked_qty,
                added_in_round=row.added_in_round,
                removed_at_round=previous_round,
                reason=removal_reason or EXTENSION_REMOVAL_REASON,
                removed_by=extended_by,
            )
        )
        packet.pick_list.remove(row)
    # Deletes must reach the database before the replacement rows are inserted
    session.flush()

    # 2. Append the new rows
    start_position = max((row.position for row in packet.pick_list), default=-1) + 1
    added = _build_pick_items(merged, added_in_round=next_round, start_position=start_position)
    for row in added:
        packet.pick_list.append(row)

    # 3. Merge section sets
    packet.sections_included = list(packet.sections_included or []) + [
        name for name in sections if name not in (packet.sections_included or [])
    ]
    packet.sections_pending = [
        name for name in (packet.sections_pending or []) if name not in sections
    ]
    packet.is_partial = bool(packet.sections_pending)

    # 4. Next round
    packet.packet_round = next_round

    # 5./6. Status policy and snapshots
    packet.previous_assignee_id = packet.assigned_to
    packet.current_round_sections = list(sections)
    event = "extend_continue" if packet.assigned_to else "extend"
    from_status, to_status = apply_transition(PACKET_FSM, packet, event)
    if not packet.assigned_to:
        packet.assigned_by = None
        packet.assigned_at = None

    # 7. Counters
    _sync_counters(packet)

    # 8. Timeline
    _add_event(
        packet,
        "packet_extended",
        extended_by,
        from_status=from_status,
        to_status=to_status,
        details={
            "round": next_round,
            "sections": list(sections),
            "items_added": len(added),
            "items_removed": len(removed),
            "previous_round_picked_items": packet.previous_round_picked_items,
        },
    )
    if packet.assigned_to:
        _add_event(
            packet,
            "assignment_continued",
            extended_by,
            details={"assigned_to": packet.assigned_to, "round": next_round},
        )

    session.flush()
    refresh_order_item_status(item, user_id=extended_by, action="packet_extended")

    queue_notification(
        session,
        "packet.extended",
        {
            "order_item_id": item.id,
            "packet_id": packet.id,
            "packet_round": next_round,
            "assigned_to": packet.assigned_to,
        },
    )
    log_operation(
        logger,
        operation="extend_packet",
        outcome="success",
        order_item_id=item.id,
        packet_round=next_round,
        items_added=len(added),
        items_removed=len(removed),
    )
    return packet


def extend_packet(
    order_item_id: int,
    new_requirements,
    new_sections: List[str],
    extended_by: Optional[str] = None,
    removal_reason: Optional[str] = None,
    session: Session = None,
) -> Packet:
    """Extend an existing packet with sections that now have material.

    Transaction boundary: Multi-step operation (atomic).
        1. Purge pick-list rows whose piece is being re-added into the removal log
        2. Append new rows tagged with the next round
        3. Merge new sections into sections_included and out of sections_pending
        4. Increment packet_round by exactly 1
        5. Status ASSIGNED if the packet has an assignee, else PENDING
        6. Snapshot the previous assignee and this round's sections
        7. Remember previous_round_picked_items
        8. Append the extension entry (plus an auto-continuation entry when
           the existing assignee continues)

    Legal from every packet status.

    Args:
        order_item_id: Order item whose packet is extended
        new_requirements: Materials for the new sections
        new_sections: Sections being added
        extended_by: User or process extending the packet
        removal_reason: Reason recorded for purged rows
        session: Optional session for transaction sharing

    Returns:
        Updated Packet

    Raises:
        PacketNotFound: If the order item has no packet
        ValidationError: If requirements or sections are invalid
    """
    if session is not None:
        return _extend_impl(
            order_item_id, new_requirements, new_sections, extended_by, removal_reason, session
        )

    with order_item_lock(order_item_id), session_scope() as session:
        return _extend_impl(
            order_item_id, new_requirements, new_sections, extended_by, removal_reason, session
        )


# =============================================================================
# Assignment and picking
# =============================================================================


def _assign_impl(
    order_item_id: int,
    user_id: str,
    by_user_id: str,
    action: str,
    session: Session,
    event: str = "assign",
) -> Packet:
    is_valid, error = validate_required_string(user_id, "user_id")
    if not is_valid:
        raise ValidationError([error], field="user_id")
    require_permission(by_user_id, PERMISSION_ASSIGN_TASKS)

    item = get_order_item_for_update(order_item_id, session)
    packet = _get_packet_or_raise(item, session)

    replaced = packet.assigned_to
    from_status, to_status = apply_transition(PACKET_FSM, packet, event)
    packet.assigned_to = user_id
    packet.assigned_by = by_user_id
    packet.assigned_at = utc_now()

    details = {"assigned_to": user_id, "round": packet.packet_round}
    if event == "reassign":
        details["replaced"] = replaced
    _add_event(
        packet,
        action,
        by_user_id,
        from_status=from_status,
        to_status=to_status,
        details=details,
    )
    session.flush()

    queue_notification(
        session,
        "packet.assigned",
        {"order_item_id": item.id, "packet_id": packet.id, "assigned_to": user_id},
    )
    log_operation(
        logger,
        operation=action,
        outcome="success",
        order_item_id=item.id,
        assigned_to=user_id,
        assigned_by=by_user_id,
    )
    return packet


def assign_packet(
    order_item_id: int, user_id: str, by_user_id: str, session: Session = None
) -> Packet:
    """Assign a PENDING packet to a picker.

    Transaction boundary: Single-step write.

    Raises:
        AuthorizationError: If by_user_id lacks the assign-tasks permission
        StateConflictError: If the packet is not PENDING
        PacketNotFound: If the order item has no packet
    """
    if session is not None:
        return _assign_impl(order_item_id, user_id, by_user_id, "packet_assigned", session)

    with order_item_lock(order_item_id), session_scope() as session:
        return _assign_impl(order_item_id, user_id, by_user_id, "packet_assigned", session)


def reassign_packet(
    order_item_id: int, user_id: str, by_user_id: str, session: Session = None
) -> Packet:
    """Hand an ASSIGNED packet to another picker before picking starts.

    previous_assignee_id is left alone, so the extension snapshot can still
    be restored with reassign_to_previous().

    Raises:
        AuthorizationError: If by_user_id lacks the assign-tasks permission
        StateConflictError: If the packet is not ASSIGNED
        PacketNotFound: If the order item has no packet
    """
    if session is not None:
        return _assign_impl(
            order_item_id, user_id, by_user_id, "packet_reassigned", session, event="reassign"
        )

    with order_item_lock(order_item_id), session_scope() as session:
        return _assign_impl(
            order_item_id, user_id, by_user_id, "packet_reassigned", session, event="reassign"
        )


def reassign_to_previous(order_item_id: int, by_user_id: str, session: Session = None) -> Packet:
    """Give the packet back to the assignee snapshotted at the last extension.

    Legal while nobody has started picking: from PENDING it assigns, from
    ASSIGNED it overrides the current assignee. When the previous assignee
    already holds the packet nothing changes.

    Raises:
        ValidationError: If the packet has no previous assignee
        StateConflictError: If the packet is neither PENDING nor ASSIGNED
    """

    def _impl(session: Session) -> Packet:
        item = get_order_item_for_update(order_item_id, session)
        packet = _get_packet_or_raise(item, session)
        previous = packet.previous_assignee_id
        if not previous:
            raise ValidationError(
                ["previous_assignee_id: Packet has no previous assignee"],
                field="previous_assignee_id",
            )
        if packet.status == PacketStatus.ASSIGNED and packet.assigned_to == previous:
            require_permission(by_user_id, PERMISSION_ASSIGN_TASKS)
            log_operation(
                logger,
                operation="packet_reassigned_to_previous",
                outcome="unchanged",
                order_item_id=item.id,
                assigned_to=previous,
            )
            return packet

        event = "reassign" if packet.status == PacketStatus.ASSIGNED else "assign"
        return _assign_impl(
            order_item_id,
            previous,
            by_user_id,
            "packet_reassigned_to_previous",
            session,
            event=event,
        )

    if session is not None:
        return _impl(session)

    with order_item_lock(order_item_id), session_scope() as session:
        return _impl(session)


def _start_impl(order_item_id: int, user_id: str, session: Session) -> Packet:
    item = get_order_item_for_update(order_item_id, session)
    packet = _get_packet_or_raise(item, session)

    PACKET_FSM.next_state(packet.status, "start", entity_id=packet.id)
    if packet.assigned_to != user_id:
        raise AuthorizationError(
            user_id,
            "packets.start",
            f"Only the assigned user ({packet.assigned_to}) can start this packet",
        )

    from_status, to_status = apply_transition(PACKET_FSM, packet, "start")
    packet.started_at = utc_now()
    _add_event(packet, "packet_started", user_id, from_status=from_status, to_status=to_status)
    session.flush()

    log_operation(logger, operation="start_packet", outcome="success", order_item_id=item.id)
    return packet


def start_packet(order_item_id: int, user_id: str, session: Session = None) -> Packet:
    """Start picking. Legal only from ASSIGNED, by the assigned user.

    Raises:
        StateConflictError: If the packet is not ASSIGNED
        AuthorizationError: If user_id is not the assignee
    """
    if session is not None:
        return _start_impl(order_item_id, user_id, session)

    with order_item_lock(order_item_id), session_scope() as session:
        return _start_impl(order_item_id, user_id, session)


def _pick_impl(
    order_item_id: int,
    pick_item_id: int,
    qty,
    user_id: Optional[str],
    notes: Optional[str],
    session: Session,
) -> Packet:
    item = get_order_item_for_update(order_item_id, session)
    packet = _get_packet_or_raise(item, session)

    PACKET_FSM.next_state(packet.status, "pick", entity_id=packet.id)

    row = next((r for r in packet.pick_list if r.id == pick_item_id), None)
    if row is None:
        raise PickListItemNotFound(pick_item_id, order_item_id)

    if qty is None:
        qty = row.required_qty
    is_valid, error = validate_positive_number(qty, "qty")
    if not is_valid:
        raise ValidationError([error], field="qty")
    qty = Decimal(str(qty))

    # Conditional update: only an unpicked row can be marked picked
    updated = (
        session.query(PickListItem)
        .filter(PickListItem.id == row.id, PickListItem.is_picked.is_(False))
        .update(
            {
                PickListItem.is_picked: True,
                PickListItem.picked_qty: qty,
                PickListItem.picked_at: utc_now(),
                PickListItem.picked_by: user_id,
                PickListItem.pick_notes: notes,
            },
            synchronize_session=False,
        )
    )
    if updated == 0:
        raise StateConflictError(
            "Pick list item", pick_item_id, "PICKED", "pick item (already picked)"
        )

    session.query(Packet).filter(Packet.id == packet.id).update(
        {Packet.picked_items: Packet.picked_items + 1}, synchronize_session=False
    )
    session.refresh(row)
    session.refresh(packet, attribute_names=["picked_items", "updated_at"])

    _add_event(
        packet,
        "item_picked",
        user_id,
        from_status=packet.status,
        to_status=packet.status,
        details={
            "pick_item_id": row.id,
            "inventory_item_id": row.inventory_item_id,
            "piece": row.piece,
            "qty": _decimal_str(qty),
            "picked_items": packet.picked_items,
            "total_items": packet.total_items,
        },
    )
    session.flush()

    log_operation(
        logger,
        operation="pick_item",
        outcome="success",
        level=logging.DEBUG,
        order_item_id=item.id,
        pick_item_id=row.id,
        picked_items=packet.picked_items,
        total_items=packet.total_items,
    )
    return packet


def pick_item(
    order_item_id: int,
    pick_item_id: int,
    qty=None,
    user_id: Optional[str] = None,
    notes: Optional[str] = None,
    session: Session = None,
) -> Packet:
    """Mark one pick-list row picked. Legal only while IN_PROGRESS.

    Transaction boundary: Single-step write.
    The row is updated only if it is still unpicked and the counter is
    incremented in SQL, so concurrent picks never lose an increment.

    Args:
        order_item_id: Order item whose packet is being picked
        pick_item_id: Pick-list row id
        qty: Quantity picked (default: the required quantity)
        user_id: Picker
        notes: Optional pick notes
        session: Optional session for transaction sharing

    Returns:
        Updated Packet

    Raises:
        StateConflictError: If the packet is not IN_PROGRESS or the row is already picked
        PickListItemNotFound: If the row is not on this packet
        ValidationError: If qty is not positive
    """
    if session is not None:
        return _pick_impl(order_item_id, pick_item_id, qty, user_id, notes, session)

    with order_item_lock(order_item_id), session_scope() as session:
        return _pick_impl(order_item_id, pick_item_id, qty, user_id, notes, session)


# =============================================================================
# Completion and packet check
# =============================================================================


def _complete_impl(
    order_item_id: int, user_id: Optional[str], notes: Optional[str], session: Session
) -> Packet:
    item = get_order_item_for_update(order_item_id, session)
    packet = _get_packet_or_raise(item, session)

    PACKET_FSM.next_state(packet.status, "complete", entity_id=packet.id)
    if packet.picked_items != packet.total_items:
        raise StateConflictError(
            "Packet",
            packet.id,
            packet.status,
            f"complete packet ({packet.picked_items} of {packet.total_items} items picked)",
        )

    from_status, to_status = apply_transition(PACKET_FSM, packet, "complete")
    packet.completed_at = utc_now()
    packet.completion_notes = notes
    _add_event(
        packet,
        "packet_completed",
        user_id,
        from_status=from_status,
        to_status=to_status,
        details={"notes": notes, "picked_items": packet.picked_items},
    )
    session.flush()
    refresh_order_item_status(item, user_id=user_id, action="packet_completed")

    queue_notification(
        session, "packet.completed", {"order_item_id": item.id, "packet_id": packet.id}
    )
    log_operation(logger, operation="complete_packet", outcome="success", order_item_id=item.id)
    return packet


def complete_packet(
    order_item_id: int, user_id: Optional[str] = None, notes: Optional[str] = None, session: Session = None
) -> Packet:
    """Mark the packet COMPLETED once every pick-list row is picked.

    The order item moves to PACKET_CHECK.

    Raises:
        StateConflictError: If the packet is not IN_PROGRESS or rows remain unpicked
    """
    if session is not None:
        return _complete_impl(order_item_id, user_id, notes, session)

    with order_item_lock(order_item_id), session_scope() as session:
        return _complete_impl(order_item_id, user_id, notes, session)


def _approve_impl(
    order_item_id: int,
    user_id: str,
    is_ready_stock: bool,
    notes: Optional[str],
    session: Session,
) -> Packet:
    require_permission(user_id, PERMISSION_APPROVE_PACKETS)

    item = get_order_item_for_update(order_item_id, session)
    packet = _get_packet_or_raise(item, session)

    from_status, to_status = apply_transition(PACKET_FSM, packet, "approve")
    packet.checked_by = user_id
    packet.checked_at = utc_now()
    packet.check_result = "approved"
    packet.check_notes = notes
    packet.is_ready_stock = bool(is_ready_stock)
    item.is_ready_stock = bool(is_ready_stock)

    section_event = "packet_approved_ready_stock" if is_ready_stock else "packet_approved"
    routed = []
    for name in packet.sections_included or []:
        section = get_section_or_raise(item, name)
        if section.status == SectionStatus.CREATE_PACKET:
            transition_section(section, section_event, user_id=user_id, notes=notes)
            routed.append(section.name)

    _add_event(
        packet,
        "packet_approved",
        user_id,
        from_status=from_status,
        to_status=to_status,
        details={"is_ready_stock": bool(is_ready_stock), "sections": routed, "notes": notes},
    )
    session.flush()
    refresh_order_item_status(item, user_id=user_id, action="packet_approved")

    queue_notification(
        session,
        "packet.approved",
        {
            "order_item_id": item.id,
            "packet_id": packet.id,
            "is_ready_stock": bool(is_ready_stock),
            "sections": routed,
        },
    )
    log_operation(
        logger,
        operation="approve_packet",
        outcome="success",
        order_item_id=item.id,
        is_ready_stock=bool(is_ready_stock),
        sections=routed,
    )
    return packet


def approve_packet(
    order_item_id: int,
    user_id: str,
    is_ready_stock: bool,
    notes: Optional[str] = None,
    session: Session = None,
) -> Packet:
    """Approve a COMPLETED packet at the packet check.

    Transaction boundary: Multi-step operation (atomic).
    Sections of the packet still at CREATE_PACKET move on: ready stock goes
    straight to QA_PENDING, otherwise sections go to READY_FOR_DYEING where
    the production path begins.

    Raises:
        StateConflictError: If the packet is not COMPLETED
        AuthorizationError: If user_id lacks the approve-packets permission
    """
    if session is not None:
        return _approve_impl(order_item_id, user_id, is_ready_stock, notes, session)

    with order_item_lock(order_item_id), session_scope() as session:
        return _approve_impl(order_item_id, user_id, is_ready_stock, notes, session)


def _reject_impl(
    order_item_id: int,
    user_id: str,
    reason_code: str,
    reason: Optional[str],
    notes: Optional[str],
    session: Session,
) -> Packet:
    is_valid, error = validate_choice(reason_code, PACKET_REJECTION_REASONS.keys(), "reason_code")
    if not is_valid:
        raise ValidationError([error], field="reason_code")
    require_permission(user_id, PERMISSION_APPROVE_PACKETS)

    item = get_order_item_for_update(order_item_id, session)
    packet = _get_packet_or_raise(item, session)

    from_status, to_status = apply_transition(PACKET_FSM, packet, "reject")
    reason = reason or PACKET_REJECTION_REASONS[reason_code]
    packet.checked_by = user_id
    packet.checked_at = utc_now()
    packet.check_result = "rejected"
    packet.check_notes = notes
    packet.rejection_reason_code = reason_code
    packet.rejection_reason = reason

    _add_event(
        packet,
        "packet_rejected",
        user_id,
        from_status=from_status,
        to_status=to_status,
        details={"reason_code": reason_code, "reason": reason, "notes": notes},
    )
    session.flush()
    refresh_order_item_status(item, user_id=user_id, action="packet_rejected")

    queue_notification(
        session,
        "packet.rejected",
        {
            "order_item_id": item.id,
            "packet_id": packet.id,
            "assigned_to": packet.assigned_to,
            "reason_code": reason_code,
        },
    )
    log_operation(
        logger,
        operation="reject_packet",
        outcome="success",
        order_item_id=item.id,
        reason_code=reason_code,
    )
    return packet


def reject_packet(
    order_item_id: int,
    user_id: str,
    reason_code: str,
    reason: Optional[str] = None,
    notes: Optional[str] = None,
    session: Session = None,
) -> Packet:
    """Send a COMPLETED packet back to its assignee.

    The packet returns to ASSIGNED with its pick list untouched and its round
    unchanged; exactly one timeline entry is appended.

    Args:
        order_item_id: Order item whose packet is rejected
        user_id: Packet checker
        reason_code: One of PACKET_REJECTION_REASONS
        reason: Free-text reason (default: the label of reason_code)
        notes: Checker notes
        session: Optional session for transaction sharing

    Raises:
        ValidationError: If reason_code is unknown
        StateConflictError: If the packet is not COMPLETED
    """
    if session is not None:
        return _reject_impl(order_item_id, user_id, reason_code, reason, notes, session)

    with order_item_lock(order_item_id), session_scope() as session:
        return _reject_impl(order_item_id, user_id, reason_code, reason, notes, session)


# =============================================================================
# Section hand-back
# =============================================================================


def return_sections_to_pending(
    item: OrderItem, sections: List[str], user_id: Optional[str], reason: str, session: Session
) -> Optional[Packet]:
    """Move sections from the packet's included set to its pending set.

    Used when sections go back to the inventory check (dyeing rejection,
    start from scratch) so the next check extends the packet.

    Transaction boundary: Inherits session from caller.

    Returns:
        The packet, or None if the item has no packet
    """
    packet = session.query(Packet).filter(Packet.order_item_id == item.id).first()
    if packet is None:
        return None

    moved = [name for name in sections if name in (packet.sections_included or [])]
    if not moved:
        return packet

    packet.sections_included = [
        name for name in packet.sections_included if name not in moved
    ]
    packet.sections_pending = list(packet.sections_pending or []) + [
        name for name in moved if name not in (packet.sections_pending or [])
    ]
    packet.is_partial = True
    _add_event(
        packet,
        "sections_returned",
        user_id,
        details={"sections": moved, "reason": reason},
    )
    return packet


# =============================================================================
# Queries
# =============================================================================


def get_packet(order_item_id: int, session: Session = None) -> Packet:
    """Get the packet of an order item.

    Raises:
        PacketNotFound: If the order item has no packet
    """

    def _impl(session: Session) -> Packet:
        packet = session.query(Packet).filter(Packet.order_item_id == order_item_id).first()
        if packet is None:
            raise PacketNotFound(order_item_id)
        return packet

    if session is not None:
        return _impl(session)

    with session_scope() as session:
        return _impl(session)


def list_packets(
    status: Optional[PacketStatus] = None,
    assigned_to: Optional[str] = None,
    session: Session = None,
) -> List[Packet]:
    """List packets filtered by status and/or assignee, oldest first."""

    def _impl(session: Session) -> List[Packet]:
        query = session.query(Packet)
        if status is not None:
            query = query.filter(Packet.status == status)
        if assigned_to is not None:
            query = query.filter(Packet.assigned_to == assigned_to)
        return query.order_by(Packet.id).all()

    if session is not None:
        return _impl(session)

    with session_scope() as session:
        return _impl(session)


def get_my_packet_tasks(user_id: str, session: Session = None) -> List[Packet]:
    """Packets assigned to the user that still need picking."""

    def _impl(session: Session) -> List[Packet]:
        return (
            session.query(Packet)
            .filter(
                Packet.assigned_to == user_id,
                Packet.status.in_([PacketStatus.ASSIGNED, PacketStatus.IN_PROGRESS]),
            )
            .order_by(Packet.id)
            .all()
        )

    if session is not None:
        return _impl(session)

    with session_scope() as session:
        return _impl(session)


def get_packet_check_queue(session: Session = None) -> List[Packet]:
    """Packets waiting for the packet check (COMPLETED)."""
    return list_packets(status=PacketStatus.COMPLETED, session=session)
