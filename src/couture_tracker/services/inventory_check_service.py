"""Inventory Check Service - decides which sections can be packeted.

For every section of an order item still waiting at the inventory stage
(PENDING_INVENTORY_CHECK or AWAITING_MATERIAL), the inventory collaborator is
asked for the material requirements. A section passes when all of its
requirements are available. Passed sections are allocated and packeted:

- no packet yet, every waiting section passed   -> create_packet
- no packet yet, some sections failed            -> create_partial_packet
- packet exists                                  -> extend_packet

Failed sections move to AWAITING_MATERIAL.

Session Management Pattern:
- All public functions accept session=None parameter
- If session provided, use it directly
- If session is None, take the order item lock and create a new session
  via session_scope()
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from ..models.enums import OrderItemStatus, SectionStatus
from ..models.packet import Packet
from ..utils.validators import normalize_section_name
from .collaborators import MaterialRequirement, call_external, get_collaborators
from .database import on_rollback, order_item_lock, queue_notification, session_scope
from .logging_utils import get_service_logger, log_operation
from .order_item_service import (
    get_order_item_for_update,
    refresh_order_item_status,
    set_order_item_status,
    transition_order,
    transition_section,
)
from .packet_service import create_packet, create_partial_packet, extend_packet
from .state_machine import ORDER_FSM

logger = get_service_logger(__name__)

_WAITING_STATES = (SectionStatus.PENDING_INVENTORY_CHECK, SectionStatus.AWAITING_MATERIAL)


@dataclass
class InventoryCheckResult:
    """Outcome of an inventory check for one order item.

    Attributes:
        order_item_id: Order item checked
        passed_sections: Sections whose materials are all available
        failed_sections: Sections still waiting for material
        shortages: Per failed section, the inventory items that fell short
        packet_action: "created", "partial_created", "extended" or None
        packet_round: Packet round after the check, if a packet exists
    """

    order_item_id: int
    passed_sections: List[str] = field(default_factory=list)
    failed_sections: List[str] = field(default_factory=list)
    shortages: Dict[str, List[str]] = field(default_factory=dict)
    packet_action: Optional[str] = None
    packet_round: Optional[int] = None


def _release_allocation(order_item_id: int, sections: List[str]):
    def release() -> None:
        inventory = get_collaborators().inventory
        call_external("inventory", inventory.release, order_item_id, sections)

    return release


def _check_impl(order_item_id: int, checked_by: Optional[str], session: Session) -> InventoryCheckResult:
    item = get_order_item_for_update(order_item_id, session)
    result = InventoryCheckResult(order_item_id=item.id)

    waiting = [section.name for section in item.sections if section.status in _WAITING_STATES]
    if not waiting:
        log_operation(
            logger,
            operation="run_inventory_check",
            outcome="nothing_to_check",
            order_item_id=item.id,
        )
        return result

    order = item.order
    if ORDER_FSM.can(order.status, "inventory_check"):
        transition_order(order, "inventory_check", user_id=checked_by)
    if item.status == OrderItemStatus.RECEIVED:
        set_order_item_status(item, OrderItemStatus.INVENTORY_CHECK, "inventory_check_started", checked_by)

    inventory = get_collaborators().inventory
    requirements: List[MaterialRequirement] = call_external(
        "inventory",
        inventory.get_material_requirements,
        item.product_id,
        item.quantity,
        waiting,
    )

    by_section: Dict[str, List[MaterialRequirement]] = {name: [] for name in waiting}
    for requirement in requirements or []:
        piece = normalize_section_name(requirement.piece)
        if piece in by_section:
            requirement.piece = piece
            by_section[piece].append(requirement)

    for name in waiting:
        section_requirements = by_section[name]
        short = [r.inventory_item_id for r in section_requirements if not r.is_available]
        if section_requirements and not short:
            result.passed_sections.append(name)
        else:
            result.failed_sections.append(name)
            result.shortages[name] = short

    for name in result.failed_sections:
        section = item.get_section(name)
        transition_section(
            section,
            "inventory_failed",
            user_id=checked_by,
            details={"shortages": result.shortages[name]},
        )

    if result.passed_sections:
        passed_requirements = [
            requirement
            for name in result.passed_sections
            for requirement in by_section[name]
        ]
        packet = session.query(Packet).filter(Packet.order_item_id == item.id).first()
        if packet is not None:
            packet = extend_packet(
                item.id,
                passed_requirements,
                result.passed_sections,
                extended_by=checked_by,
                session=session,
            )
            result.packet_action = "extended"
        elif result.failed_sections:
            packet = create_partial_packet(
                item.id,
                passed_requirements,
                result.passed_sections,
                result.failed_sections,
                created_by=checked_by,
                session=session,
            )
            result.packet_action = "partial_created"
        else:
            packet = create_packet(
                item.id,
                passed_requirements,
                sections=result.passed_sections,
                created_by=checked_by,
                session=session,
            )
            result.packet_action = "created"
        result.packet_round = packet.packet_round

        # Nothing before this point has an external effect
        session.flush()
        call_external("inventory", inventory.allocate, item.id, passed_requirements)
        on_rollback(session, _release_allocation(item.id, list(result.passed_sections)))
    else:
        refresh_order_item_status(item, user_id=checked_by, action="inventory_checked")

    session.flush()
    queue_notification(
        session,
        "inventory.checked",
        {
            "order_item_id": item.id,
            "passed_sections": result.passed_sections,
            "failed_sections": result.failed_sections,
        },
    )
    log_operation(
        logger,
        operation="run_inventory_check",
        outcome="success",
        order_item_id=item.id,
        passed_sections=result.passed_sections,
        failed_sections=result.failed_sections,
        packet_action=result.packet_action,
    )
    return result


def run_inventory_check(
    order_item_id: int, checked_by: Optional[str] = None, session: Session = None
) -> InventoryCheckResult:
    """Check material availability for waiting sections and packet the ones that pass.

    Transaction boundary: Multi-step operation (atomic).
        1. Ask inventory for requirements of the waiting sections
        2. Failed sections -> AWAITING_MATERIAL
        3. Create, partially create or extend the packet
        4. Allocate materials of passed sections
    If any step fails the whole check rolls back. Allocation is the last
    step; if the transaction still rolls back afterwards (a failed commit or
    a caller session rolling back) the passed sections are released again.
    A section for which inventory reports no materials at all does not pass.

    Args:
        order_item_id: Order item to check
        checked_by: User or process running the check
        session: Optional session for transaction sharing

    Returns:
        InventoryCheckResult

    Raises:
        OrderItemNotFound: If the order item does not exist
        ExternalServiceError: If the inventory service fails
    """
    if session is not None:
        return _check_impl(order_item_id, checked_by, session)

    with order_item_lock(order_item_id), session_scope() as session:
        return _check_impl(order_item_id, checked_by, session)
