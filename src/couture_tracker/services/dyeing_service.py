"""Dyeing Service - the dyeing stage between packet approval and production.

Section flow:
    READY_FOR_DYEING -> DYEING_ACCEPTED -> DYEING_IN_PROGRESS -> READY_FOR_PRODUCTION
    (complete is also legal straight from DYEING_ACCEPTED)

Rejection sends sections back to PENDING_INVENTORY_CHECK with the dyeing
round incremented. Their inventory allocation is released and they are moved
to the packet's pending set, so the next inventory check extends the packet
and purges the stale pick-list rows.

Session Management Pattern:
- All public functions accept session=None parameter
- If session provided, use it directly
- If session is None, take the order item lock and create a new session
  via session_scope()
"""

from typing import List, Optional

from sqlalchemy.orm import Session

from ..models.enums import ReviewStage, SectionStatus
from ..models.order_item import OrderItem
from ..models.section_state import SectionState
from ..utils.constants import DYEING_REJECTION_REASONS
from ..utils.validators import validate_choice, validate_required_string
from .collaborators import call_external, get_collaborators
from .database import order_item_lock, queue_notification, round_robin_lock, session_scope
from .exceptions import AuthorizationError, StateConflictError, ValidationError
from .logging_utils import get_service_logger, log_operation
from .order_item_service import (
    get_order_item_for_update,
    refresh_order_item_status,
    resolve_sections_for_event,
    transition_section,
)
from .packet_service import return_sections_to_pending
from .production_service import ensure_production_head

logger = get_service_logger(__name__)

_ACTIVE_DYEING_STATES = (SectionStatus.DYEING_ACCEPTED, SectionStatus.DYEING_IN_PROGRESS)


def _require_dyer(section: SectionState, user_id: str) -> None:
    if section.dyeing_accepted_by != user_id:
        raise AuthorizationError(
            user_id,
            "dyeing.work",
            f"Section '{section.name}' was accepted by {section.dyeing_accepted_by}",
        )


def _accept_impl(order_item_id: int, sections: List[str], user_id: str, session: Session) -> OrderItem:
    is_valid, error = validate_required_string(user_id, "user_id")
    if not is_valid:
        raise ValidationError([error], field="user_id")

    item = get_order_item_for_update(order_item_id, session)
    resolved = resolve_sections_for_event(item, sections, "accept_dyeing")

    for other in item.sections:
        if (
            other.status in _ACTIVE_DYEING_STATES
            and other.dyeing_accepted_by
            and other.dyeing_accepted_by != user_id
        ):
            raise StateConflictError(
                "Order item",
                item.id,
                item.status,
                f"accept dyeing (already accepted by {other.dyeing_accepted_by})",
            )

    for section in resolved:
        transition_section(section, "accept_dyeing", user_id=user_id)
        section.dyeing_accepted_by = user_id

    session.flush()
    refresh_order_item_status(item, user_id=user_id, action="dyeing_accepted")
    log_operation(
        logger,
        operation="accept_dyeing",
        outcome="success",
        order_item_id=item.id,
        sections=[s.name for s in resolved],
        user_id=user_id,
    )
    return item


def accept_dyeing(
    order_item_id: int, sections: List[str], user_id: str, session: Session = None
) -> OrderItem:
    """Accept sections for dyeing (READY_FOR_DYEING -> DYEING_ACCEPTED).

    Only one dyer works on an order item at a time.

    Raises:
        StateConflictError: If a section is not READY_FOR_DYEING or another
            dyer already holds sections of this item
    """
    if session is not None:
        return _accept_impl(order_item_id, sections, user_id, session)

    with order_item_lock(order_item_id), session_scope() as session:
        return _accept_impl(order_item_id, sections, user_id, session)


def _start_impl(order_item_id: int, sections: List[str], user_id: str, session: Session) -> OrderItem:
    item = get_order_item_for_update(order_item_id, session)
    resolved = resolve_sections_for_event(item, sections, "start_dyeing")
    for section in resolved:
        _require_dyer(section, user_id)

    for section in resolved:
        transition_section(section, "start_dyeing", user_id=user_id)

    session.flush()
    refresh_order_item_status(item, user_id=user_id, action="dyeing_started")
    log_operation(
        logger,
        operation="start_dyeing",
        outcome="success",
        order_item_id=item.id,
        sections=[s.name for s in resolved],
    )
    return item


def start_dyeing(
    order_item_id: int, sections: List[str], user_id: str, session: Session = None
) -> OrderItem:
    """Start dyeing accepted sections (DYEING_ACCEPTED -> DYEING_IN_PROGRESS).

    Raises:
        StateConflictError: If a section is not DYEING_ACCEPTED
        AuthorizationError: If user_id did not accept the section
    """
    if session is not None:
        return _start_impl(order_item_id, sections, user_id, session)

    with order_item_lock(order_item_id), session_scope() as session:
        return _start_impl(order_item_id, sections, user_id, session)


def _complete_impl(
    order_item_id: int, sections: List[str], user_id: str, session: Session
) -> OrderItem:
    item = get_order_item_for_update(order_item_id, session)
    resolved = resolve_sections_for_event(item, sections, "complete_dyeing")
    for section in resolved:
        _require_dyer(section, user_id)

    for section in resolved:
        transition_section(section, "complete_dyeing", user_id=user_id)

    session.flush()
    refresh_order_item_status(item, user_id=user_id, action="dyeing_completed")

    ensure_production_head(item, session)

    queue_notification(
        session,
        "dyeing.completed",
        {"order_item_id": item.id, "sections": [s.name for s in resolved]},
    )
    log_operation(
        logger,
        operation="complete_dyeing",
        outcome="success",
        order_item_id=item.id,
        sections=[s.name for s in resolved],
    )
    return item


def complete_dyeing(
    order_item_id: int, sections: List[str], user_id: str, session: Session = None
) -> OrderItem:
    """Finish dyeing (DYEING_ACCEPTED | DYEING_IN_PROGRESS -> READY_FOR_PRODUCTION).

    Transaction boundary: Multi-step operation (atomic).
    The first section to become ready for production triggers the round-robin
    production head assignment for the item (skipped while the roster is empty).
    The roster lock is held until commit so concurrent completions keep the rotation.

    Raises:
        StateConflictError: If a section is not accepted or in progress
        AuthorizationError: If user_id did not accept the section
    """
    if session is not None:
        return _complete_impl(order_item_id, sections, user_id, session)

    with order_item_lock(order_item_id), round_robin_lock(), session_scope() as session:
        return _complete_impl(order_item_id, sections, user_id, session)


def _reject_impl(
    order_item_id: int,
    sections: List[str],
    user_id: str,
    reason_code: str,
    notes: str,
    session: Session,
) -> OrderItem:
    errors = []
    is_valid, error = validate_required_string(notes, "notes")
    if not is_valid:
        errors.append(error)
    is_valid, error = validate_choice(reason_code, DYEING_REJECTION_REASONS.keys(), "reason_code")
    if not is_valid:
        errors.append(error)
    if errors:
        raise ValidationError(errors, field=errors[0].split(":")[0])

    item = get_order_item_for_update(order_item_id, session)
    resolved = resolve_sections_for_event(item, sections, "reject_dyeing")
    names = [section.name for section in resolved]

    inventory = get_collaborators().inventory
    call_external("inventory", inventory.release, item.id, names)

    for section in resolved:
        transition_section(
            section,
            "reject_dyeing",
            user_id=user_id,
            stage=ReviewStage.DYEING,
            reason_code=reason_code,
            notes=notes.strip(),
            details={"dyeing_round": section.dyeing_round},
        )
        section.dyeing_round += 1
        section.dyeing_accepted_by = None

    return_sections_to_pending(item, names, user_id, reason=f"Dyeing rejected: {reason_code}", session=session)

    session.flush()
    refresh_order_item_status(item, user_id=user_id, action="dyeing_rejected")

    queue_notification(
        session,
        "dyeing.rejected",
        {"order_item_id": item.id, "sections": names, "reason_code": reason_code},
    )
    log_operation(
        logger,
        operation="reject_dyeing",
        outcome="success",
        order_item_id=item.id,
        sections=names,
        reason_code=reason_code,
    )
    return item


def reject_dyeing(
    order_item_id: int,
    sections: List[str],
    user_id: str,
    reason_code: str,
    notes: str,
    session: Session = None,
) -> OrderItem:
    """Reject sections at dyeing and send them back to the inventory check.

    Transaction boundary: Multi-step operation (atomic).
        1. Validate notes and reason code
        2. Release the sections' inventory allocation
        3. Sections -> PENDING_INVENTORY_CHECK, dyeing_round + 1
        4. Move the sections to the packet's pending set

    Args:
        order_item_id: Order item
        sections: Sections being rejected
        user_id: Dyer or supervisor rejecting
        reason_code: One of DYEING_REJECTION_REASONS
        notes: Mandatory explanation
        session: Optional session for transaction sharing

    Raises:
        ValidationError: If notes are empty or reason_code is unknown
        StateConflictError: If a section is not in the dyeing stage
        ExternalServiceError: If the inventory release fails
    """
    if session is not None:
        return _reject_impl(order_item_id, sections, user_id, reason_code, notes, session)

    with order_item_lock(order_item_id), session_scope() as session:
        return _reject_impl(order_item_id, sections, user_id, reason_code, notes, session)
