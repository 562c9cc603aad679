"""Sales Approval Service - client approval, payments and dispatch for an order.

Order flow:
    IN_PROGRESS -> READY_FOR_CLIENT_APPROVAL -> AWAITING_CLIENT_APPROVAL
        -> AWAITING_ACCOUNT_APPROVAL -> READY_FOR_DISPATCH -> DISPATCHED -> COMPLETED

While the order is AWAITING_CLIENT_APPROVAL the client can instead ask for:
    - a new video        order unchanged, open re-video request for QA
    - an alteration      chosen sections back to rework, order -> IN_PROGRESS
    - a fresh start      everything back to the inventory check
    - cancellation       order and items -> CANCELLED_BY_CLIENT (terminal)

Every operation here works on the whole order, so it holds the order lock and
the lock of every item of the order for the length of its transaction
(order_scope).

Items untouched by an alteration keep their status. When the order is sent
back to sales and to the client, items already further along are left as
they are.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models.enums import (
    OrderItemStatus,
    OrderStatus,
    ReviewStage,
    SalesRequestStatus,
    SalesRequestType,
    SectionStatus,
)
from ..models.order import Order, OrderEvent, Payment
from ..models.order_item import OrderItem
from ..models.sales_request import SalesRequest
from ..utils.constants import (
    MAX_APPROVAL_PROOFS,
    MIN_APPROVAL_PROOFS,
    PERMISSION_DISPATCH,
    PERMISSION_PAYMENTS_APPROVE,
    PERMISSION_SALES_APPROVE,
)
from ..utils.datetime_utils import utc_now
from ..utils.validators import (
    normalize_section_name,
    validate_positive_number,
    validate_required_string,
)
from .collaborators import require_permission
from .database import queue_notification, session_scope
from .exceptions import (
    OrderItemNotFound,
    OrderNotFound,
    PaymentIncompleteError,
    StateConflictError,
    ValidationError,
)
from .logging_utils import get_service_logger, log_operation
from .order_item_service import (
    add_order_item_note,
    get_order_for_update,
    get_section_or_raise,
    order_scope,
    send_section_to_rework,
    transition_order,
    transition_order_item,
    transition_section,
)
from .packet_service import return_sections_to_pending
from .state_machine import ORDER_FSM, ORDER_ITEM_FSM, SECTION_FSM

logger = get_service_logger(__name__)

_SECTION_APPROVED = (SectionStatus.QA_APPROVED, SectionStatus.CLIENT_APPROVED)
_NO_MORE_PAYMENTS = (
    OrderStatus.CANCELLED_BY_CLIENT,
    OrderStatus.DISPATCHED,
    OrderStatus.COMPLETED,
)


def _raise_errors(errors: List[str]) -> None:
    if errors:
        raise ValidationError(errors, field=errors[0].split(":")[0])


def _item_of_order(order: Order, order_item_id: int) -> OrderItem:
    for item in order.items:
        if item.id == order_item_id:
            return item
    raise OrderItemNotFound(order_item_id)


def _advance_items(
    order: Order,
    event: str,
    user_id: Optional[str],
    already_done: tuple = (),
    details: Optional[Dict[str, Any]] = None,
) -> List[OrderItem]:
    """Apply event to every item of the order, after checking all of them.

    Items whose status is in already_done are skipped.
    """
    pending = [item for item in order.items if item.status not in already_done]
    for item in pending:
        ORDER_ITEM_FSM.next_state(item.status, event, entity_id=item.id)
    for item in pending:
        transition_order_item(item, event, user_id=user_id, details=details)
    return pending


def _log_and_notify(session: Session, order: Order, operation: str, topic: str, **context) -> None:
    queue_notification(
        session,
        topic,
        {"order_id": order.id, "order_number": order.order_number, "status": order.status.value},
    )
    log_operation(
        logger,
        operation=operation,
        outcome="success",
        order_id=order.id,
        order_status=order.status.value,
        **context,
    )


# =============================================================================
# Sending for approval
# =============================================================================


def send_order_to_sales(order_id: int, sent_by: str) -> Order:
    """Hand a finished order to sales (IN_PROGRESS -> READY_FOR_CLIENT_APPROVAL).

    Transaction boundary: Multi-step operation (atomic).
    Every item must have a current QA video and every section approved.
    Items waiting at VIDEO_UPLOADED move to READY_FOR_CLIENT_APPROVAL.

    Raises:
        StateConflictError: If the order is not IN_PROGRESS or an item is not
            ready for sales
    """
    with order_scope(order_id) as session:
        order = get_order_for_update(order_id, session)
        ORDER_FSM.next_state(order.status, "send_to_sales", entity_id=order.id)

        for item in order.items:
            if item.current_video is None or not all(
                section.status in _SECTION_APPROVED for section in item.sections
            ):
                raise StateConflictError(
                    "Order item",
                    item.id,
                    item.status,
                    "send to sales (needs a QA video and every section approved)",
                )

        moved = _advance_items(
            order,
            "send_to_sales",
            sent_by,
            already_done=(
                OrderItemStatus.READY_FOR_CLIENT_APPROVAL,
                OrderItemStatus.AWAITING_CLIENT_APPROVAL,
            ),
        )
        transition_order(order, "send_to_sales", user_id=sent_by)
        session.flush()
        _log_and_notify(
            session, order, "send_order_to_sales", "sales.ready_for_approval", items=len(moved)
        )
        return order


def send_order_to_client(order_id: int, sent_by: str) -> Order:
    """Record that the videos were sent to the client (-> AWAITING_CLIENT_APPROVAL).

    Raises:
        StateConflictError: If the order is not READY_FOR_CLIENT_APPROVAL
    """
    with order_scope(order_id) as session:
        order = get_order_for_update(order_id, session)
        ORDER_FSM.next_state(order.status, "send_to_client", entity_id=order.id)

        _advance_items(
            order,
            "send_to_client",
            sent_by,
            already_done=(OrderItemStatus.AWAITING_CLIENT_APPROVAL,),
        )
        transition_order(order, "send_to_client", user_id=sent_by)
        session.flush()
        _log_and_notify(session, order, "send_order_to_client", "sales.sent_to_client")
        return order


def mark_client_approved(
    order_id: int,
    approved_by: str,
    proof_references: List[str],
    notes: Optional[str] = None,
) -> Order:
    """Record the client's approval (AWAITING_CLIENT_APPROVAL -> AWAITING_ACCOUNT_APPROVAL).

    Transaction boundary: Multi-step operation (atomic).
        1. Validate 1 to 10 proof references (screenshots of the client's reply)
        2. Every section -> CLIENT_APPROVED
        3. Every item -> AWAITING_ACCOUNT_APPROVAL
        4. Order -> AWAITING_ACCOUNT_APPROVAL

    Raises:
        ValidationError: If the proof count is out of range or a proof is empty
        AuthorizationError: If approved_by lacks the sales approval permission
        StateConflictError: If the order is not awaiting client approval
    """
    proofs = [p.strip() for p in (proof_references or []) if p and p.strip()]
    errors = []
    if len(proofs) != len(proof_references or []):
        errors.append("proof_references: Proof references cannot be empty")
    if not MIN_APPROVAL_PROOFS <= len(proofs) <= MAX_APPROVAL_PROOFS:
        errors.append(
            f"proof_references: Between {MIN_APPROVAL_PROOFS} and {MAX_APPROVAL_PROOFS} "
            f"proofs are required (got {len(proofs)})"
        )
    _raise_errors(errors)
    require_permission(approved_by, PERMISSION_SALES_APPROVE)

    with order_scope(order_id) as session:
        order = get_order_for_update(order_id, session)
        ORDER_FSM.next_state(order.status, "client_approve", entity_id=order.id)
        for item in order.items:
            for section in item.sections:
                if section.status != SectionStatus.CLIENT_APPROVED:
                    SECTION_FSM.next_state(
                        section.status,
                        "client_approve",
                        entity_id=item.id,
                        entity=f"Section '{section.name}' of order item",
                    )

        for item in order.items:
            for section in item.sections:
                if section.status != SectionStatus.CLIENT_APPROVED:
                    transition_section(section, "client_approve", user_id=approved_by)

        details = {"proof_references": proofs, "notes": notes}
        _advance_items(order, "client_approve", approved_by)
        transition_order(order, "client_approve", user_id=approved_by, details=details)
        session.flush()
        _log_and_notify(
            session, order, "mark_client_approved", "sales.client_approved", proofs=len(proofs)
        )
        return order


# =============================================================================
# Client rejection paths
# =============================================================================


def _validate_targets(
    order: Order, sections: List[Dict[str, Any]], default_item_id: Optional[int] = None
) -> List[tuple]:
    """Resolve {order_item_id, section, notes} targets; all-or-nothing.

    Returns:
        List of (item, section_state, notes)
    """
    errors = []
    resolved = []
    if not sections:
        errors.append("sections: At least one section is required")

    seen = set()
    for index, target in enumerate(sections or []):
        prefix = f"sections[{index}]"
        item_id = target.get("order_item_id", default_item_id)
        name = normalize_section_name(target.get("section") or target.get("name") or "")
        notes = target.get("notes")

        is_valid, error = validate_required_string(notes, f"{prefix}.notes")
        if not is_valid:
            errors.append(error)
        if not name:
            errors.append(f"{prefix}.section: This field is required")
            continue
        if item_id is None:
            errors.append(f"{prefix}.order_item_id: This field is required")
            continue
        if (item_id, name) in seen:
            errors.append(f"{prefix}.section: '{name}' is listed twice")
            continue
        seen.add((item_id, name))

        item = _item_of_order(order, item_id)
        state = get_section_or_raise(item, name)
        resolved.append((item, state, (notes or "").strip()))

    _raise_errors(errors)
    return resolved


def request_re_video(
    order_id: int,
    order_item_id: int,
    sections: List[Dict[str, Any]],
    requested_by: str,
) -> SalesRequest:
    """Ask QA for a new video of some sections; the order stays with the client.

    Args:
        order_id: Order awaiting client approval
        order_item_id: Garment to re-film
        sections: List of {"section": name, "notes": what to show}; notes
            are required for every entry
        requested_by: Sales user

    Returns:
        The open SalesRequest QA will fulfil

    Raises:
        ValidationError: If any entry lacks notes (nothing is recorded)
        StateConflictError: If the order is not awaiting client approval or a
            re-video request for the item is already open
    """
    with order_scope(order_id) as session:
        order = get_order_for_update(order_id, session)
        ORDER_FSM.next_state(order.status, "request_re_video", entity_id=order.id)
        item = _item_of_order(order, order_item_id)
        ORDER_ITEM_FSM.next_state(item.status, "re_video_upload", entity_id=item.id)

        targets = _validate_targets(
            order,
            [dict(target, order_item_id=order_item_id) for target in sections or []],
        )

        existing = (
            session.query(SalesRequest)
            .filter(
                SalesRequest.order_item_id == item.id,
                SalesRequest.request_type == SalesRequestType.RE_VIDEO,
                SalesRequest.status == SalesRequestStatus.OPEN,
            )
            .first()
        )
        if existing is not None:
            raise StateConflictError(
                "Order item", item.id, item.status, "request re-video (a request is already open)"
            )

        entries = [
            {"order_item_id": item.id, "section": state.name, "notes": notes}
            for _, state, notes in targets
        ]
        request = SalesRequest(
            order_item_id=item.id,
            request_type=SalesRequestType.RE_VIDEO,
            sections=entries,
            notes="; ".join(f"{entry['section']}: {entry['notes']}" for entry in entries),
            requested_by=requested_by,
            status=SalesRequestStatus.OPEN,
        )
        order.sales_requests.append(request)
        add_order_item_note(
            item,
            "re_video_requested",
            user_id=requested_by,
            details={"sections": [entry["section"] for entry in entries]},
        )
        transition_order(
            order, "request_re_video", user_id=requested_by, details={"order_item_id": item.id}
        )
        session.flush()

        queue_notification(
            session,
            "sales.re_video_requested",
            {"order_id": order.id, "order_item_id": item.id, "request_id": request.id},
        )
        log_operation(
            logger,
            operation="request_re_video",
            outcome="success",
            order_id=order.id,
            order_item_id=item.id,
            sections=[entry["section"] for entry in entries],
        )
        return request


def request_alteration(
    order_id: int, sections: List[Dict[str, Any]], requested_by: str
) -> Order:
    """Send chosen sections back to production for client-requested changes.

    Transaction boundary: Multi-step operation (atomic).
        1. Validate every {order_item_id, section, notes} entry; one entry
           without notes rejects the whole batch
        2. Each section -> REWORK_REQUIRED, round + 1 (same path as a QA rejection)
        3. Each affected item -> ALTERATION_REQUIRED
        4. Order -> IN_PROGRESS

    Raises:
        ValidationError: If any entry is incomplete
        SectionNotFound / OrderItemNotFound: If a target does not exist
        StateConflictError: If the order, an item or a section is in the wrong state
    """
    with order_scope(order_id) as session:
        order = get_order_for_update(order_id, session)
        ORDER_FSM.next_state(order.status, "alteration", entity_id=order.id)
        targets = _validate_targets(order, sections)

        items = []
        for item, state, _ in targets:
            SECTION_FSM.next_state(
                state.status,
                "alteration",
                entity_id=item.id,
                entity=f"Section '{state.name}' of order item",
            )
            if item not in items:
                ORDER_ITEM_FSM.next_state(item.status, "alteration", entity_id=item.id)
                items.append(item)

        for item, state, notes in targets:
            send_section_to_rework(
                state,
                "alteration",
                stage=ReviewStage.CLIENT,
                user_id=requested_by,
                reason_code=None,
                notes=notes,
            )
        for item in items:
            transition_order_item(
                item,
                "alteration",
                user_id=requested_by,
                details={
                    "sections": [state.name for target_item, state, _ in targets if target_item is item]
                },
            )

        entries = [
            {"order_item_id": item.id, "section": state.name, "notes": notes}
            for item, state, notes in targets
        ]
        order.sales_requests.append(
            SalesRequest(
                request_type=SalesRequestType.ALTERATION,
                sections=entries,
                notes="; ".join(f"{entry['section']}: {entry['notes']}" for entry in entries),
                requested_by=requested_by,
                status=SalesRequestStatus.RESOLVED,
                resolved_at=utc_now(),
                resolved_by=requested_by,
            )
        )
        transition_order(order, "alteration", user_id=requested_by, details={"sections": entries})
        session.flush()
        _log_and_notify(
            session,
            order,
            "request_alteration",
            "sales.alteration_requested",
            sections=len(entries),
        )
        return order


def start_from_scratch(order_id: int, confirmed_by: str, reason: str) -> Order:
    """Reset the whole order to the inventory check.

    Every item -> INVENTORY_CHECK and every section -> PENDING_INVENTORY_CHECK
    with its QA and dyeing rounds back at 1. Packet sections move to the
    pending set so the next inventory check extends the packet. Inventory
    allocations are left as they are; the next check allocates afresh.

    Transaction boundary: Multi-step operation (atomic).

    Raises:
        ValidationError: If reason is empty
        StateConflictError: If the order is dispatched or cancelled
    """
    is_valid, error = validate_required_string(reason, "reason")
    if not is_valid:
        raise ValidationError([error], field="reason")

    with order_scope(order_id) as session:
        order = get_order_for_update(order_id, session)
        ORDER_FSM.next_state(order.status, "start_from_scratch", entity_id=order.id)
        for item in order.items:
            ORDER_ITEM_FSM.next_state(item.status, "start_from_scratch", entity_id=item.id)

        reason = reason.strip()
        for item in order.items:
            for section in item.sections:
                transition_section(
                    section,
                    "start_from_scratch",
                    user_id=confirmed_by,
                    notes=reason,
                    details={
                        "previous_round": section.current_round,
                        "previous_dyeing_round": section.dyeing_round,
                    },
                )
                section.current_round = 1
                section.dyeing_round = 1
                section.dyeing_accepted_by = None
                section.qa_video_reference = None

            current = item.current_video
            if current is not None:
                current.is_current = False
                current.replaced_at = utc_now()
                current.replaced_reason = f"Order restarted: {reason}"

            return_sections_to_pending(
                item, item.section_names, confirmed_by, reason=f"Start from scratch: {reason}", session=session
            )
            transition_order_item(item, "start_from_scratch", user_id=confirmed_by, details={"reason": reason})

        for request in order.sales_requests:
            if request.status == SalesRequestStatus.OPEN:
                request.status = SalesRequestStatus.RESOLVED
                request.resolved_at = utc_now()
                request.resolved_by = confirmed_by

        order.sales_requests.append(
            SalesRequest(
                request_type=SalesRequestType.SCRATCH,
                sections=[],
                notes=reason,
                requested_by=confirmed_by,
                status=SalesRequestStatus.RESOLVED,
                resolved_at=utc_now(),
                resolved_by=confirmed_by,
            )
        )
        transition_order(order, "start_from_scratch", user_id=confirmed_by, details={"reason": reason})
        session.flush()
        _log_and_notify(session, order, "start_from_scratch", "sales.start_from_scratch")
        return order


def cancel_order(order_id: int, cancelled_by: str, reason: str) -> Order:
    """Cancel the order after the client turned it down (terminal).

    Raises:
        ValidationError: If reason is empty
        StateConflictError: If the order is not awaiting client approval
    """
    is_valid, error = validate_required_string(reason, "reason")
    if not is_valid:
        raise ValidationError([error], field="reason")

    with order_scope(order_id) as session:
        order = get_order_for_update(order_id, session)
        ORDER_FSM.next_state(order.status, "cancel", entity_id=order.id)

        reason = reason.strip()
        _advance_items(order, "cancel", cancelled_by, details={"reason": reason})
        order.sales_requests.append(
            SalesRequest(
                request_type=SalesRequestType.CANCEL,
                sections=[],
                notes=reason,
                requested_by=cancelled_by,
                status=SalesRequestStatus.RESOLVED,
                resolved_at=utc_now(),
                resolved_by=cancelled_by,
            )
        )
        transition_order(order, "cancel", user_id=cancelled_by, details={"reason": reason})
        session.flush()
        _log_and_notify(session, order, "cancel_order", "sales.order_cancelled")
        return order


# =============================================================================
# Payments and dispatch
# =============================================================================


def record_payment(
    order_id: int,
    amount,
    method: str,
    recorded_by: str,
    reference: Optional[str] = None,
) -> Payment:
    """Record a payment against an order.

    Raises:
        ValidationError: If amount is not positive or method is empty
        StateConflictError: If the order is cancelled, dispatched or completed
    """
    errors = []
    is_valid, error = validate_positive_number(amount, "amount")
    if not is_valid:
        errors.append(error)
    is_valid, error = validate_required_string(method, "method")
    if not is_valid:
        errors.append(error)
    _raise_errors(errors)

    with order_scope(order_id) as session:
        order = get_order_for_update(order_id, session)
        if order.status in _NO_MORE_PAYMENTS:
            raise StateConflictError("Order", order.id, order.status, "record payment")

        payment = Payment(
            amount=Decimal(str(amount)),
            method=method.strip(),
            reference=reference,
            recorded_by=recorded_by,
        )
        order.payments.append(payment)
        session.flush()

        order.timeline.append(
            OrderEvent(
                action="payment_recorded",
                user_id=recorded_by,
                details={
                    "payment_id": payment.id,
                    "amount": str(payment.amount),
                    "method": payment.method,
                    "total_paid": str(order.total_paid),
                },
            )
        )
        queue_notification(
            session,
            "sales.payment_recorded",
            {"order_id": order.id, "amount": str(payment.amount), "total_paid": str(order.total_paid)},
        )
        log_operation(
            logger,
            operation="record_payment",
            outcome="success",
            order_id=order.id,
            amount=str(payment.amount),
            balance_due=str(order.balance_due),
        )
        return payment


def get_total_paid(order_id: int, session: Session = None) -> Decimal:
    """Sum of payments recorded against the order.

    Raises:
        OrderNotFound: If the order does not exist
    """

    def _impl(session: Session) -> Decimal:
        if session.query(Order.id).filter(Order.id == order_id).first() is None:
            raise OrderNotFound(order_id)
        total = (
            session.query(func.coalesce(func.sum(Payment.amount), 0))
            .filter(Payment.order_id == order_id)
            .scalar()
        )
        return Decimal(str(total)).quantize(Decimal("0.01"))

    if session is not None:
        return _impl(session)

    with session_scope() as session:
        return _impl(session)


def approve_payments(order_id: int, approved_by: str) -> Order:
    """Clear the order for dispatch once payments cover the total.

    Raises:
        AuthorizationError: If approved_by lacks the payments permission
        StateConflictError: If the order is not AWAITING_ACCOUNT_APPROVAL
        PaymentIncompleteError: If sum(payments) < total_amount
    """
    require_permission(approved_by, PERMISSION_PAYMENTS_APPROVE)

    with order_scope(order_id) as session:
        order = get_order_for_update(order_id, session)
        ORDER_FSM.next_state(order.status, "approve_payments", entity_id=order.id)

        total_paid = get_total_paid(order.id, session=session)
        total_amount = Decimal(str(order.total_amount))
        if total_paid < total_amount:
            log_operation(
                logger,
                operation="approve_payments",
                outcome="payment_incomplete",
                order_id=order.id,
                total_paid=str(total_paid),
                total_amount=str(total_amount),
            )
            raise PaymentIncompleteError(order.id, total_paid, total_amount, order.status)

        _advance_items(order, "approve_payments", approved_by)
        transition_order(
            order,
            "approve_payments",
            user_id=approved_by,
            details={"total_paid": str(total_paid), "total_amount": str(total_amount)},
        )
        session.flush()
        _log_and_notify(session, order, "approve_payments", "sales.ready_for_dispatch")
        return order


def dispatch_order(
    order_id: int,
    dispatched_by: str,
    method: str,
    tracking_number: Optional[str] = None,
) -> Order:
    """Dispatch an order that is READY_FOR_DISPATCH.

    Raises:
        ValidationError: If method is empty
        AuthorizationError: If dispatched_by lacks the dispatch permission
        StateConflictError: If the order is not READY_FOR_DISPATCH
    """
    is_valid, error = validate_required_string(method, "method")
    if not is_valid:
        raise ValidationError([error], field="method")
    require_permission(dispatched_by, PERMISSION_DISPATCH)

    with order_scope(order_id) as session:
        order = get_order_for_update(order_id, session)
        ORDER_FSM.next_state(order.status, "dispatch", entity_id=order.id)

        _advance_items(order, "dispatch", dispatched_by)
        order.dispatch_method = method.strip()
        order.tracking_number = tracking_number
        order.dispatched_at = utc_now()
        order.dispatched_by = dispatched_by
        transition_order(
            order,
            "dispatch",
            user_id=dispatched_by,
            details={"method": order.dispatch_method, "tracking_number": tracking_number},
        )
        session.flush()
        _log_and_notify(session, order, "dispatch_order", "dispatch.dispatched")
        return order


def complete_order(order_id: int, completed_by: str, notes: Optional[str] = None) -> Order:
    """Confirm delivery of a dispatched order (DISPATCHED -> COMPLETED).

    Every item of the order moves to COMPLETED with it.

    Raises:
        AuthorizationError: If completed_by lacks the dispatch permission
        StateConflictError: If the order is not DISPATCHED
    """
    require_permission(completed_by, PERMISSION_DISPATCH)

    with order_scope(order_id) as session:
        order = get_order_for_update(order_id, session)
        ORDER_FSM.next_state(order.status, "complete", entity_id=order.id)

        _advance_items(order, "complete", completed_by, details={"notes": notes} if notes else None)
        order.completed_at = utc_now()
        order.completed_by = completed_by
        transition_order(
            order,
            "complete",
            user_id=completed_by,
            details={"notes": notes} if notes else None,
        )
        session.flush()
        _log_and_notify(session, order, "complete_order", "dispatch.completed")
        return order


# =============================================================================
# Queries
# =============================================================================


def _orders_in(status: OrderStatus, session: Session = None, newest_first=None) -> List[Order]:
    def _impl(session: Session) -> List[Order]:
        query = session.query(Order).filter(Order.status == status)
        if newest_first is not None:
            return query.order_by(newest_first.desc(), Order.id.desc()).all()
        return query.order_by(Order.id).all()

    if session is not None:
        return _impl(session)

    with session_scope() as session:
        return _impl(session)


def get_approval_queue(session: Session = None) -> List[Order]:
    """Orders ready to be sent to the client."""
    return _orders_in(OrderStatus.READY_FOR_CLIENT_APPROVAL, session)


def get_awaiting_response(session: Session = None) -> List[Order]:
    """Orders waiting for the client's answer."""
    return _orders_in(OrderStatus.AWAITING_CLIENT_APPROVAL, session)


def get_awaiting_payment(session: Session = None) -> List[Order]:
    """Orders approved by the client and waiting for payment clearance."""
    return _orders_in(OrderStatus.AWAITING_ACCOUNT_APPROVAL, session)


def get_dispatch_queue(session: Session = None) -> List[Order]:
    return _orders_in(OrderStatus.READY_FOR_DISPATCH, session)


def get_dispatched_orders(session: Session = None) -> List[Order]:
    """Orders on their way to the client, most recently dispatched first."""
    return _orders_in(OrderStatus.DISPATCHED, session, newest_first=Order.dispatched_at)


def get_completed_orders(session: Session = None) -> List[Order]:
    """Delivered orders, most recently completed first."""
    return _orders_in(OrderStatus.COMPLETED, session, newest_first=Order.completed_at)


def get_dispatch_stats(session: Session = None) -> Dict[str, int]:
    """Counts for the dispatch desk; "dispatched_today" uses the UTC date."""

    def _impl(session: Session) -> Dict[str, int]:
        counts = dict(
            session.query(Order.status, func.count(Order.id)).group_by(Order.status).all()
        )
        today = utc_now().date()
        shipped = (
            session.query(Order.dispatched_at)
            .filter(
                Order.status.in_([OrderStatus.DISPATCHED, OrderStatus.COMPLETED]),
                Order.dispatched_at.isnot(None),
            )
            .all()
        )
        return {
            "ready_for_dispatch": counts.get(OrderStatus.READY_FOR_DISPATCH, 0),
            "dispatched_today": sum(
                1 for (dispatched_at,) in shipped if dispatched_at.date() == today
            ),
            "total_dispatched": counts.get(OrderStatus.DISPATCHED, 0),
            "total_completed": counts.get(OrderStatus.COMPLETED, 0),
        }

    if session is not None:
        return _impl(session)

    with session_scope() as session:
        return _impl(session)


def get_sales_stats(session: Session = None) -> Dict[str, int]:
    """Order counts per sales-stage status."""

    def _impl(session: Session) -> Dict[str, int]:
        counts = dict(
            session.query(Order.status, func.count(Order.id)).group_by(Order.status).all()
        )
        return {
            "ready_for_client_approval": counts.get(OrderStatus.READY_FOR_CLIENT_APPROVAL, 0),
            "awaiting_client_approval": counts.get(OrderStatus.AWAITING_CLIENT_APPROVAL, 0),
            "awaiting_account_approval": counts.get(OrderStatus.AWAITING_ACCOUNT_APPROVAL, 0),
            "ready_for_dispatch": counts.get(OrderStatus.READY_FOR_DISPATCH, 0),
            "dispatched": counts.get(OrderStatus.DISPATCHED, 0),
            "completed": counts.get(OrderStatus.COMPLETED, 0),
            "cancelled": counts.get(OrderStatus.CANCELLED_BY_CLIENT, 0),
        }

    if session is not None:
        return _impl(session)

    with session_scope() as session:
        return _impl(session)
