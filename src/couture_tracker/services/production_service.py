"""Production Service - production head assignment, section production and tasks.

Section flow:
    READY_FOR_PRODUCTION | REWORK_REQUIRED -> IN_PRODUCTION
    IN_PRODUCTION -> PRODUCTION_COMPLETED -> QA_PENDING

Each order item gets one production head, picked by strict round robin the
first time one of its sections is ready for production (or needs rework).

Once a section is IN_PRODUCTION its production head may split the work into a
sequence of tasks, one worker each. Only the first task starts READY;
completing a task makes the next one READY, and completing the last one moves
the section to PRODUCTION_COMPLETED. A section with an unfinished plan cannot
be completed directly. Restarting production (after rework or a fresh start)
retires the old plan.

Session Management Pattern:
- All public functions accept session=None parameter
- If session provided, use it directly
- If session is None, take the order item lock and create a new session
  via session_scope(); operations that may assign a production head also
  hold the round-robin lock until commit
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..models.enums import ProductionTaskStatus, SectionStatus
from ..models.order_item import OrderItem
from ..models.production_task import ProductionTask
from ..models.round_robin import ProductionAssignment
from ..models.section_state import SectionEvent, SectionState
from ..utils.constants import PRODUCTION_TASK_TYPES
from ..utils.datetime_utils import minutes_between, to_iso, utc_now
from ..utils.validators import validate_choice, validate_required_string
from .database import order_item_lock, queue_notification, round_robin_lock, session_scope
from .exceptions import (
    AuthorizationError,
    ProductionTaskNotFound,
    StateConflictError,
    ValidationError,
)
from .logging_utils import get_service_logger, log_operation
from .order_item_service import (
    add_order_item_note,
    get_order_item,
    get_order_item_for_update,
    get_section_or_raise,
    refresh_order_item_status,
    resolve_sections_for_event,
    transition_section,
)
from .round_robin_service import advance_round_robin, peek_next_production_head

logger = get_service_logger(__name__)

_ASSIGNABLE_SECTION_STATES = (SectionStatus.READY_FOR_PRODUCTION, SectionStatus.REWORK_REQUIRED)


# =============================================================================
# Production head assignment
# =============================================================================


def _assign_head(item: OrderItem, session: Session) -> ProductionAssignment:
    head_id = advance_round_robin(session=session)
    assignment = ProductionAssignment(order_item_id=item.id, production_head_id=head_id)
    item.production_assignment = assignment
    session.add(assignment)
    add_order_item_note(item, "production_head_assigned", details={"production_head_id": head_id})
    session.flush()

    queue_notification(
        session,
        "production.assigned",
        {"order_item_id": item.id, "production_head_id": head_id},
    )
    log_operation(
        logger,
        operation="assign_production_head",
        outcome="success",
        order_item_id=item.id,
        production_head_id=head_id,
    )
    return assignment


def _assign_impl(order_item_id: int, session: Session) -> ProductionAssignment:
    item = get_order_item_for_update(order_item_id, session)

    if item.production_assignment is not None:
        raise StateConflictError(
            "Order item",
            item.id,
            item.status,
            f"assign production head (already assigned to "
            f"{item.production_assignment.production_head_id})",
        )
    if not any(section.status in _ASSIGNABLE_SECTION_STATES for section in item.sections):
        raise StateConflictError(
            "Order item",
            item.id,
            item.status,
            "assign production head (needs a section ready for production)",
        )
    return _assign_head(item, session)


def assign_production_head(order_item_id: int, session: Session = None) -> ProductionAssignment:
    """Assign the next production head in the rotation to an order item.

    Transaction boundary: Multi-step operation (atomic).
    The round-robin cursor advances in the same transaction as the assignment,
    and the round-robin lock is held until that transaction commits.

    Raises:
        StateConflictError: If the item already has a production head or no
            section is ready for production
        ValidationError: If the roster is empty
    """
    if session is not None:
        return _assign_impl(order_item_id, session)

    with order_item_lock(order_item_id), round_robin_lock(), session_scope() as session:
        return _assign_impl(order_item_id, session)


def ensure_production_head(item: OrderItem, session: Session) -> Optional[ProductionAssignment]:
    """Assign a production head if the item needs one and has none.

    With an empty roster the item is left unassigned and a warning is logged;
    the assignment can be made later with assign_production_head().

    Transaction boundary: Inherits session from caller. The caller holds
    round_robin_lock() until its transaction commits.
    """
    if item.production_assignment is not None:
        return item.production_assignment
    if not any(section.status in _ASSIGNABLE_SECTION_STATES for section in item.sections):
        return None
    if peek_next_production_head(session=session) is None:
        log_operation(
            logger,
            operation="assign_production_head",
            outcome="no_production_heads",
            level=logging.WARNING,
            order_item_id=item.id,
        )
        return None
    return _assign_head(item, session)


def get_production_head(order_item_id: int, session: Session = None) -> Optional[str]:
    """Production head assigned to the order item, or None."""

    def _impl(session: Session) -> Optional[str]:
        assignment = (
            session.query(ProductionAssignment)
            .filter(ProductionAssignment.order_item_id == order_item_id)
            .first()
        )
        return assignment.production_head_id if assignment is not None else None

    if session is not None:
        return _impl(session)

    with session_scope() as session:
        return _impl(session)


def get_production_head_assignments(
    production_head_id: str, session: Session = None
) -> List[OrderItem]:
    """Order items assigned to the production head, oldest first."""

    def _impl(session: Session) -> List[OrderItem]:
        return (
            session.query(OrderItem)
            .join(ProductionAssignment, ProductionAssignment.order_item_id == OrderItem.id)
            .filter(ProductionAssignment.production_head_id == production_head_id)
            .order_by(OrderItem.id)
            .all()
        )

    if session is not None:
        return _impl(session)

    with session_scope() as session:
        return _impl(session)


# =============================================================================
# Section production
# =============================================================================


def _active_plan(order_item_id: int, section_name: str, session: Session) -> List[ProductionTask]:
    return (
        session.query(ProductionTask)
        .filter(
            ProductionTask.order_item_id == order_item_id,
            ProductionTask.section_name == section_name,
            ProductionTask.is_active.is_(True),
        )
        .order_by(ProductionTask.sequence_order)
        .all()
    )


def _retire_plans(item: OrderItem, sections: List[SectionState], session: Session) -> int:
    """Deactivate task plans left over from an earlier production pass."""
    retired = 0
    for section in sections:
        for task in _active_plan(item.id, section.name, session):
            task.is_active = False
            retired += 1
    return retired


def _apply_section_event(
    order_item_id: int,
    sections: List[str],
    user_id: Optional[str],
    event: str,
    action: str,
    session: Session,
) -> OrderItem:
    item = get_order_item_for_update(order_item_id, session)
    resolved = resolve_sections_for_event(item, sections, event)

    if event == "start_production":
        if ensure_production_head(item, session) is None:
            raise StateConflictError(
                "Order item",
                item.id,
                item.status,
                "start production (no production head assigned)",
            )
        _retire_plans(item, resolved, session)
    elif event == "complete_production":
        for section in resolved:
            plan = _active_plan(item.id, section.name, session)
            if any(not task.is_completed for task in plan):
                raise StateConflictError(
                    f"Section '{section.name}' of order item",
                    item.id,
                    section.status,
                    "complete production (production tasks are unfinished)",
                )

    for section in resolved:
        transition_section(section, event, user_id=user_id, action=action)

    session.flush()
    refresh_order_item_status(item, user_id=user_id, action=action)

    names = [section.name for section in resolved]
    queue_notification(session, f"section.{action}", {"order_item_id": item.id, "sections": names})
    log_operation(
        logger,
        operation=action,
        outcome="success",
        order_item_id=item.id,
        sections=names,
    )
    return item


def start_section_production(
    order_item_id: int, sections: List[str], user_id: str, session: Session = None
) -> OrderItem:
    """Start production (READY_FOR_PRODUCTION | REWORK_REQUIRED -> IN_PRODUCTION).

    Task plans from an earlier production pass of these sections are retired.

    Raises:
        StateConflictError: If a section is in another state or no production
            head can be assigned
    """
    if session is not None:
        return _apply_section_event(
            order_item_id, sections, user_id, "start_production", "production_started", session
        )

    with order_item_lock(order_item_id), round_robin_lock(), session_scope() as session:
        return _apply_section_event(
            order_item_id, sections, user_id, "start_production", "production_started", session
        )


def complete_section_production(
    order_item_id: int, sections: List[str], user_id: str, session: Session = None
) -> OrderItem:
    """Finish production (IN_PRODUCTION -> PRODUCTION_COMPLETED).

    Sections produced through a task plan complete with their last task instead.

    Raises:
        StateConflictError: If a section is not IN_PRODUCTION or has
            unfinished production tasks
    """
    if session is not None:
        return _apply_section_event(
            order_item_id, sections, user_id, "complete_production", "production_completed", session
        )

    with order_item_lock(order_item_id), session_scope() as session:
        return _apply_section_event(
            order_item_id, sections, user_id, "complete_production", "production_completed", session
        )


def send_section_to_qa(
    order_item_id: int, section: str, user_id: str, session: Session = None
) -> OrderItem:
    """Hand a finished section to QA (PRODUCTION_COMPLETED -> QA_PENDING).

    Raises:
        StateConflictError: If the section is not PRODUCTION_COMPLETED
    """
    if session is not None:
        return _apply_section_event(
            order_item_id, [section], user_id, "send_to_qa", "sent_to_qa", session
        )

    with order_item_lock(order_item_id), session_scope() as session:
        return _apply_section_event(
            order_item_id, [section], user_id, "send_to_qa", "sent_to_qa", session
        )


# =============================================================================
# Production tasks
# =============================================================================


def _validate_task_plan(tasks: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Check a task plan and return it normalized and sorted by sequence."""
    if not tasks:
        raise ValidationError(["tasks: At least one task is required"], field="tasks")

    errors = []
    plan = []
    for index, task in enumerate(tasks):
        label = f"tasks[{index}]"
        task_type = task.get("task_type")
        is_valid, error = validate_choice(task_type, PRODUCTION_TASK_TYPES, f"{label}.task_type")
        if not is_valid:
            errors.append(error)

        custom_name = (task.get("custom_task_name") or "").strip() or None
        if task_type == "CUSTOM" and custom_name is None:
            errors.append(f"{label}.custom_task_name: Required for CUSTOM tasks")

        worker_id = task.get("worker_id")
        is_valid, error = validate_required_string(worker_id, f"{label}.worker_id")
        if not is_valid:
            errors.append(error)

        sequence = task.get("sequence_order", index + 1)
        if isinstance(sequence, bool) or not isinstance(sequence, int) or sequence < 1:
            errors.append(f"{label}.sequence_order: Must be a positive whole number")

        plan.append(
            {
                "task_type": task_type,
                "custom_task_name": custom_name if task_type == "CUSTOM" else None,
                "worker_id": worker_id.strip() if isinstance(worker_id, str) else worker_id,
                "sequence_order": sequence,
            }
        )

    if not errors:
        sequences = [step["sequence_order"] for step in plan]
        if len(set(sequences)) != len(sequences):
            errors.append("tasks: Each task needs a distinct sequence_order")

    if errors:
        raise ValidationError(errors, field=errors[0].split(":")[0])
    return sorted(plan, key=lambda step: step["sequence_order"])


def _record_task_event(
    section: SectionState,
    action: str,
    user_id: Optional[str],
    details: Dict[str, Any],
) -> None:
    section.events.append(
        SectionEvent(
            action=action,
            round=section.current_round,
            user_id=user_id,
            details=details,
        )
    )


def _create_tasks_impl(
    order_item_id: int,
    section_name: str,
    plan: List[Dict[str, Any]],
    assigned_by: str,
    notes: Optional[str],
    session: Session,
) -> List[ProductionTask]:
    item = get_order_item_for_update(order_item_id, session)
    section = get_section_or_raise(item, section_name)
    entity = f"Section '{section.name}' of order item"

    if section.status != SectionStatus.IN_PRODUCTION:
        raise StateConflictError(
            entity, item.id, section.status, "plan production tasks (must be in IN_PRODUCTION state)"
        )
    assignment = item.production_assignment
    if assignment is None:
        raise StateConflictError(
            "Order item", item.id, item.status, "plan production tasks (no production head assigned)"
        )
    if assignment.production_head_id != assigned_by:
        raise AuthorizationError(
            assigned_by,
            "production.plan",
            f"Order item {item.id} is assigned to production head {assignment.production_head_id}",
        )
    if _active_plan(item.id, section.name, session):
        raise StateConflictError(
            entity, item.id, section.status, "plan production tasks (a plan already exists)"
        )

    created = []
    for index, step in enumerate(plan):
        task = ProductionTask(
            order_item_id=item.id,
            section_name=section.name,
            section_round=section.current_round,
            task_type=step["task_type"],
            custom_task_name=step["custom_task_name"],
            sequence_order=step["sequence_order"],
            assigned_to=step["worker_id"],
            assigned_by=assigned_by,
            status=ProductionTaskStatus.READY if index == 0 else ProductionTaskStatus.PENDING,
            notes=notes,
        )
        session.add(task)
        created.append(task)
    session.flush()

    _record_task_event(
        section,
        "production_tasks_planned",
        assigned_by,
        {"tasks": [task.id for task in created], "workers": [task.assigned_to for task in created]},
    )
    queue_notification(
        session,
        "production.task_ready",
        {"order_item_id": item.id, "task_id": created[0].id, "worker_id": created[0].assigned_to},
    )
    log_operation(
        logger,
        operation="create_section_tasks",
        outcome="success",
        order_item_id=item.id,
        section=section.name,
        task_count=len(created),
    )
    return created


def create_section_tasks(
    order_item_id: int,
    section: str,
    tasks: List[Dict[str, Any]],
    assigned_by: str,
    notes: Optional[str] = None,
    session: Session = None,
) -> List[ProductionTask]:
    """Split a section's production into sequenced worker tasks.

    Transaction boundary: Multi-step operation (atomic).

    Args:
        order_item_id: Order item the section belongs to
        section: Section name (case-insensitive)
        tasks: Steps as dicts with task_type, worker_id, optional
            custom_task_name (required for CUSTOM) and sequence_order
            (defaults to the list position, 1-based)
        assigned_by: The item's production head
        notes: Instructions shared by every task

    Returns:
        Created tasks in sequence order; the first is READY, the rest PENDING

    Raises:
        ValidationError: If the plan is empty or a step is invalid
        StateConflictError: If the section is not IN_PRODUCTION, the item has
            no production head, or an active plan already exists
        AuthorizationError: If assigned_by is not the item's production head
    """
    plan = _validate_task_plan(tasks)

    if session is not None:
        return _create_tasks_impl(order_item_id, section, plan, assigned_by, notes, session)

    with order_item_lock(order_item_id), session_scope() as session:
        return _create_tasks_impl(order_item_id, section, plan, assigned_by, notes, session)


def _get_task_for_update(item: OrderItem, task_id: int, session: Session) -> ProductionTask:
    task = (
        session.query(ProductionTask)
        .filter(ProductionTask.id == task_id, ProductionTask.order_item_id == item.id)
        .with_for_update()
        .first()
    )
    if task is None:
        raise ProductionTaskNotFound(task_id, item.id)
    if not task.is_active:
        raise StateConflictError(
            "Production task", task.id, task.status, "work on a task from a retired plan"
        )
    return task


def _require_worker(task: ProductionTask, user_id: str) -> None:
    if task.assigned_to != user_id:
        raise AuthorizationError(
            user_id,
            "production.task",
            f"Task {task.id} is assigned to {task.assigned_to}",
        )


def _start_task_impl(order_item_id: int, task_id: int, user_id: str, session: Session) -> ProductionTask:
    item = get_order_item_for_update(order_item_id, session)
    task = _get_task_for_update(item, task_id, session)
    _require_worker(task, user_id)

    if task.status != ProductionTaskStatus.READY:
        raise StateConflictError("Production task", task.id, task.status, "start (must be in READY state)")
    section = get_section_or_raise(item, task.section_name)
    if section.status != SectionStatus.IN_PRODUCTION:
        raise StateConflictError(
            f"Section '{section.name}' of order item",
            item.id,
            section.status,
            "start production task (must be in IN_PRODUCTION state)",
        )

    task.status = ProductionTaskStatus.IN_PROGRESS
    task.started_at = utc_now()
    _record_task_event(
        section,
        "production_task_started",
        user_id,
        {"task_id": task.id, "task": task.display_name, "sequence_order": task.sequence_order},
    )
    session.flush()

    log_operation(
        logger,
        operation="start_task",
        outcome="success",
        order_item_id=item.id,
        task_id=task.id,
        section=section.name,
    )
    return task


def start_task(
    order_item_id: int, task_id: int, user_id: str, session: Session = None
) -> ProductionTask:
    """Start a READY task (READY -> IN_PROGRESS).

    Raises:
        ProductionTaskNotFound: If the task is not part of the order item
        AuthorizationError: If user_id is not the task's worker
        StateConflictError: If the task is not READY, belongs to a retired plan,
            or the section is no longer IN_PRODUCTION
    """
    if session is not None:
        return _start_task_impl(order_item_id, task_id, user_id, session)

    with order_item_lock(order_item_id), session_scope() as session:
        return _start_task_impl(order_item_id, task_id, user_id, session)


def _complete_task_impl(
    order_item_id: int, task_id: int, user_id: str, session: Session
) -> ProductionTask:
    item = get_order_item_for_update(order_item_id, session)
    task = _get_task_for_update(item, task_id, session)
    _require_worker(task, user_id)

    if task.status != ProductionTaskStatus.IN_PROGRESS:
        raise StateConflictError(
            "Production task", task.id, task.status, "complete (must be in IN_PROGRESS state)"
        )
    section = get_section_or_raise(item, task.section_name)

    task.status = ProductionTaskStatus.COMPLETED
    task.completed_at = utc_now()
    task.duration_minutes = minutes_between(task.started_at, task.completed_at)
    _record_task_event(
        section,
        "production_task_completed",
        user_id,
        {
            "task_id": task.id,
            "task": task.display_name,
            "sequence_order": task.sequence_order,
            "duration_minutes": task.duration_minutes,
        },
    )
    session.flush()

    plan = _active_plan(item.id, section.name, session)
    following = [
        other
        for other in plan
        if other.sequence_order > task.sequence_order
        and other.status == ProductionTaskStatus.PENDING
    ]
    if following:
        next_task = following[0]
        next_task.status = ProductionTaskStatus.READY
        queue_notification(
            session,
            "production.task_ready",
            {"order_item_id": item.id, "task_id": next_task.id, "worker_id": next_task.assigned_to},
        )

    section_finished = all(other.is_completed for other in plan)
    if section_finished:
        transition_section(
            section,
            "complete_production",
            user_id=user_id,
            action="production_completed",
            details={"tasks": len(plan)},
        )
        session.flush()
        refresh_order_item_status(item, user_id=user_id, action="production_completed")
        queue_notification(
            session,
            "section.production_completed",
            {"order_item_id": item.id, "sections": [section.name]},
        )

    session.flush()
    log_operation(
        logger,
        operation="complete_task",
        outcome="section_completed" if section_finished else "success",
        order_item_id=item.id,
        task_id=task.id,
        section=section.name,
        duration_minutes=task.duration_minutes,
    )
    return task


def complete_task(
    order_item_id: int, task_id: int, user_id: str, session: Session = None
) -> ProductionTask:
    """Finish an IN_PROGRESS task and release the next one in the sequence.

    Transaction boundary: Multi-step operation (atomic).
        1. Task -> COMPLETED with its duration
        2. Next PENDING task in the plan -> READY
        3. If every task of the plan is COMPLETED, the section moves to
           PRODUCTION_COMPLETED and the item status is re-derived

    Raises:
        ProductionTaskNotFound: If the task is not part of the order item
        AuthorizationError: If user_id is not the task's worker
        StateConflictError: If the task is not IN_PROGRESS or belongs to a
            retired plan
    """
    if session is not None:
        return _complete_task_impl(order_item_id, task_id, user_id, session)

    with order_item_lock(order_item_id), session_scope() as session:
        return _complete_task_impl(order_item_id, task_id, user_id, session)


def get_section_tasks(order_item_id: int, section: str, session: Session = None) -> List[ProductionTask]:
    """Active task plan of a section, in sequence order.

    Raises:
        OrderItemNotFound: If the order item does not exist
        SectionNotFound: If the item has no such section
    """

    def _impl(session: Session) -> List[ProductionTask]:
        item = get_order_item(order_item_id, session=session)
        section_state = get_section_or_raise(item, section)
        return _active_plan(item.id, section_state.name, session)

    if session is not None:
        return _impl(session)

    with session_scope() as session:
        return _impl(session)


def _blocking_task(task: ProductionTask, session: Session) -> Optional[dict]:
    if task.status != ProductionTaskStatus.PENDING:
        return None
    earlier = [
        other
        for other in _active_plan(task.order_item_id, task.section_name, session)
        if other.sequence_order < task.sequence_order
    ]
    if not earlier:
        return None
    return earlier[-1].blocking_summary()


def get_worker_tasks(
    worker_id: str, include_completed: bool = False, session: Session = None
) -> List[Dict[str, Any]]:
    """Active tasks of a worker with the task each PENDING one is waiting for.

    Returns:
        List of {"task": ProductionTask, "blocking_task": dict or None},
        ordered by order item, section and sequence
    """

    def _impl(session: Session) -> List[Dict[str, Any]]:
        query = session.query(ProductionTask).filter(
            ProductionTask.assigned_to == worker_id,
            ProductionTask.is_active.is_(True),
        )
        if not include_completed:
            query = query.filter(ProductionTask.status != ProductionTaskStatus.COMPLETED)
        tasks = query.order_by(
            ProductionTask.order_item_id,
            ProductionTask.section_name,
            ProductionTask.sequence_order,
        ).all()
        return [{"task": task, "blocking_task": _blocking_task(task, session)} for task in tasks]

    if session is not None:
        return _impl(session)

    with session_scope() as session:
        return _impl(session)


def get_section_timeline(order_item_id: int, section: str, session: Session = None) -> Dict[str, Any]:
    """Production view of one section: status, round, start time and active tasks.

    Raises:
        OrderItemNotFound: If the order item does not exist
        SectionNotFound: If the item has no such section
    """

    def _impl(session: Session) -> Dict[str, Any]:
        item = get_order_item(order_item_id, session=session)
        section_state = get_section_or_raise(item, section)
        started = [event for event in section_state.events if event.action == "production_started"]
        return {
            "section": section_state.name,
            "status": section_state.status.value,
            "round": section_state.current_round,
            "production_started_at": to_iso(started[-1].created_at) if started else None,
            "tasks": _active_plan(item.id, section_state.name, session),
        }

    if session is not None:
        return _impl(session)

    with session_scope() as session:
        return _impl(session)
