"""Round Robin Service - strict rotation over the production head roster.

A single persisted cursor per roster key remembers the index of the last
member assigned. Advancing reads the cursor under a row lock and the
process-wide roster lock, picks (last + 1) % len(roster) and persists the new
position. There is no load awareness.

A caller that advances inside its own transaction must already hold
round_robin_lock() and keep holding it until that transaction commits;
otherwise a second caller can read the cursor before the first commits.

Session Management Pattern:
- All public functions accept session=None parameter
- If session provided, use it directly
- If session is None, create a new session via session_scope()
"""

from typing import List, Optional

from sqlalchemy.orm import Session

from ..models.round_robin import RoundRobinCursor
from ..utils.constants import ROSTER_PRODUCTION_HEADS
from .collaborators import call_external, get_collaborators
from .database import round_robin_lock, session_scope
from .exceptions import ValidationError
from .logging_utils import get_service_logger, log_operation

logger = get_service_logger(__name__)


def _get_roster() -> List[str]:
    identity = get_collaborators().identity
    roster = call_external("identity", identity.get_production_heads)
    return list(roster or [])


def _get_cursor(key: str, session: Session, for_update: bool = False) -> Optional[RoundRobinCursor]:
    query = session.query(RoundRobinCursor).filter(RoundRobinCursor.key == key)
    if for_update:
        query = query.with_for_update()
    return query.first()


def _get_or_create_cursor(key: str, session: Session) -> RoundRobinCursor:
    cursor = _get_cursor(key, session, for_update=True)
    if cursor is None:
        cursor = RoundRobinCursor(key=key, last_assigned_index=-1)
        session.add(cursor)
        session.flush()
    return cursor


def _next_index(last_index: int, roster_size: int) -> int:
    return (last_index + 1) % roster_size


def _peek_impl(key: str, session: Session) -> Optional[str]:
    roster = _get_roster()
    if not roster:
        return None
    cursor = _get_cursor(key, session)
    last_index = cursor.last_assigned_index if cursor is not None else -1
    return roster[_next_index(last_index, len(roster))]


def peek_next_production_head(
    key: str = ROSTER_PRODUCTION_HEADS, session: Session = None
) -> Optional[str]:
    """Return who would be assigned next without moving the cursor.

    Transaction boundary: Read-only operation.

    Returns:
        User id of the next production head, or None if the roster is empty
    """
    if session is not None:
        return _peek_impl(key, session)

    with session_scope() as session:
        return _peek_impl(key, session)


def _advance_impl(key: str, session: Session) -> str:
    roster = _get_roster()
    if not roster:
        raise ValidationError(["production_heads: No production heads available"], field=key)

    cursor = _get_or_create_cursor(key, session)
    index = _next_index(cursor.last_assigned_index, len(roster))
    cursor.last_assigned_index = index
    cursor.last_assigned_user_id = roster[index]
    session.flush()

    log_operation(
        logger,
        operation="advance_round_robin",
        outcome="success",
        roster_key=key,
        index=index,
        user_id=roster[index],
    )
    return roster[index]


def advance_round_robin(key: str = ROSTER_PRODUCTION_HEADS, session: Session = None) -> str:
    """Pick the next roster member and persist the new cursor position.

    Transaction boundary: Single-step write under the roster lock.
    With a session passed in, the caller holds round_robin_lock() through commit.

    Returns:
        User id of the assigned production head

    Raises:
        ValidationError: If the roster is empty
        ExternalServiceError: If the identity service fails
    """
    with round_robin_lock(key):
        if session is not None:
            return _advance_impl(key, session)

        with session_scope() as session:
            return _advance_impl(key, session)


def _reset_impl(key: str, session: Session) -> None:
    cursor = _get_cursor(key, session, for_update=True)
    if cursor is not None:
        cursor.last_assigned_index = -1
        cursor.last_assigned_user_id = None
        session.flush()
    log_operation(logger, operation="reset_round_robin", outcome="success", roster_key=key)


def reset_round_robin(key: str = ROSTER_PRODUCTION_HEADS, session: Session = None) -> None:
    """Move the cursor back before the first roster member."""
    with round_robin_lock(key):
        if session is not None:
            return _reset_impl(key, session)

        with session_scope() as session:
            return _reset_impl(key, session)


def get_cursor_state(key: str = ROSTER_PRODUCTION_HEADS, session: Session = None) -> dict:
    """Return the cursor position, roster and next member (for display)."""

    def _impl(session: Session) -> dict:
        cursor = _get_cursor(key, session)
        roster = _get_roster()
        return {
            "key": key,
            "last_assigned_index": cursor.last_assigned_index if cursor is not None else -1,
            "last_assigned_user_id": cursor.last_assigned_user_id if cursor is not None else None,
            "roster": roster,
            "next": _peek_impl(key, session),
        }

    if session is not None:
        return _impl(session)

    with session_scope() as session:
        return _impl(session)
