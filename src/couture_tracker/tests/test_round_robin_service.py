"""Unit tests for round_robin_service.py."""

import threading
import time

import pytest

from couture_tracker.models.round_robin import RoundRobinCursor
from couture_tracker.services import production_service
from couture_tracker.services.collaborators import (
    AllowAllIdentityService,
    configure_collaborators,
)
from couture_tracker.services.database import held_lock_count, session_scope
from couture_tracker.services.dyeing_service import accept_dyeing, complete_dyeing, start_dyeing
from couture_tracker.services.exceptions import ValidationError
from couture_tracker.services.production_service import get_production_head
from couture_tracker.services.round_robin_service import (
    advance_round_robin,
    get_cursor_state,
    peek_next_production_head,
    reset_round_robin,
)


class TestAdvanceRoundRobin:
    """Tests for advance_round_robin()."""

    def test_strict_rotation(self, test_db):
        """Should wrap around the roster in order."""
        assigned = [advance_round_robin() for _ in range(5)]

        assert assigned == ["head-a", "head-b", "head-c", "head-a", "head-b"]

    def test_peek_does_not_move(self, test_db):
        """Should report the next head without advancing."""
        assert peek_next_production_head() == "head-a"
        assert peek_next_production_head() == "head-a"

        advance_round_robin()
        assert peek_next_production_head() == "head-b"

    def test_empty_roster(self, test_db):
        """Should raise ValidationError when there is nobody to assign."""
        configure_collaborators(identity=AllowAllIdentityService())

        assert peek_next_production_head() is None
        with pytest.raises(ValidationError) as exc_info:
            advance_round_robin()
        assert "No production heads available" in str(exc_info.value)

    def test_shrinking_roster_wraps(self, test_db):
        """Should take the cursor modulo the current roster size."""
        for _ in range(3):
            advance_round_robin()
        configure_collaborators(identity=AllowAllIdentityService(production_heads=["head-a", "head-b"]))

        assert advance_round_robin() == "head-b"

    def test_separate_keys(self, test_db):
        """Should keep one cursor per roster key."""
        advance_round_robin()
        advance_round_robin()

        assert advance_round_robin(key="alterations") == "head-a"
        assert advance_round_robin() == "head-c"


class TestCursorState:
    """Tests for get_cursor_state() and reset_round_robin()."""

    def test_initial_state(self, test_db):
        """Should describe an unused cursor."""
        state = get_cursor_state()

        assert state["key"] == "production_heads"
        assert state["last_assigned_index"] == -1
        assert state["last_assigned_user_id"] is None
        assert state["roster"] == ["head-a", "head-b", "head-c"]
        assert state["next"] == "head-a"

    def test_after_assignments(self, test_db):
        """Should remember the last index and user."""
        advance_round_robin()
        advance_round_robin()

        state = get_cursor_state()
        assert state["last_assigned_index"] == 1
        assert state["last_assigned_user_id"] == "head-b"
        assert state["next"] == "head-c"

    def test_reset(self, test_db):
        """Should start the rotation over."""
        advance_round_robin()
        advance_round_robin()

        reset_round_robin()

        assert get_cursor_state()["last_assigned_index"] == -1
        assert advance_round_robin() == "head-a"


def _run_in_threads(target, args_list):
    errors = []

    def run(*args):
        try:
            target(*args)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=run, args=args) for args in args_list]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return errors


class TestConcurrentRotation:
    """Concurrent assignments against a shared database file."""

    def test_cursor_seeded_at_init(self, file_db):
        """Should create the production head cursor with the schema."""
        with session_scope() as session:
            rows = session.query(RoundRobinCursor).filter(
                RoundRobinCursor.key == "production_heads"
            ).count()

        assert rows == 1
        assert get_cursor_state()["last_assigned_index"] == -1

    def test_parallel_advances(self, file_db):
        """Should hand out each position exactly once."""
        assigned = []
        lock = threading.Lock()

        def advance():
            head = advance_round_robin()
            with lock:
                assigned.append(head)

        errors = _run_in_threads(advance, [() for _ in range(6)])

        assert errors == []
        assert sorted(assigned) == ["head-a", "head-a", "head-b", "head-b", "head-c", "head-c"]
        assert get_cursor_state()["last_assigned_index"] == 2
        assert held_lock_count() == 0

    def test_parallel_dyeing_completions(self, file_workflow, monkeypatch):
        """Should give two items finishing dyeing at once different heads."""
        item_ids = []
        for _ in range(2):
            _, (order_item_id,) = file_workflow.create_order()
            file_workflow.packet_approved(order_item_id)
            sections = file_workflow.sections_of(order_item_id)
            accept_dyeing(order_item_id, sections, "dyer-1")
            start_dyeing(order_item_id, sections, "dyer-1")
            item_ids.append((order_item_id, sections))

        original = production_service.advance_round_robin

        def slow_advance(*args, **kwargs):
            head = original(*args, **kwargs)
            # Keep the transaction open so an unlocked reader would see the old cursor
            time.sleep(0.2)
            return head

        monkeypatch.setattr(production_service, "advance_round_robin", slow_advance)

        errors = _run_in_threads(
            lambda order_item_id, sections: complete_dyeing(order_item_id, sections, "dyer-1"),
            item_ids,
        )

        assert errors == []
        heads = sorted(get_production_head(order_item_id) for order_item_id, _ in item_ids)
        assert heads == ["head-a", "head-b"]
        assert get_cursor_state()["last_assigned_index"] == 1
