"""Unit tests for order_item_service.py.

Tests cover:
- Order intake and validation
- Status derivation from section statuses and packet state
- Merged order item timelines
- Not-found handling and session management patterns
"""

from datetime import date
from decimal import Decimal
from types import SimpleNamespace

import pytest

from couture_tracker.models.enums import (
    OrderItemStatus,
    OrderStatus,
    PacketStatus,
    SectionStatus,
)
from couture_tracker.services.database import session_scope
from couture_tracker.services.exceptions import (
    OrderItemNotFound,
    OrderNotFound,
    SectionNotFound,
    StateConflictError,
    ValidationError,
)
from couture_tracker.services.order_item_service import (
    create_order,
    derive_order_item_status,
    get_order,
    get_order_item,
    get_order_item_for_update,
    get_order_item_timeline,
    list_order_items,
    resolve_sections_for_event,
)
from couture_tracker.services.state_machine import replay


def _item_data(**overrides):
    data = {
        "product_id": "GOWN-001",
        "product_name": "Bridal Gown",
        "size": "M",
        "quantity": 2,
        "due_date": "2026-12-01",
        "sections": ["Kaftan", "pants ", "kaftan"],
    }
    data.update(overrides)
    return data


def _sections(*statuses):
    return [SimpleNamespace(status=status) for status in statuses]


class TestCreateOrder:
    """Tests for create_order()."""

    def test_creates_items_and_sections(self, test_db):
        """Should create the order with normalized, de-duplicated sections."""
        order = create_order("ORD-1", "Asha Rao", "1500.00", [_item_data()], created_by="sales-1")

        assert order.status == OrderStatus.RECEIVED
        assert order.total_amount == Decimal("1500.00")
        assert len(order.items) == 1

        item = get_order_item(order.items[0].id)
        assert item.status == OrderItemStatus.RECEIVED
        assert item.quantity == 2
        assert item.due_date == date(2026, 12, 1)
        assert item.section_names == ["kaftan", "pants"]
        for section in item.sections:
            assert section.status == SectionStatus.PENDING_INVENTORY_CHECK
            assert section.current_round == 1
            assert section.dyeing_round == 1

    def test_queues_notification(self, test_db, notifications):
        """Should publish order.created after commit."""
        create_order("ORD-1", "Asha Rao", "100", [_item_data()])

        assert notifications.topics() == ["order.created"]

    def test_missing_size_rejected(self, test_db):
        """Should name every offending field."""
        with pytest.raises(ValidationError) as exc_info:
            create_order("ORD-1", "", "100", [_item_data(size="", sections=[])])

        message = str(exc_info.value)
        assert "customer_name" in message
        assert "items[0].size" in message
        assert "items[0].sections" in message
        assert exc_info.value.field == "customer_name"

    def test_no_items_rejected(self, test_db):
        """Should require at least one item."""
        with pytest.raises(ValidationError) as exc_info:
            create_order("ORD-1", "Asha Rao", "100", [])
        assert "items" in str(exc_info.value)

    def test_negative_total_rejected(self, test_db):
        """Should reject a negative total amount."""
        with pytest.raises(ValidationError) as exc_info:
            create_order("ORD-1", "Asha Rao", "-1", [_item_data()])
        assert "total_amount" in str(exc_info.value)

    def test_invalid_due_date_rejected(self, test_db):
        """Should reject a due date that is not a real ISO date."""
        with pytest.raises(ValidationError) as exc_info:
            create_order("ORD-1", "Asha Rao", "100", [_item_data(due_date="2026-13-45")])

        assert exc_info.value.field == "items[0].due_date"
        assert "ISO date" in str(exc_info.value)
        assert list_order_items() == []

    @pytest.mark.parametrize("quantity", ["1.5", 0, "two", True])
    def test_invalid_quantity_rejected(self, test_db, quantity):
        """Should reject a quantity that is not a positive whole number."""
        with pytest.raises(ValidationError) as exc_info:
            create_order("ORD-1", "Asha Rao", "100", [_item_data(quantity=quantity)])

        assert exc_info.value.field == "items[0].quantity"
        assert "whole number" in str(exc_info.value)

    def test_bad_date_and_quantity_reported_together(self, test_db):
        """Should name both item fields in one error."""
        with pytest.raises(ValidationError) as exc_info:
            create_order(
                "ORD-1", "Asha Rao", "100", [_item_data(quantity="1.5", due_date="soon")]
            )

        message = str(exc_info.value)
        assert "items[0].quantity" in message
        assert "items[0].due_date" in message

    def test_whole_number_string_quantity_and_blank_date(self, test_db):
        """Should accept "3" as a quantity and treat a blank due date as none."""
        order = create_order("ORD-1", "Asha Rao", "100", [_item_data(quantity="3", due_date="")])

        item = get_order_item(order.items[0].id)
        assert item.quantity == 3
        assert item.due_date is None

    def test_duplicate_order_number(self, test_db):
        """Should reject an order number that is already taken."""
        create_order("ORD-1", "Asha Rao", "100", [_item_data()])

        with pytest.raises(ValidationError) as exc_info:
            create_order("ORD-1", "Someone Else", "100", [_item_data()])
        assert "already exists" in str(exc_info.value)

    def test_with_session(self, test_db):
        """Should work with provided session."""
        with session_scope() as session:
            order = create_order("ORD-1", "Asha Rao", "100", [_item_data()], session=session)
            order_id = order.id

        assert get_order(order_id).order_number == "ORD-1"


class TestDeriveOrderItemStatus:
    """Tests for derive_order_item_status()."""

    def test_no_sections(self):
        """Should stay RECEIVED without sections."""
        assert derive_order_item_status([]) == OrderItemStatus.RECEIVED

    def test_inventory_stage(self):
        """Should report the inventory check and material shortages."""
        assert derive_order_item_status(
            _sections(SectionStatus.PENDING_INVENTORY_CHECK)
        ) == OrderItemStatus.INVENTORY_CHECK
        assert derive_order_item_status(
            _sections(SectionStatus.PENDING_INVENTORY_CHECK, SectionStatus.AWAITING_MATERIAL)
        ) == OrderItemStatus.AWAITING_MATERIAL

    def test_packet_stage(self):
        """Should distinguish full, partial and completed packets."""
        assert derive_order_item_status(
            _sections(SectionStatus.CREATE_PACKET, SectionStatus.CREATE_PACKET)
        ) == OrderItemStatus.CREATE_PACKET
        assert derive_order_item_status(
            _sections(SectionStatus.CREATE_PACKET, SectionStatus.AWAITING_MATERIAL)
        ) == OrderItemStatus.PARTIAL_CREATE_PACKET

        packet = SimpleNamespace(status=PacketStatus.COMPLETED)
        assert derive_order_item_status(
            _sections(SectionStatus.CREATE_PACKET), packet
        ) == OrderItemStatus.PACKET_CHECK

    def test_dyeing_stage(self):
        """Should report full and partial dyeing."""
        assert derive_order_item_status(
            _sections(SectionStatus.READY_FOR_DYEING, SectionStatus.READY_FOR_DYEING)
        ) == OrderItemStatus.READY_FOR_DYEING
        assert derive_order_item_status(
            _sections(SectionStatus.DYEING_ACCEPTED, SectionStatus.DYEING_IN_PROGRESS)
        ) == OrderItemStatus.IN_DYEING
        assert derive_order_item_status(
            _sections(SectionStatus.DYEING_IN_PROGRESS, SectionStatus.CREATE_PACKET)
        ) == OrderItemStatus.PARTIALLY_IN_DYEING

    def test_production_stage(self):
        """Should report full and partial production."""
        assert derive_order_item_status(
            _sections(SectionStatus.READY_FOR_PRODUCTION, SectionStatus.READY_FOR_PRODUCTION)
        ) == OrderItemStatus.READY_FOR_PRODUCTION
        assert derive_order_item_status(
            _sections(SectionStatus.IN_PRODUCTION, SectionStatus.QA_PENDING)
        ) == OrderItemStatus.IN_PRODUCTION
        assert derive_order_item_status(
            _sections(SectionStatus.IN_PRODUCTION, SectionStatus.DYEING_IN_PROGRESS)
        ) == OrderItemStatus.PARTIAL_IN_PRODUCTION
        assert derive_order_item_status(
            _sections(SectionStatus.PRODUCTION_COMPLETED, SectionStatus.QA_APPROVED)
        ) == OrderItemStatus.PRODUCTION_COMPLETED

    def test_qa_stage(self):
        """Should wait in QA until every section is approved."""
        assert derive_order_item_status(
            _sections(SectionStatus.QA_APPROVED, SectionStatus.QA_PENDING)
        ) == OrderItemStatus.QUALITY_ASSURANCE
        assert derive_order_item_status(
            _sections(SectionStatus.QA_APPROVED, SectionStatus.REWORK_REQUIRED)
        ) == OrderItemStatus.REWORK_REQUIRED
        assert derive_order_item_status(
            _sections(SectionStatus.QA_APPROVED, SectionStatus.CLIENT_APPROVED)
        ) == OrderItemStatus.ALL_SECTIONS_QA_APPROVED


class TestResolveSectionsForEvent:
    """Tests for resolve_sections_for_event()."""

    @pytest.fixture
    def order_item_id(self, test_db):
        order = create_order("ORD-1", "Asha Rao", "100", [_item_data()])
        return order.items[0].id

    def test_resolves_case_insensitively(self, order_item_id):
        """Should resolve section names regardless of case and spacing."""
        with session_scope() as session:
            item = get_order_item_for_update(order_item_id, session)
            sections = resolve_sections_for_event(item, [" KAFTAN"], "inventory_passed")
            assert [s.name for s in sections] == ["kaftan"]

    def test_unknown_section(self, order_item_id):
        """Should raise SectionNotFound for a section the item lacks."""
        with session_scope() as session:
            item = get_order_item_for_update(order_item_id, session)
            with pytest.raises(SectionNotFound):
                resolve_sections_for_event(item, ["sleeves"], "inventory_passed")

    def test_illegal_event(self, order_item_id):
        """Should raise StateConflictError without touching the sections."""
        with session_scope() as session:
            item = get_order_item_for_update(order_item_id, session)
            with pytest.raises(StateConflictError):
                resolve_sections_for_event(item, ["kaftan", "pants"], "qa_approve")
            assert all(
                s.status == SectionStatus.PENDING_INVENTORY_CHECK for s in item.sections
            )

    def test_empty_list(self, order_item_id):
        """Should require at least one section."""
        with session_scope() as session:
            item = get_order_item_for_update(order_item_id, session)
            with pytest.raises(ValidationError):
                resolve_sections_for_event(item, [], "inventory_passed")


class TestQueries:
    """Tests for get_order(), get_order_item(), list_order_items() and timelines."""

    def test_order_not_found(self, test_db):
        """Should raise OrderNotFound for a non-existent order."""
        with pytest.raises(OrderNotFound) as exc_info:
            get_order(99999)
        assert "not found" in str(exc_info.value)

    def test_order_item_not_found(self, test_db):
        """Should raise OrderItemNotFound for a non-existent item."""
        with pytest.raises(OrderItemNotFound):
            get_order_item(99999)
        with pytest.raises(OrderItemNotFound):
            get_order_item_timeline(99999)

    def test_list_by_status(self, workflow):
        """Should filter order items by status."""
        _, (first,) = workflow.create_order()
        _, (second,) = workflow.create_order()
        workflow.packet_in_progress(first)

        received = list_order_items(status=OrderItemStatus.RECEIVED)
        assert [item.id for item in received] == [second]
        assert len(list_order_items()) == 2

    def test_timeline_merges_sources(self, workflow):
        """Should merge item, section and packet entries oldest first."""
        _, (order_item_id,) = workflow.create_order()
        workflow.packet_in_progress(order_item_id)

        timeline = get_order_item_timeline(order_item_id)

        assert timeline[0]["action"] == "item_created"
        sources = {entry["source"] for entry in timeline}
        assert sources == {"order_item", "section", "packet"}
        actions = [entry["action"] for entry in timeline]
        assert "packet_created" in actions
        assert "packet_assigned" in actions
        section_entries = [e for e in timeline if e["source"] == "section"]
        assert {e["details"]["section"] for e in section_entries} == {"kaftan", "pants"}
        for entry in timeline:
            assert set(entry) >= {"action", "user", "timestamp", "details", "source"}

    def test_status_matches_event_log(self, workflow):
        """Should be able to rebuild item and section status from their logs."""
        _, (order_item_id,) = workflow.create_order()
        workflow.packet_approved(order_item_id)

        item = get_order_item(order_item_id)
        assert replay(item.timeline, OrderItemStatus.RECEIVED) == item.status
        for section in item.sections:
            assert replay(section.events, SectionStatus.PENDING_INVENTORY_CHECK) == section.status
        order = get_order(item.order_id)
        assert replay(order.timeline, OrderStatus.RECEIVED) == order.status
