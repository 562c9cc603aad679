"""Unit tests for packet_service.py.

Tests cover:
- Packet creation (full and partial) and pick-list enrichment
- Extension: purge, round numbering, status policy, counters
- Assignment, start, picking and completion guards
- Packet check approval routing and rejection
- Failed operations leaving the packet unchanged
"""

from decimal import Decimal

import pytest

from couture_tracker.models.enums import (
    OrderItemStatus,
    PacketStatus,
    SectionStatus,
)
from couture_tracker.services.collaborators import (
    AllowAllIdentityService,
    configure_collaborators,
)
from couture_tracker.services.exceptions import (
    AuthorizationError,
    PacketNotFound,
    PickListItemNotFound,
    StateConflictError,
    ValidationError,
)
from couture_tracker.services.inventory_check_service import run_inventory_check
from couture_tracker.services.order_item_service import get_order_item
from couture_tracker.services.packet_service import (
    approve_packet,
    assign_packet,
    complete_packet,
    create_packet,
    create_partial_packet,
    extend_packet,
    get_my_packet_tasks,
    get_packet,
    get_packet_check_queue,
    list_packets,
    pick_item,
    reassign_packet,
    reassign_to_previous,
    reject_packet,
    start_packet,
)
from couture_tracker.services.state_machine import replay


class DenyAllIdentityService(AllowAllIdentityService):
    """Identity service that refuses every permission."""

    def has_permission(self, user_id, permission):
        return False


def _assert_counters(packet):
    assert packet.picked_items == sum(1 for row in packet.pick_list if row.is_picked)
    assert packet.total_items == len(packet.pick_list)


@pytest.fixture
def order_item_id(workflow):
    """Order item (kaftan + pants) with no packet yet."""
    _, (item_id,) = workflow.create_order()
    return item_id


@pytest.fixture
def packeted_item(workflow, order_item_id):
    """Order item whose packet was created by the inventory check (3 rows)."""
    run_inventory_check(order_item_id, checked_by="system")
    return order_item_id


@pytest.fixture
def picking_item(workflow, packeted_item):
    """Order item whose packet is IN_PROGRESS with picker-1."""
    assign_packet(packeted_item, "picker-1", "manager-1")
    start_packet(packeted_item, "picker-1")
    return packeted_item


class TestCreatePacket:
    """Tests for create_packet()."""

    def test_created_by_inventory_check(self, packeted_item):
        """Should create a round 1 PENDING packet with enriched rows."""
        packet = get_packet(packeted_item)

        assert packet.status == PacketStatus.PENDING
        assert packet.packet_round == 1
        assert packet.is_partial is False
        assert packet.sections_included == ["kaftan", "pants"]
        assert packet.sections_pending == []
        assert packet.total_items == 3
        assert packet.picked_items == 0

        silk = packet.pick_list[0]
        assert silk.inventory_item_id == "SILK-01"
        assert silk.inventory_item_name == "Raw Silk"
        assert silk.sku == "SLK-RAW"
        assert silk.unit == "m"
        assert silk.rack_location == "A-01"
        assert silk.piece == "kaftan"
        assert silk.required_qty == Decimal("2.5")
        assert all(row.added_in_round == 1 for row in packet.pick_list)

        item = get_order_item(packeted_item)
        assert item.status == OrderItemStatus.CREATE_PACKET
        assert all(s.status == SectionStatus.CREATE_PACKET for s in item.sections)

    def test_never_recreated(self, packeted_item):
        """Should refuse to create a second packet for the same item."""
        with pytest.raises(StateConflictError) as exc_info:
            create_packet(packeted_item, [{"inventory_item_id": "SILK-01", "quantity": 1, "piece": "kaftan"}])
        assert "extend it instead" in str(exc_info.value)

    def test_merges_duplicate_requirements(self, order_item_id):
        """Should merge rows for the same piece and material."""
        packet = create_packet(
            order_item_id,
            [
                {"inventory_item_id": "SILK-01", "required_qty": "1.5", "piece": "kaftan"},
                {"inventory_item_id": "SILK-01", "required_qty": "2", "piece": "Kaftan"},
                {"inventory_item_id": "COT-02", "required_qty": "1", "piece": "pants"},
            ],
        )

        assert packet.total_items == 2
        assert packet.pick_list[0].required_qty == Decimal("3.5")

    def test_defaults_for_unknown_material(self, order_item_id):
        """Should fall back to defaults when inventory has no metadata."""
        packet = create_packet(
            order_item_id,
            [{"inventory_item_id": "MYSTERY", "required_qty": "1", "piece": "kaftan"}],
            sections=["kaftan"],
        )

        row = packet.pick_list[0]
        assert row.inventory_item_name == "MYSTERY"
        assert row.unit == "Unit"
        assert row.rack_location == "TBD"

    def test_empty_requirements(self, order_item_id):
        """Should require at least one material."""
        with pytest.raises(ValidationError) as exc_info:
            create_packet(order_item_id, [])
        assert exc_info.value.field == "requirements"

    def test_requirement_for_other_section(self, order_item_id):
        """Should reject materials for sections outside the packet."""
        with pytest.raises(ValidationError) as exc_info:
            create_packet(
                order_item_id,
                [{"inventory_item_id": "CHF-03", "required_qty": "1", "piece": "dupatta"}],
            )
        assert "requirements[0].piece" in str(exc_info.value)

        with pytest.raises(PacketNotFound):
            get_packet(order_item_id)


class TestCreatePartialPacket:
    """Tests for create_partial_packet()."""

    def test_records_section_sets(self, order_item_id):
        """Should flag the packet partial and record pending sections."""
        packet = create_partial_packet(
            order_item_id,
            [{"inventory_item_id": "SILK-01", "required_qty": "2.5", "piece": "kaftan"}],
            passed_sections=["kaftan"],
            pending_sections=["pants"],
        )

        assert packet.is_partial is True
        assert packet.sections_included == ["kaftan"]
        assert packet.sections_pending == ["pants"]
        assert get_order_item(order_item_id).status == OrderItemStatus.PARTIAL_CREATE_PACKET

    def test_overlapping_sections(self, order_item_id):
        """Should reject a section that is both passed and pending."""
        with pytest.raises(ValidationError) as exc_info:
            create_partial_packet(
                order_item_id,
                [{"inventory_item_id": "SILK-01", "required_qty": "1", "piece": "kaftan"}],
                passed_sections=["kaftan"],
                pending_sections=["kaftan", "pants"],
            )
        assert "cannot be both passed and pending" in str(exc_info.value)

    def test_created_by_inventory_shortage(self, inventory, order_item_id):
        """Should create a partial packet when some sections lack material."""
        inventory.set_stock("COT-02", 0)

        result = run_inventory_check(order_item_id)

        assert result.packet_action == "partial_created"
        packet = get_packet(order_item_id)
        assert packet.is_partial is True
        assert packet.sections_pending == ["pants"]
        item = get_order_item(order_item_id)
        assert item.get_section("pants").status == SectionStatus.AWAITING_MATERIAL


class TestExtendPacket:
    """Tests for extend_packet()."""

    @pytest.fixture
    def partial_item(self, inventory, order_item_id):
        inventory.set_stock("COT-02", 0)
        run_inventory_check(order_item_id)
        inventory.set_stock("COT-02", 50)
        return order_item_id

    def test_extension_by_inventory_check(self, partial_item):
        """Should add the restocked section in round 2."""
        result = run_inventory_check(partial_item)

        assert result.packet_action == "extended"
        assert result.packet_round == 2
        packet = get_packet(partial_item)
        assert packet.packet_round == 2
        assert packet.status == PacketStatus.PENDING
        assert packet.sections_included == ["kaftan", "pants"]
        assert packet.sections_pending == []
        assert packet.is_partial is False
        new_rows = [row for row in packet.pick_list if row.added_in_round == 2]
        assert [row.inventory_item_id for row in new_rows] == ["COT-02"]
        assert packet.current_round_sections == ["pants"]
        _assert_counters(packet)

    def test_existing_assignee_continues(self, partial_item):
        """Should keep the assignee and log the auto-continuation."""
        assign_packet(partial_item, "picker-1", "manager-1")
        start_packet(partial_item, "picker-1")

        run_inventory_check(partial_item)

        packet = get_packet(partial_item)
        assert packet.status == PacketStatus.ASSIGNED
        assert packet.assigned_to == "picker-1"
        assert packet.previous_assignee_id == "picker-1"
        actions = [event.action for event in packet.timeline]
        assert actions[-2:] == ["packet_extended", "assignment_continued"]

    def test_unassigned_packet_goes_pending(self, partial_item):
        """Should leave an unassigned packet PENDING with a single entry."""
        before = len(get_packet(partial_item).timeline)

        run_inventory_check(partial_item)

        packet = get_packet(partial_item)
        assert packet.status == PacketStatus.PENDING
        assert packet.previous_assignee_id is None
        assert len(packet.timeline) == before + 1

    def test_purges_rows_of_readded_section(self, picking_item):
        """Should archive old rows of a re-added piece before appending new ones."""
        packet = get_packet(picking_item)
        silk, lace, cotton = packet.pick_list
        pick_item(picking_item, silk.id, user_id="picker-1")
        pick_item(picking_item, cotton.id, user_id="picker-1")

        packet = extend_packet(
            picking_item,
            [
                {"inventory_item_id": "SILK-01", "required_qty": "3", "piece": "kaftan"},
                {"inventory_item_id": "LACE-07", "required_qty": "4", "piece": "kaftan"},
            ],
            ["kaftan"],
            extended_by="system",
        )

        keys = [(row.piece, row.inventory_item_id) for row in packet.pick_list]
        assert len(keys) == len(set(keys))
        assert sorted(keys) == [("kaftan", "LACE-07"), ("kaftan", "SILK-01"), ("pants", "COT-02")]

        removed = {row.inventory_item_id: row for row in packet.removed_items}
        assert set(removed) == {"SILK-01", "LACE-07"}
        assert removed["SILK-01"].was_picked is True
        assert removed["LACE-07"].was_picked is False
        assert removed["SILK-01"].removed_at_round == 1
        assert removed["SILK-01"].added_in_round == 1
        assert removed["SILK-01"].reason

    def test_counters_after_extension(self, picking_item):
        """Should keep picked_items equal to the picked rows and snapshot the old count."""
        packet = get_packet(picking_item)
        silk, lace, cotton = packet.pick_list
        pick_item(picking_item, silk.id, user_id="picker-1")
        pick_item(picking_item, cotton.id, user_id="picker-1")

        packet = extend_packet(
            picking_item,
            [{"inventory_item_id": "SILK-01", "required_qty": "3", "piece": "kaftan"}],
            ["kaftan"],
        )

        _assert_counters(packet)
        assert packet.picked_items == 1
        assert packet.previous_round_picked_items == 2
        assert packet.round_picked_items == 0
        assert packet.round_total_items == 1
        assert packet.remaining_items == 1
        assert packet.to_dict()["round_picked_items"] == 0

    def test_round_increments_by_one(self, packeted_item):
        """Should increase packet_round by exactly one per extension."""
        for expected_round in (2, 3, 4):
            packet = extend_packet(
                packeted_item,
                [{"inventory_item_id": "COT-02", "required_qty": "1", "piece": "pants"}],
                ["pants"],
            )
            assert packet.packet_round == expected_round

    def test_completion_after_extension_needs_every_row(self, picking_item, workflow):
        """Should not complete until rows of every round are picked."""
        workflow.pick_all(picking_item)
        extend_packet(
            picking_item,
            [{"inventory_item_id": "COT-02", "required_qty": "2", "piece": "pants"}],
            ["pants"],
        )
        start_packet(picking_item, "picker-1")

        with pytest.raises(StateConflictError):
            complete_packet(picking_item, "picker-1")

        workflow.pick_all(picking_item)
        assert complete_packet(picking_item, "picker-1").status == PacketStatus.COMPLETED

    def test_without_packet(self, order_item_id):
        """Should raise PacketNotFound when there is nothing to extend."""
        with pytest.raises(PacketNotFound):
            extend_packet(
                order_item_id,
                [{"inventory_item_id": "COT-02", "required_qty": "1", "piece": "pants"}],
                ["pants"],
            )


class TestAssignAndStart:
    """Tests for assign_packet(), reassign_packet(), reassign_to_previous() and start_packet()."""

    def test_assign(self, packeted_item, notifications):
        """Should assign a PENDING packet."""
        packet = assign_packet(packeted_item, "picker-1", "manager-1")

        assert packet.status == PacketStatus.ASSIGNED
        assert packet.assigned_to == "picker-1"
        assert packet.assigned_by == "manager-1"
        assert packet.assigned_at is not None
        assert "packet.assigned" in notifications.topics()

    def test_assign_twice(self, packeted_item):
        """Should reject assignment outside PENDING."""
        assign_packet(packeted_item, "picker-1", "manager-1")

        with pytest.raises(StateConflictError) as exc_info:
            assign_packet(packeted_item, "picker-2", "manager-1")
        assert "PENDING" in str(exc_info.value)
        assert get_packet(packeted_item).assigned_to == "picker-1"

    def test_assign_requires_permission(self, packeted_item):
        """Should raise AuthorizationError without the assign permission."""
        configure_collaborators(identity=DenyAllIdentityService())

        with pytest.raises(AuthorizationError) as exc_info:
            assign_packet(packeted_item, "picker-1", "intern-1")

        assert exc_info.value.permission == "packets.assign"
        assert get_packet(packeted_item).status == PacketStatus.PENDING

    def test_assign_requires_user(self, packeted_item):
        """Should require an assignee."""
        with pytest.raises(ValidationError):
            assign_packet(packeted_item, "", "manager-1")

    def test_reassign_without_previous(self, packeted_item):
        """Should refuse reassignment when nobody held the packet before."""
        with pytest.raises(ValidationError) as exc_info:
            reassign_to_previous(packeted_item, "manager-1")
        assert exc_info.value.field == "previous_assignee_id"

    @pytest.fixture
    def continued_item(self, inventory, order_item_id):
        """Packet extended in round 2 while picker-1 held it (ASSIGNED, previous picker-1)."""
        inventory.set_stock("COT-02", 0)
        run_inventory_check(order_item_id)
        assign_packet(order_item_id, "picker-1", "manager-1")
        start_packet(order_item_id, "picker-1")
        inventory.set_stock("COT-02", 50)
        run_inventory_check(order_item_id)
        return order_item_id

    def test_reassign_to_another_picker(self, continued_item):
        """Should hand the continued packet to someone else and keep the snapshot."""
        packet = reassign_packet(continued_item, "picker-2", "manager-1")

        assert packet.status == PacketStatus.ASSIGNED
        assert packet.assigned_to == "picker-2"
        assert packet.previous_assignee_id == "picker-1"
        last = packet.timeline[-1]
        assert last.action == "packet_reassigned"
        assert last.details["replaced"] == "picker-1"

    def test_reassign_to_previous_overrides_assignee(self, continued_item):
        """Should give the packet back to the previous assignee from ASSIGNED."""
        reassign_packet(continued_item, "picker-2", "manager-1")

        packet = reassign_to_previous(continued_item, "manager-1")

        assert packet.status == PacketStatus.ASSIGNED
        assert packet.assigned_to == "picker-1"
        assert packet.assigned_by == "manager-1"
        assert packet.timeline[-1].action == "packet_reassigned_to_previous"
        assert start_packet(continued_item, "picker-1").status == PacketStatus.IN_PROGRESS

    def test_reassign_to_previous_already_holding(self, continued_item):
        """Should change nothing when the previous assignee still holds the packet."""
        before = len(get_packet(continued_item).timeline)

        packet = reassign_to_previous(continued_item, "manager-1")

        assert packet.assigned_to == "picker-1"
        assert len(get_packet(continued_item).timeline) == before

    def test_reassign_to_previous_after_start(self, continued_item):
        """Should refuse once picking has started again."""
        reassign_packet(continued_item, "picker-2", "manager-1")
        start_packet(continued_item, "picker-2")

        with pytest.raises(StateConflictError):
            reassign_to_previous(continued_item, "manager-1")
        assert get_packet(continued_item).assigned_to == "picker-2"

    def test_reassign_pending_packet(self, packeted_item):
        """Should refuse reassigning a packet nobody holds."""
        with pytest.raises(StateConflictError):
            reassign_packet(packeted_item, "picker-2", "manager-1")

    def test_start_by_assignee(self, packeted_item):
        """Should start picking for the assigned user."""
        assign_packet(packeted_item, "picker-1", "manager-1")

        packet = start_packet(packeted_item, "picker-1")

        assert packet.status == PacketStatus.IN_PROGRESS
        assert packet.started_at is not None

    def test_start_by_other_user(self, packeted_item):
        """Should reject a start by someone other than the assignee."""
        assign_packet(packeted_item, "picker-1", "manager-1")

        with pytest.raises(AuthorizationError):
            start_packet(packeted_item, "picker-2")
        assert get_packet(packeted_item).status == PacketStatus.ASSIGNED

    def test_start_unassigned(self, packeted_item):
        """Should reject a start from PENDING."""
        with pytest.raises(StateConflictError):
            start_packet(packeted_item, "picker-1")


class TestPickItem:
    """Tests for pick_item()."""

    def test_pick_increments_counter(self, picking_item):
        """Should mark the row picked and count it."""
        row = get_packet(picking_item).pick_list[0]

        packet = pick_item(picking_item, row.id, user_id="picker-1", notes="bolt 3")

        assert packet.picked_items == 1
        picked = next(r for r in packet.pick_list if r.id == row.id)
        assert picked.is_picked is True
        assert picked.picked_qty == row.required_qty
        assert picked.picked_by == "picker-1"
        _assert_counters(packet)

    def test_counter_invariant_over_sequence(self, picking_item):
        """Should keep picked_items equal to the picked rows after every pick."""
        for row in get_packet(picking_item).pick_list:
            packet = pick_item(picking_item, row.id, qty="1.25", user_id="picker-1")
            _assert_counters(packet)
        assert get_packet(picking_item).picked_items == 3

    def test_repick_is_an_error(self, picking_item):
        """Should reject picking a row twice and leave the counter alone."""
        row = get_packet(picking_item).pick_list[0]
        pick_item(picking_item, row.id, user_id="picker-1")

        with pytest.raises(StateConflictError) as exc_info:
            pick_item(picking_item, row.id, user_id="picker-1")

        assert "already picked" in str(exc_info.value)
        assert get_packet(picking_item).picked_items == 1

    def test_unknown_row(self, picking_item):
        """Should raise PickListItemNotFound for a row of another packet."""
        with pytest.raises(PickListItemNotFound):
            pick_item(picking_item, 99999, user_id="picker-1")

    def test_invalid_quantity(self, picking_item):
        """Should reject a non-positive quantity."""
        row = get_packet(picking_item).pick_list[0]

        with pytest.raises(ValidationError) as exc_info:
            pick_item(picking_item, row.id, qty=0, user_id="picker-1")

        assert exc_info.value.field == "qty"
        assert get_packet(picking_item).picked_items == 0

    def test_pick_outside_in_progress(self, packeted_item):
        """Should reject picking before the packet is started."""
        row = get_packet(packeted_item).pick_list[0]

        with pytest.raises(StateConflictError) as exc_info:
            pick_item(packeted_item, row.id, user_id="picker-1")
        assert "IN_PROGRESS" in str(exc_info.value)


class TestCompletePacket:
    """Tests for complete_packet()."""

    def test_requires_every_row(self, picking_item):
        """Should refuse completion with 2 of 3 picked, then complete with 3 of 3."""
        rows = get_packet(picking_item).pick_list
        assert len(rows) == 3
        pick_item(picking_item, rows[0].id, user_id="picker-1")
        pick_item(picking_item, rows[1].id, user_id="picker-1")
        timeline_before = len(get_packet(picking_item).timeline)

        with pytest.raises(StateConflictError) as exc_info:
            complete_packet(picking_item, "picker-1")

        assert "2 of 3" in str(exc_info.value)
        packet = get_packet(picking_item)
        assert packet.status == PacketStatus.IN_PROGRESS
        assert len(packet.timeline) == timeline_before

        pick_item(picking_item, rows[2].id, user_id="picker-1")
        packet = complete_packet(picking_item, "picker-1", notes="all bagged")

        assert packet.status == PacketStatus.COMPLETED
        assert packet.completion_notes == "all bagged"
        assert get_order_item(picking_item).status == OrderItemStatus.PACKET_CHECK


class TestPacketCheck:
    """Tests for approve_packet() and reject_packet()."""

    def test_ready_stock_and_production_routes_differ(self, workflow):
        """Should route ready stock to QA and made-to-order to dyeing."""
        _, (ready_stock_id,) = workflow.create_order()
        _, (made_to_order_id,) = workflow.create_order()
        workflow.packet_completed(ready_stock_id)
        workflow.packet_completed(made_to_order_id)

        approve_packet(ready_stock_id, "checker-1", is_ready_stock=True)
        approve_packet(made_to_order_id, "checker-1", is_ready_stock=False)

        ready_stock = get_order_item(ready_stock_id)
        made_to_order = get_order_item(made_to_order_id)
        assert ready_stock.status == OrderItemStatus.QUALITY_ASSURANCE
        assert made_to_order.status == OrderItemStatus.READY_FOR_DYEING
        assert ready_stock.status != made_to_order.status
        assert all(s.status == SectionStatus.QA_PENDING for s in ready_stock.sections)
        assert all(s.status == SectionStatus.READY_FOR_DYEING for s in made_to_order.sections)
        assert ready_stock.is_ready_stock is True
        assert get_packet(ready_stock_id).status == PacketStatus.APPROVED

    def test_approve_requires_completed(self, picking_item):
        """Should reject approval of a packet still being picked."""
        with pytest.raises(StateConflictError):
            approve_packet(picking_item, "checker-1", is_ready_stock=False)

    def test_reject_wrong_material(self, workflow, picking_item):
        """Should return to ASSIGNED with the same round and one new entry."""
        workflow.pick_all(picking_item)
        complete_packet(picking_item, "picker-1")
        before = get_packet(picking_item)
        timeline_before = len(before.timeline)

        packet = reject_packet(
            picking_item, "checker-1", reason_code="WRONG_MATERIAL", notes="fix lace"
        )

        assert packet.status == PacketStatus.ASSIGNED
        assert packet.packet_round == before.packet_round
        assert len(packet.timeline) == timeline_before + 1
        entry = packet.timeline[-1]
        assert entry.action == "packet_rejected"
        assert entry.details["reason_code"] == "WRONG_MATERIAL"
        assert entry.details["notes"] == "fix lace"
        assert entry.details["reason"] == "Wrong material picked"
        assert all(row.is_picked for row in packet.pick_list)
        assert packet.picked_items == before.picked_items
        assert packet.assigned_to == "picker-1"

    def test_rejected_packet_can_be_redone(self, workflow, picking_item):
        """Should let the assignee restart and complete a rejected packet."""
        workflow.pick_all(picking_item)
        complete_packet(picking_item, "picker-1")
        reject_packet(picking_item, "checker-1", reason_code="DAMAGED_MATERIAL")

        start_packet(picking_item, "picker-1")
        packet = complete_packet(picking_item, "picker-1")

        assert packet.status == PacketStatus.COMPLETED
        assert packet.packet_round == 1

    def test_reject_unknown_reason(self, workflow, picking_item):
        """Should validate the reason code before touching the packet."""
        workflow.pick_all(picking_item)
        complete_packet(picking_item, "picker-1")

        with pytest.raises(ValidationError) as exc_info:
            reject_packet(picking_item, "checker-1", reason_code="BAD_VIBES")

        assert exc_info.value.field == "reason_code"
        assert get_packet(picking_item).status == PacketStatus.COMPLETED

    def test_reject_requires_completed(self, packeted_item):
        """Should reject a packet check on a PENDING packet."""
        with pytest.raises(StateConflictError):
            reject_packet(packeted_item, "checker-1", reason_code="OTHER")

    def test_timeline_replays_to_status(self, workflow, picking_item):
        """Should rebuild the packet status from its timeline."""
        workflow.pick_all(picking_item)
        complete_packet(picking_item, "picker-1")
        reject_packet(picking_item, "checker-1", reason_code="WRONG_QUANTITY")

        packet = get_packet(picking_item)
        assert replay(packet.timeline, PacketStatus.PENDING) == packet.status


class TestQueries:
    """Tests for packet queries."""

    def test_get_packet_not_found(self, order_item_id):
        """Should raise PacketNotFound before the inventory check."""
        with pytest.raises(PacketNotFound) as exc_info:
            get_packet(order_item_id)
        assert "No packet exists" in str(exc_info.value)

    def test_task_lists(self, workflow):
        """Should list packets by status and assignee."""
        _, (first,) = workflow.create_order()
        _, (second,) = workflow.create_order()
        workflow.packet_in_progress(first, picker="picker-1")
        workflow.packet_completed(second, picker="picker-2")

        assert [p.order_item_id for p in get_my_packet_tasks("picker-1")] == [first]
        assert get_my_packet_tasks("picker-2") == []
        assert [p.order_item_id for p in get_packet_check_queue()] == [second]
        assert len(list_packets()) == 2
        assert [p.order_item_id for p in list_packets(assigned_to="picker-2")] == [second]
