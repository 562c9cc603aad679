"""Integration tests for complete order workflows.

Tests the full path from order intake to dispatch:
1. Inventory check with a material shortage (partial packet)
2. Packet picking, check and approval over two rounds
3. Dyeing, production, QA and the video barrier
4. Sales approval loops (re-video and alteration)
5. Payments, dispatch and delivery
"""

from decimal import Decimal

from couture_tracker.models.enums import (
    OrderItemStatus,
    OrderStatus,
    PacketStatus,
    SalesRequestStatus,
    SectionStatus,
)
from couture_tracker.services.dyeing_service import accept_dyeing, complete_dyeing, start_dyeing
from couture_tracker.services.inventory_check_service import run_inventory_check
from couture_tracker.services.order_item_service import (
    get_order,
    get_order_item,
    get_order_item_timeline,
)
from couture_tracker.services.packet_service import (
    approve_packet,
    assign_packet,
    complete_packet,
    get_packet,
    start_packet,
)
from couture_tracker.services.production_service import get_production_head
from couture_tracker.services.qa_service import (
    approve_section,
    confirm_re_video_upload,
    confirm_video_upload,
)
from couture_tracker.services.sales_approval_service import (
    approve_payments,
    complete_order,
    dispatch_order,
    mark_client_approved,
    record_payment,
    request_alteration,
    request_re_video,
    send_order_to_client,
    send_order_to_sales,
)
from couture_tracker.services.state_machine import replay


def _deliver(order_id):
    """Take an order awaiting the client all the way to dispatch."""
    mark_client_approved(order_id, "sales-1", ["reply.png"])
    record_payment(order_id, "1000.00", "bank_transfer", "accounts-1")
    approve_payments(order_id, "accounts-1")
    dispatch_order(order_id, "dispatch-1", "courier", tracking_number="TRK-1")


class TestOrderToDispatch:
    """Order intake to dispatch with a material shortage on one section."""

    def test_partial_packet_to_dispatch(self, workflow, catalog, notifications):
        order_id, (item_id,) = workflow.create_order(sections=("kaftan", "pants", "dupatta"))
        catalog.set_stock("CHF-03", "0")

        # Round 1: dupatta waits for chiffon
        result = run_inventory_check(item_id, checked_by="system")
        assert result.packet_action == "partial_created"
        assert result.failed_sections == ["dupatta"]
        assert get_order_item(item_id).status == OrderItemStatus.PARTIAL_CREATE_PACKET

        assign_packet(item_id, "picker-1", "manager-1")
        start_packet(item_id, "picker-1")
        workflow.pick_all(item_id)
        complete_packet(item_id, "picker-1")
        assert get_order_item(item_id).status == OrderItemStatus.PACKET_CHECK
        approve_packet(item_id, "checker-1", False)

        accept_dyeing(item_id, ["kaftan", "pants"], "dyer-1")
        start_dyeing(item_id, ["kaftan", "pants"], "dyer-1")
        complete_dyeing(item_id, ["kaftan", "pants"], "dyer-1")
        assert get_production_head(item_id) == "head-a"

        # Round 2: chiffon arrives and the same picker continues
        catalog.set_stock("CHF-03", "10")
        result = run_inventory_check(item_id, checked_by="system")
        assert result.packet_action == "extended"

        packet = get_packet(item_id)
        assert packet.packet_round == 2
        assert packet.status == PacketStatus.ASSIGNED
        assert packet.assigned_to == "picker-1"
        assert packet.sections_pending == []
        assert packet.round_total_items == 1

        start_packet(item_id, "picker-1")
        workflow.pick_all(item_id)
        complete_packet(item_id, "picker-1")
        approve_packet(item_id, "checker-1", False)
        accept_dyeing(item_id, ["dupatta"], "dyer-1")
        start_dyeing(item_id, ["dupatta"], "dyer-1")
        complete_dyeing(item_id, ["dupatta"], "dyer-1")
        assert get_production_head(item_id) == "head-a"

        packet = get_packet(item_id)
        assert packet.picked_items == packet.total_items == 4

        # Production, QA and video
        workflow.production_done(item_id)
        for name in ("kaftan", "pants", "dupatta"):
            approve_section(item_id, name, "qa-1")
        assert get_order_item(item_id).status == OrderItemStatus.ALL_SECTIONS_QA_APPROVED
        confirm_video_upload(item_id, "media://qa/final.mp4", uploaded_by="qa-1")

        # Sales
        send_order_to_sales(order_id, "sales-1")
        send_order_to_client(order_id, "sales-1")
        _deliver(order_id)

        order = get_order(order_id)
        assert order.status == OrderStatus.DISPATCHED
        assert replay(order.timeline, OrderStatus.RECEIVED) == OrderStatus.DISPATCHED

        item = get_order_item(item_id)
        assert item.status == OrderItemStatus.DISPATCHED
        assert replay(item.timeline, OrderItemStatus.RECEIVED) == OrderItemStatus.DISPATCHED
        assert all(s.status == SectionStatus.CLIENT_APPROVED for s in item.sections)
        assert all(s.current_round == 1 for s in item.sections)

        actions = [entry["action"] for entry in get_order_item_timeline(item_id)]
        assert "partial_packet_created" in actions
        assert "packet_extended" in actions
        assert "dispatch.dispatched" in notifications.topics()

        # Delivery
        complete_order(order_id, "dispatch-1", notes="Delivered to the client")
        assert replay(get_order(order_id).timeline, OrderStatus.RECEIVED) == OrderStatus.COMPLETED
        item = get_order_item(item_id)
        assert replay(item.timeline, OrderItemStatus.RECEIVED) == OrderItemStatus.COMPLETED


class TestSalesLoops:
    """Client feedback loops before final approval."""

    def test_re_video_then_approval(self, workflow):
        order_id, (item_id,) = workflow.create_order()
        workflow.awaiting_client(order_id, [item_id])
        first_video = get_order_item(item_id).current_video.playback_reference

        request = request_re_video(
            order_id, item_id, [{"section": "kaftan", "notes": "show the embroidery"}], "sales-1"
        )
        confirm_re_video_upload(item_id, "media://qa/retake.mp4", uploaded_by="qa-1")

        item = get_order_item(item_id)
        assert item.status == OrderItemStatus.AWAITING_CLIENT_APPROVAL
        assert item.current_video.playback_reference == "media://qa/retake.mp4"
        assert first_video in [v.playback_reference for v in item.videos if not v.is_current]
        resolved = [r for r in get_order(order_id).sales_requests if r.id == request.id]
        assert resolved[0].status == SalesRequestStatus.RESOLVED

        _deliver(order_id)
        assert get_order(order_id).status == OrderStatus.DISPATCHED

    def test_alteration_round_trip(self, workflow):
        order_id, (altered_id, untouched_id) = workflow.create_order(items=2)
        workflow.awaiting_client(order_id, [altered_id, untouched_id])

        request_alteration(
            order_id,
            [{"order_item_id": altered_id, "section": "kaftan", "notes": "shorten sleeves"}],
            "sales-1",
        )
        assert get_order(order_id).status == OrderStatus.IN_PROGRESS

        # Only the altered section goes back through production and QA
        workflow.production_done(altered_id, sections=["kaftan"])
        assert get_order_item(altered_id).status == OrderItemStatus.QUALITY_ASSURANCE
        approve_section(altered_id, "kaftan", "qa-1")
        confirm_video_upload(altered_id, "media://qa/altered.mp4", uploaded_by="qa-1")

        send_order_to_sales(order_id, "sales-1")
        send_order_to_client(order_id, "sales-1")
        assert get_order_item(untouched_id).status == OrderItemStatus.AWAITING_CLIENT_APPROVAL

        _deliver(order_id)

        order = get_order(order_id)
        assert order.status == OrderStatus.DISPATCHED
        altered = get_order_item(altered_id)
        assert altered.get_section("kaftan").current_round == 2
        assert altered.get_section("pants").current_round == 1
        assert replay(altered.timeline, OrderItemStatus.RECEIVED) == OrderItemStatus.DISPATCHED
        assert sum(p.amount for p in order.payments) == Decimal("1000.00")
