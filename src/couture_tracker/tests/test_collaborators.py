"""Tests for collaborator wiring and the notification outbox.

Tests cover:
- call_external error wrapping
- Permission checks through the identity collaborator
- In-memory inventory behaviour used by the workflow services
- Notifications published on commit and discarded on rollback
"""

import logging
from decimal import Decimal

import pytest

from couture_tracker.services.collaborators import (
    AllowAllIdentityService,
    InMemoryInventoryService,
    InMemoryMediaStorage,
    MaterialRequirement,
    VideoSource,
    call_external,
    configure_collaborators,
    get_collaborators,
    require_permission,
)
from couture_tracker.services.database import (
    pending_notifications,
    queue_notification,
    session_scope,
)
from couture_tracker.services.exceptions import (
    AuthorizationError,
    ExternalServiceError,
    PacketNotFound,
    ValidationError,
)
from couture_tracker.services.inventory_check_service import run_inventory_check
from couture_tracker.services.packet_service import get_packet


class FailingPublisher:
    def publish(self, topic, payload):
        raise RuntimeError("broker unreachable")


class TestCallExternal:
    """Tests for call_external()."""

    def test_returns_result(self):
        assert call_external("inventory", lambda x: x * 2, 21) == 42

    def test_wraps_unexpected_errors(self):
        def broken():
            raise ConnectionError("connection refused")

        with pytest.raises(ExternalServiceError) as exc_info:
            call_external("inventory", broken)

        assert exc_info.value.service == "inventory"
        assert isinstance(exc_info.value.original_error, ConnectionError)
        assert "inventory service error: connection refused" == str(exc_info.value)

    def test_service_errors_propagate(self):
        def rejects():
            raise ValidationError(["sku: unknown"], field="sku")

        with pytest.raises(ValidationError):
            call_external("inventory", rejects)


class TestRequirePermission:
    """Tests for require_permission()."""

    def test_allowed(self):
        require_permission("manager-1", "packets.assign")

    def test_denied(self):
        class DenyQA(AllowAllIdentityService):
            def has_permission(self, user_id, permission):
                return permission != "qa.review"

        configure_collaborators(identity=DenyQA())

        require_permission("tailor-1", "packets.assign")
        with pytest.raises(AuthorizationError) as exc_info:
            require_permission("tailor-1", "qa.review")
        assert exc_info.value.permission == "qa.review"

    def test_identity_failure(self):
        class BrokenIdentity(AllowAllIdentityService):
            def has_permission(self, user_id, permission):
                raise TimeoutError("identity service timed out")

        configure_collaborators(identity=BrokenIdentity())

        with pytest.raises(ExternalServiceError) as exc_info:
            require_permission("manager-1", "packets.assign")
        assert exc_info.value.service == "identity"


class TestInMemoryCollaborators:
    """Tests for the in-memory inventory and media storage."""

    def test_requirements_scaled_by_quantity(self, catalog):
        requirements = catalog.get_material_requirements("GOWN-001", 2, ["kaftan"])

        assert [(r.inventory_item_id, r.required_qty) for r in requirements] == [
            ("SILK-01", Decimal("5.0")),
            ("LACE-07", Decimal("8")),
        ]
        assert all(r.is_available for r in requirements)

    def test_shortage(self, catalog):
        catalog.set_stock("COT-02", "1")

        (pants,) = catalog.get_material_requirements("GOWN-001", 1, ["pants"])

        assert pants.available_qty == Decimal("1")
        assert not pants.is_available

    def test_untracked_stock_is_available(self):
        requirement = MaterialRequirement(inventory_item_id="THREAD", required_qty=Decimal("3"))
        assert requirement.piece == "general"
        assert requirement.is_available

    def test_release_drops_section_allocations(self):
        inventory = InMemoryInventoryService()
        inventory.allocate(
            1,
            [
                MaterialRequirement("SILK-01", Decimal("2.5"), piece="kaftan"),
                MaterialRequirement("COT-02", Decimal("1.5"), piece="pants"),
            ],
        )

        inventory.release(1, ["kaftan"])

        assert [r.piece for r in inventory.allocations[1]] == ["pants"]
        assert inventory.released == [{"order_item_id": 1, "sections": ["kaftan"]}]

    def test_media_storage_reference(self):
        storage = InMemoryMediaStorage()
        stored = storage.store(VideoSource("fitting.mp4", "video/mp4", 1024, data=b"\x00"))

        assert stored.reference.startswith("media://")
        assert stored.reference.endswith("/fitting.mp4")
        assert stored.reference in storage.stored


class TestNotificationOutbox:
    """Tests for notifications queued on the session."""

    def test_published_after_commit(self, test_db, notifications):
        with session_scope() as session:
            queue_notification(session, "packet.created", {"order_item_id": 1})
            assert pending_notifications(session) == [("packet.created", {"order_item_id": 1})]
            assert notifications.published == []

        assert notifications.published == [
            {"topic": "packet.created", "payload": {"order_item_id": 1}}
        ]

    def test_discarded_on_rollback(self, test_db, notifications):
        with pytest.raises(RuntimeError):
            with session_scope() as session:
                queue_notification(session, "packet.created", {"order_item_id": 1})
                raise RuntimeError("boom")

        assert notifications.published == []
        with session_scope() as session:
            assert pending_notifications(session) == []

    def test_service_rollback_publishes_nothing(self, workflow, notifications):
        """Work done in a caller's session that rolls back leaves no notification."""
        _, (item_id,) = workflow.create_order()
        published = list(notifications.topics())

        with pytest.raises(RuntimeError):
            with session_scope() as session:
                run_inventory_check(item_id, checked_by="system", session=session)
                assert "packet.created" in [topic for topic, _ in pending_notifications(session)]
                raise RuntimeError("caller failed")

        assert notifications.topics() == published
        with pytest.raises(PacketNotFound):
            get_packet(item_id)

    def test_publisher_failure_does_not_undo_commit(self, test_db, caplog):
        configure_collaborators(notifications=FailingPublisher())

        with caplog.at_level(logging.ERROR):
            with session_scope() as session:
                queue_notification(session, "packet.created", {"order_item_id": 1})

        assert "Failed to publish notification 'packet.created'" in caplog.text
        assert isinstance(get_collaborators().notifications, FailingPublisher)
