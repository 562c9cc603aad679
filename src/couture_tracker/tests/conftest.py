"""Pytest configuration and fixtures for workflow service tests."""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, scoped_session

import couture_tracker.models  # noqa: F401
from couture_tracker.models.base import Base
from couture_tracker.services.collaborators import (
    AllowAllIdentityService,
    InMemoryInventoryService,
    InMemoryMediaStorage,
    RecordingNotificationPublisher,
    configure_collaborators,
    reset_collaborators,
)
from couture_tracker.utils.config import reset_config

PRODUCT_ID = "GOWN-001"
READY_STOCK_PRODUCT_ID = "KURTA-RS"
PRODUCTION_HEADS = ["head-a", "head-b", "head-c"]


@pytest.fixture(scope="function")
def test_db():
    """Provide a clean test database for each test function.

    This fixture:
    1. Creates an in-memory SQLite database
    2. Creates all tables
    3. Provides the database to the test
    4. Drops all tables after the test completes
    """
    # Create in-memory SQLite database for testing
    engine = create_engine("sqlite:///:memory:", echo=False)

    # Create all tables
    Base.metadata.create_all(engine)

    # Create session factory
    session_factory = sessionmaker(bind=engine, expire_on_commit=False)
    Session = scoped_session(session_factory)

    # Monkey-patch the global session factory for tests
    import couture_tracker.services.database as db_module

    original_get_session = db_module.get_session_factory
    db_module.get_session_factory = lambda: Session

    # Provide database to test
    yield Session

    # Cleanup
    Session.remove()
    Base.metadata.drop_all(engine)
    engine.dispose()

    # Restore original session factory
    db_module.get_session_factory = original_get_session


@pytest.fixture(autouse=True)
def reset_app_config():
    """Drop the config singleton so environment overrides take effect per test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture(autouse=True)
def collaborators():
    """Install fresh in-memory collaborators for each test.

    The inventory starts empty; use the catalog fixture for stock and
    requirements.
    """
    reset_collaborators()
    active = configure_collaborators(
        inventory=InMemoryInventoryService(),
        identity=AllowAllIdentityService(production_heads=PRODUCTION_HEADS),
        media=InMemoryMediaStorage(),
        notifications=RecordingNotificationPublisher(),
    )
    yield active
    reset_collaborators()


@pytest.fixture
def inventory(collaborators):
    return collaborators.inventory


@pytest.fixture
def notifications(collaborators):
    return collaborators.notifications


@pytest.fixture
def catalog(inventory):
    """Register materials and per-unit requirements for the test products.

    GOWN-001 has three pieces:
    - kaftan: silk (2.5 m) and zari lace (4 m)
    - pants: cotton (1.5 m)
    - dupatta: chiffon (2 m)

    KURTA-RS is a ready-stock product with a single "kurta" piece.
    """
    inventory.add_item("SILK-01", "Raw Silk", sku="SLK-RAW", unit="m", rack_location="A-01", stock=100)
    inventory.add_item("LACE-07", "Zari Lace", sku="LCE-ZR", unit="m", rack_location="B-07", stock=100)
    inventory.add_item("COT-02", "Cotton Lining", sku="COT-LN", unit="m", rack_location="A-02", stock=100)
    inventory.add_item("CHF-03", "Chiffon", sku="CHF-PL", unit="m", rack_location="C-03", stock=100)
    inventory.add_item("KRT-99", "Finished Kurta", sku="KRT-M", unit="pcs", rack_location="RS-1", stock=10)

    inventory.add_requirement(PRODUCT_ID, "SILK-01", "2.5", "kaftan")
    inventory.add_requirement(PRODUCT_ID, "LACE-07", "4", "kaftan")
    inventory.add_requirement(PRODUCT_ID, "COT-02", "1.5", "pants")
    inventory.add_requirement(PRODUCT_ID, "CHF-03", "2", "dupatta")
    inventory.add_requirement(READY_STOCK_PRODUCT_ID, "KRT-99", "1", "kurta")
    return inventory


class WorkflowHelper:
    """Drives orders through the workshop stages so tests can start mid-flow."""

    def __init__(self, inventory):
        self.inventory = inventory
        self._sequence = 0

    def create_order(
        self,
        sections=("kaftan", "pants"),
        items=1,
        total_amount="1000.00",
        product_id=PRODUCT_ID,
    ):
        """Create an order and return (order_id, [order_item_id, ...])."""
        from couture_tracker.services.order_item_service import create_order

        self._sequence += 1
        order = create_order(
            order_number=f"ORD-{self._sequence:04d}",
            customer_name="Test Client",
            total_amount=total_amount,
            items=[
                {
                    "product_id": product_id,
                    "product_name": "Bridal Gown",
                    "size": "M",
                    "quantity": 1,
                    "due_date": "2026-12-01",
                    "sections": list(sections),
                }
                for _ in range(items)
            ],
            created_by="sales-1",
        )
        return order.id, [item.id for item in order.items]

    def sections_of(self, order_item_id):
        from couture_tracker.services.order_item_service import get_order_item

        return get_order_item(order_item_id).section_names

    def pick_all(self, order_item_id, picker="picker-1"):
        from couture_tracker.services.packet_service import get_packet, pick_item

        for row in get_packet(order_item_id).pick_list:
            if not row.is_picked:
                pick_item(order_item_id, row.id, user_id=picker)

    def packet_in_progress(self, order_item_id, picker="picker-1"):
        from couture_tracker.services.inventory_check_service import run_inventory_check
        from couture_tracker.services.packet_service import assign_packet, start_packet

        run_inventory_check(order_item_id, checked_by="system")
        assign_packet(order_item_id, picker, "manager-1")
        start_packet(order_item_id, picker)

    def packet_completed(self, order_item_id, picker="picker-1"):
        from couture_tracker.services.packet_service import complete_packet

        self.packet_in_progress(order_item_id, picker)
        self.pick_all(order_item_id, picker)
        complete_packet(order_item_id, picker)

    def packet_approved(self, order_item_id, is_ready_stock=False, picker="picker-1"):
        from couture_tracker.services.packet_service import approve_packet

        self.packet_completed(order_item_id, picker)
        approve_packet(order_item_id, "checker-1", is_ready_stock)

    def dyeing_done(self, order_item_id, dyer="dyer-1"):
        from couture_tracker.services.dyeing_service import (
            accept_dyeing,
            complete_dyeing,
            start_dyeing,
        )

        sections = self.sections_of(order_item_id)
        accept_dyeing(order_item_id, sections, dyer)
        start_dyeing(order_item_id, sections, dyer)
        complete_dyeing(order_item_id, sections, dyer)

    def production_done(self, order_item_id, sections=None, tailor="tailor-1"):
        from couture_tracker.services.production_service import (
            complete_section_production,
            send_section_to_qa,
            start_section_production,
        )

        sections = sections or self.sections_of(order_item_id)
        start_section_production(order_item_id, sections, tailor)
        complete_section_production(order_item_id, sections, tailor)
        for name in sections:
            send_section_to_qa(order_item_id, name, tailor)

    def in_qa(self, order_item_id, is_ready_stock=False):
        """Bring every section of the item to QA_PENDING."""
        self.packet_approved(order_item_id, is_ready_stock=is_ready_stock)
        if not is_ready_stock:
            self.dyeing_done(order_item_id)
            self.production_done(order_item_id)

    def qa_approved(self, order_item_id, is_ready_stock=False):
        from couture_tracker.services.qa_service import approve_section

        self.in_qa(order_item_id, is_ready_stock=is_ready_stock)
        for name in self.sections_of(order_item_id):
            approve_section(order_item_id, name, "qa-1")

    def video_uploaded(self, order_item_id, is_ready_stock=False):
        from couture_tracker.services.qa_service import confirm_video_upload

        self.qa_approved(order_item_id, is_ready_stock=is_ready_stock)
        confirm_video_upload(order_item_id, f"media://qa/{order_item_id}.mp4", uploaded_by="qa-1")

    def awaiting_client(self, order_id, order_item_ids):
        from couture_tracker.services.sales_approval_service import (
            send_order_to_client,
            send_order_to_sales,
        )

        for order_item_id in order_item_ids:
            self.video_uploaded(order_item_id)
        send_order_to_sales(order_id, "sales-1")
        send_order_to_client(order_id, "sales-1")


@pytest.fixture
def workflow(test_db, catalog):
    """Provide a WorkflowHelper bound to the test database and catalog."""
    return WorkflowHelper(catalog)


@pytest.fixture
def file_db(monkeypatch, tmp_path):
    """Initialize the application database in a temporary file.

    Unlike test_db, every session_scope() gets its own session, so several
    threads can work on the database at once.
    """
    from couture_tracker.services.database import close_connections, initialize_app_database

    path = tmp_path / "workshop.db"
    monkeypatch.setenv("COUTURE_TRACKER_DATABASE_URL", f"sqlite:///{path}")
    close_connections()
    initialize_app_database()
    yield path
    close_connections()


@pytest.fixture
def file_workflow(file_db, catalog):
    """Provide a WorkflowHelper bound to the file database."""
    return WorkflowHelper(catalog)
