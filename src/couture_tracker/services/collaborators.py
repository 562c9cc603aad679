"""
External collaborators consumed by the workflow engine.

The engine does not own inventory stock, identity, media storage or
notification delivery. It talks to them through the narrow protocols defined
here. A process-wide registry holds the active implementations; the defaults
are in-memory versions suitable for tests and single-user use.

Usage:
    from couture_tracker.services.collaborators import configure_collaborators

    configure_collaborators(inventory=MyInventoryAdapter(), identity=MyAuthAdapter())
"""

import logging
import uuid as uuid_lib
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Protocol

from .exceptions import AuthorizationError, ExternalServiceError, ServiceError
from ..utils.constants import DEFAULT_PIECE
from ..utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)


# ============================================================================
# Data Transfer Objects
# ============================================================================


@dataclass
class MaterialRequirement:
    """One material needed for a section of an order item.

    Attributes:
        inventory_item_id: Inventory item reference
        required_qty: Quantity needed (already multiplied by item quantity)
        piece: Section the material is for
        unit / inventory_item_name / sku / rack_location: Optional enrichment;
            missing values are looked up through get_item_details()
        available_qty: Stock on hand; None when the inventory does not track it
    """

    inventory_item_id: str
    required_qty: Decimal
    piece: str = DEFAULT_PIECE
    unit: Optional[str] = None
    inventory_item_name: Optional[str] = None
    sku: Optional[str] = None
    rack_location: Optional[str] = None
    available_qty: Optional[Decimal] = None

    @property
    def is_available(self) -> bool:
        if self.available_qty is None:
            return True
        return Decimal(str(self.available_qty)) >= Decimal(str(self.required_qty))


@dataclass
class InventoryItemDetails:
    """Pick-list enrichment for an inventory item."""

    inventory_item_id: str
    name: str
    sku: Optional[str] = None
    unit: Optional[str] = None
    rack_location: Optional[str] = None


@dataclass
class VideoSource:
    """A video to upload: either raw data or a URL, plus its metadata."""

    filename: str
    content_type: str
    size: int
    data: Optional[bytes] = None
    url: Optional[str] = None


@dataclass
class StoredMedia:
    """Durable playback reference returned by media storage."""

    reference: str
    uploaded_at: datetime


# ============================================================================
# Protocols
# ============================================================================


class InventoryService(Protocol):
    """Material requirements, item metadata and allocations."""

    def get_material_requirements(
        self, product_id: str, quantity: int, sections: List[str]
    ) -> List[MaterialRequirement]:
        ...

    def get_item_details(self, inventory_item_id: str) -> Optional[InventoryItemDetails]:
        ...

    def allocate(self, order_item_id: int, requirements: List[MaterialRequirement]) -> None:
        ...

    def release(self, order_item_id: int, sections: List[str]) -> None:
        ...


class IdentityService(Protocol):
    """Caller identity and permission checks."""

    def has_permission(self, user_id: str, permission: str) -> bool:
        ...

    def get_user_name(self, user_id: str) -> Optional[str]:
        ...

    def get_production_heads(self) -> List[str]:
        """Ordered roster of production head user ids."""
        ...


class MediaStorageService(Protocol):
    def store(self, source: VideoSource) -> StoredMedia:
        ...


class NotificationPublisher(Protocol):
    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        ...


# ============================================================================
# Default Implementations
# ============================================================================


class InMemoryInventoryService:
    """
    Inventory collaborator backed by dictionaries.

    Requirements are registered per product and per single unit; they are
    multiplied by the order item quantity when requested.
    """

    def __init__(self):
        self.items: Dict[str, InventoryItemDetails] = {}
        self.requirements: Dict[str, List[MaterialRequirement]] = {}
        self.stock: Dict[str, Decimal] = {}
        self.allocations: Dict[int, List[MaterialRequirement]] = {}
        self.released: List[Dict[str, Any]] = []

    def add_item(
        self,
        inventory_item_id: str,
        name: str,
        sku: Optional[str] = None,
        unit: Optional[str] = None,
        rack_location: Optional[str] = None,
        stock: Optional[Decimal] = None,
    ) -> None:
        self.items[inventory_item_id] = InventoryItemDetails(
            inventory_item_id=inventory_item_id,
            name=name,
            sku=sku,
            unit=unit,
            rack_location=rack_location,
        )
        if stock is not None:
            self.stock[inventory_item_id] = Decimal(str(stock))

    def set_stock(self, inventory_item_id: str, quantity) -> None:
        self.stock[inventory_item_id] = Decimal(str(quantity))

    def add_requirement(
        self, product_id: str, inventory_item_id: str, qty_per_unit, piece: str
    ) -> None:
        self.requirements.setdefault(product_id, []).append(
            MaterialRequirement(
                inventory_item_id=inventory_item_id,
                required_qty=Decimal(str(qty_per_unit)),
                piece=piece,
            )
        )

    def get_material_requirements(
        self, product_id: str, quantity: int, sections: List[str]
    ) -> List[MaterialRequirement]:
        wanted = set(sections)
        result = []
        for requirement in self.requirements.get(product_id, []):
            if requirement.piece not in wanted:
                continue
            result.append(
                MaterialRequirement(
                    inventory_item_id=requirement.inventory_item_id,
                    required_qty=requirement.required_qty * quantity,
                    piece=requirement.piece,
                    available_qty=self.stock.get(requirement.inventory_item_id),
                )
            )
        return result

    def get_item_details(self, inventory_item_id: str) -> Optional[InventoryItemDetails]:
        return self.items.get(inventory_item_id)

    def allocate(self, order_item_id: int, requirements: List[MaterialRequirement]) -> None:
        self.allocations.setdefault(order_item_id, []).extend(requirements)

    def release(self, order_item_id: int, sections: List[str]) -> None:
        released_sections = set(sections)
        remaining = [
            requirement
            for requirement in self.allocations.get(order_item_id, [])
            if requirement.piece not in released_sections
        ]
        self.allocations[order_item_id] = remaining
        self.released.append({"order_item_id": order_item_id, "sections": list(sections)})


class AllowAllIdentityService:
    """Identity collaborator granting every permission."""

    def __init__(self, production_heads: Optional[List[str]] = None):
        self.production_heads = list(production_heads or [])

    def has_permission(self, user_id: str, permission: str) -> bool:
        return True

    def get_user_name(self, user_id: str) -> Optional[str]:
        return user_id

    def get_production_heads(self) -> List[str]:
        return list(self.production_heads)


class InMemoryMediaStorage:
    """Media storage that keeps uploads in memory and hands out media:// references."""

    def __init__(self):
        self.stored: Dict[str, VideoSource] = {}

    def store(self, source: VideoSource) -> StoredMedia:
        reference = f"media://{uuid_lib.uuid4()}/{source.filename}"
        self.stored[reference] = source
        return StoredMedia(reference=reference, uploaded_at=utc_now())


class RecordingNotificationPublisher:
    """Publisher that logs and remembers every notification."""

    def __init__(self):
        self.published: List[Dict[str, Any]] = []

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        logger.debug(f"Notification {topic}: {payload}")
        self.published.append({"topic": topic, "payload": payload})

    def topics(self) -> List[str]:
        return [entry["topic"] for entry in self.published]


# ============================================================================
# Registry
# ============================================================================


@dataclass
class Collaborators:
    inventory: InventoryService = field(default_factory=InMemoryInventoryService)
    identity: IdentityService = field(default_factory=AllowAllIdentityService)
    media: MediaStorageService = field(default_factory=InMemoryMediaStorage)
    notifications: NotificationPublisher = field(default_factory=RecordingNotificationPublisher)


_collaborators: Optional[Collaborators] = None


def get_collaborators() -> Collaborators:
    """Get the active collaborators, creating the in-memory defaults on first use."""
    global _collaborators
    if _collaborators is None:
        _collaborators = Collaborators()
    return _collaborators


def configure_collaborators(
    inventory: Optional[InventoryService] = None,
    identity: Optional[IdentityService] = None,
    media: Optional[MediaStorageService] = None,
    notifications: Optional[NotificationPublisher] = None,
) -> Collaborators:
    """
    Replace some or all collaborators.

    Arguments left as None keep the currently active implementation.

    Returns:
        The active Collaborators
    """
    current = get_collaborators()
    if inventory is not None:
        current.inventory = inventory
    if identity is not None:
        current.identity = identity
    if media is not None:
        current.media = media
    if notifications is not None:
        current.notifications = notifications
    return current


def reset_collaborators() -> None:
    """Restore the in-memory defaults (used by tests)."""
    global _collaborators
    _collaborators = None


# ============================================================================
# Helpers
# ============================================================================


def call_external(service: str, func: Callable, *args, **kwargs):
    """
    Call a collaborator, converting unexpected failures to ExternalServiceError.

    ServiceErrors raised by the collaborator propagate unchanged.
    """
    try:
        return func(*args, **kwargs)
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"{service} call {getattr(func, '__name__', func)} failed: {e}")
        raise ExternalServiceError(service, str(e), original_error=e) from e


def require_permission(user_id: str, permission: str) -> None:
    """
    Raise AuthorizationError unless the identity service grants the permission.

    Raises:
        AuthorizationError: If the permission is not held
        ExternalServiceError: If the identity service fails
    """
    identity = get_collaborators().identity
    allowed = call_external("identity", identity.has_permission, user_id, permission)
    if not allowed:
        raise AuthorizationError(user_id, permission)
