"""Service layer exception classes for Couture Tracker.

This module defines all custom exceptions used by the service layer to provide
consistent error handling across the workflow engine.

Exception Hierarchy:
    ServiceError (base)
    ├── ValidationError            (400)
    ├── AuthorizationError         (403)
    ├── NotFoundError              (404)
    │   ├── OrderNotFound
    │   ├── OrderItemNotFound
    │   ├── PacketNotFound
    │   ├── PickListItemNotFound
    │   ├── SectionNotFound
    │   └── ProductionTaskNotFound
    ├── StateConflictError         (409)
    │   └── PaymentIncompleteError
    └── ExternalServiceError       (502)

Policy:
    - ValidationError is raised before any mutation and names the offending fields.
    - StateConflictError is definitive; retrying the same call cannot succeed.
    - ExternalServiceError wraps collaborator failures and may be retried by the caller.
"""

from typing import List, Optional


class ServiceError(Exception):
    """Base exception for all service layer errors.

    All service-specific exceptions should inherit from this class.

    Attributes:
        http_status_code: Status code an API layer should map this error to
    """

    http_status_code = 500


class ValidationError(ServiceError):
    """Raised when input validation fails.

    Args:
        errors: List of error messages, one per offending field
        field: Name of the first offending field, when known

    Example:
        >>> raise ValidationError(["notes: This field is required"], field="notes")
        ValidationError: Validation failed: notes: This field is required
    """

    http_status_code = 400

    def __init__(self, errors: List[str], field: Optional[str] = None):
        self.errors = errors
        self.field = field
        error_msg = "; ".join(errors)
        super().__init__(f"Validation failed: {error_msg}")


class AuthorizationError(ServiceError):
    """Raised when the caller lacks the permission an operation requires.

    Args:
        user_id: The caller
        permission: Permission name that was checked
    """

    http_status_code = 403

    def __init__(self, user_id, permission: str, message: Optional[str] = None):
        self.user_id = user_id
        self.permission = permission
        super().__init__(message or f"User '{user_id}' lacks permission '{permission}'")


class NotFoundError(ServiceError):
    """Raised when a referenced entity does not exist."""

    http_status_code = 404


class OrderNotFound(NotFoundError):
    """Raised when an order cannot be found by ID."""

    def __init__(self, order_id: int):
        self.order_id = order_id
        super().__init__(f"Order with ID {order_id} not found")


class OrderItemNotFound(NotFoundError):
    """Raised when an order item cannot be found by ID.

    Example:
        >>> raise OrderItemNotFound(42)
        OrderItemNotFound: Order item with ID 42 not found
    """

    def __init__(self, order_item_id: int):
        self.order_item_id = order_item_id
        super().__init__(f"Order item with ID {order_item_id} not found")


class PacketNotFound(NotFoundError):
    """Raised when an order item has no packet yet."""

    def __init__(self, order_item_id: int):
        self.order_item_id = order_item_id
        super().__init__(f"No packet exists for order item {order_item_id}")


class PickListItemNotFound(NotFoundError):
    """Raised when a pick-list row is not part of the packet."""

    def __init__(self, pick_item_id: int, order_item_id: int):
        self.pick_item_id = pick_item_id
        self.order_item_id = order_item_id
        super().__init__(
            f"Pick list item {pick_item_id} not found in packet for order item {order_item_id}"
        )


class SectionNotFound(NotFoundError):
    """Raised when an order item has no section with the given name."""

    def __init__(self, order_item_id: int, section: str):
        self.order_item_id = order_item_id
        self.section = section
        super().__init__(f"Section '{section}' not found on order item {order_item_id}")


class ProductionTaskNotFound(NotFoundError):
    """Raised when a production task is not part of the order item."""

    def __init__(self, task_id: int, order_item_id: int):
        self.task_id = task_id
        self.order_item_id = order_item_id
        super().__init__(f"Production task {task_id} not found for order item {order_item_id}")


class StateConflictError(ServiceError):
    """Raised when an operation is attempted outside its legal originating state.

    Args:
        entity: Entity type name (e.g. "Packet", "Section 'kaftan'")
        entity_id: Identifier of the entity
        current_state: State the entity is actually in
        operation: Description of the attempted operation, including the
            required state (e.g. "complete packet (must be in IN_PROGRESS state)")

    Example:
        >>> raise StateConflictError("Packet", 7, "PENDING", "pick item (must be in IN_PROGRESS state)")
        StateConflictError: Cannot pick item (must be in IN_PROGRESS state): Packet 7 is in PENDING state
    """

    http_status_code = 409

    def __init__(self, entity: str, entity_id, current_state, operation: str):
        self.entity = entity
        self.entity_id = entity_id
        self.current_state = current_state
        self.operation = operation
        state_value = getattr(current_state, "value", current_state)
        super().__init__(
            f"Cannot {operation}: {entity} {entity_id} is in {state_value} state"
        )


class PaymentIncompleteError(StateConflictError):
    """Raised when payments do not yet cover the order total."""

    def __init__(self, order_id: int, total_paid, total_amount, current_state):
        self.total_paid = total_paid
        self.total_amount = total_amount
        self.balance_due = total_amount - total_paid
        super().__init__(
            "Order",
            order_id,
            current_state,
            f"approve payments (paid {total_paid} of {total_amount})",
        )


class ExternalServiceError(ServiceError):
    """Raised when an inventory, identity or media collaborator fails.

    The operation left no persisted changes; callers may retry.
    """

    http_status_code = 502
    retryable = True

    def __init__(self, service: str, message: str, original_error: Exception = None):
        self.service = service
        self.original_error = original_error
        super().__init__(f"{service} service error: {message}")
