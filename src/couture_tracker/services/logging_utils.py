"""Service layer logging utilities.

Provides structured logging functions for workflow operations, enabling a
consistent log format and context across the packet, QA and sales services.

Usage:
    from couture_tracker.services.logging_utils import get_service_logger, log_operation

    logger = get_service_logger(__name__)

    log_operation(
        logger,
        operation="complete_packet",
        outcome="success",
        order_item_id=12,
        packet_round=2,
    )
"""

import logging
from typing import Any

LOGGER_PREFIX = "couture_tracker.services"


def get_service_logger(name: str) -> logging.Logger:
    """
    Get a logger configured for service operations.

    Args:
        name: Logger name (typically __name__ of the calling module)

    Returns:
        Logger instance with the 'couture_tracker.services' prefix.

    Example:
        >>> logger = get_service_logger(__name__)
        >>> logger.name
        'couture_tracker.services.packet_service'
    """
    if "." in name:
        name = name.split(".")[-1]
    return logging.getLogger(f"{LOGGER_PREFIX}.{name}")


def log_operation(
    logger: logging.Logger,
    operation: str,
    outcome: str,
    level: int = logging.INFO,
    **context: Any,
) -> None:
    """
    Log a service operation with structured context.

    The message is "<operation>: <outcome>"; the context is passed via 'extra'
    so handlers can emit it as structured fields.

    Args:
        logger: Logger instance to use
        operation: Operation name (e.g., "pick_item", "reject_section")
        outcome: Outcome description (e.g., "success", "barrier_reached")
        level: Log level (default: INFO)
        **context: Entity IDs and other details. Keys must not collide with
            LogRecord attributes such as "message" or "args".
    """
    extra = {
        "operation": operation,
        "outcome": outcome,
        **context,
    }
    logger.log(level, f"{operation}: {outcome}", extra=extra)
