"""
Constants for the Couture Tracker workflow engine.

This module defines system-wide constants including:
- Application metadata
- Rejection reason codes for each review stage
- Video upload constraints
- Permission names checked against the identity service
"""

from typing import Dict, List

# ============================================================================
# Application Metadata
# ============================================================================

APP_NAME = "Couture Tracker"
APP_VERSION = "0.1.0"
DATABASE_VERSION = "1.0"
DATABASE_FILENAME = "couture_tracker.db"

# Environment variable names
ENV_ENVIRONMENT = "COUTURE_TRACKER_ENV"
ENV_DATABASE_URL = "COUTURE_TRACKER_DATABASE_URL"
ENV_DB_TIMEOUT = "COUTURE_TRACKER_DB_TIMEOUT"
ENV_MAX_VIDEO_SIZE = "COUTURE_TRACKER_MAX_VIDEO_SIZE"
ENV_LOG_LEVEL = "COUTURE_TRACKER_LOG_LEVEL"

DEFAULT_DB_TIMEOUT = 30
DEFAULT_LOG_LEVEL = "INFO"

# ============================================================================
# Pick List Defaults
# ============================================================================

DEFAULT_RACK_LOCATION = "TBD"
DEFAULT_UNIT = "Unit"
DEFAULT_PIECE = "general"

# ============================================================================
# Rejection Reasons
# ============================================================================

PACKET_REJECTION_REASONS: Dict[str, str] = {
    "WRONG_MATERIAL": "Wrong material picked",
    "WRONG_QUANTITY": "Incorrect quantity",
    "DAMAGED_MATERIAL": "Material damaged",
    "MISSING_ITEMS": "Items missing from packet",
    "OTHER": "Other",
}

QA_REJECTION_REASONS: Dict[str, str] = {
    "STITCHING_DEFECT": "Stitching defect",
    "MEASUREMENT_MISMATCH": "Measurements do not match",
    "COLOR_MISMATCH": "Color does not match",
    "EMBELLISHMENT_ISSUE": "Embellishment issue",
    "FINISHING_ISSUE": "Finishing issue",
    "OTHER": "Other",
}

DYEING_REJECTION_REASONS: Dict[str, str] = {
    "FABRIC_DEFECT": "Fabric defect found",
    "WRONG_FABRIC": "Wrong fabric supplied",
    "INSUFFICIENT_QUANTITY": "Insufficient fabric quantity",
    "SHADE_NOT_ACHIEVABLE": "Shade cannot be achieved",
    "OTHER": "Other",
}

# ============================================================================
# Production Tasks
# ============================================================================

PRODUCTION_TASK_TYPES: Dict[str, str] = {
    "CUTTING_WORK": "Cutting",
    "STITCHING": "Stitching",
    "EMBROIDERY": "Embroidery",
    "HAND_WORK": "Hand work",
    "FINISHING": "Finishing",
    "PRESSING": "Pressing",
    "CUSTOM": "Custom task",
}

# ============================================================================
# Video Upload Constraints
# ============================================================================

ALLOWED_VIDEO_CONTENT_TYPES: List[str] = [
    "video/mp4",
    "video/quicktime",
    "video/x-msvideo",
    "video/webm",
]

# 2 GB
DEFAULT_MAX_VIDEO_SIZE = 2 * 1024 * 1024 * 1024

# ============================================================================
# Client Approval
# ============================================================================

MIN_APPROVAL_PROOFS = 1
MAX_APPROVAL_PROOFS = 10

# ============================================================================
# Permissions
# ============================================================================

PERMISSION_ASSIGN_TASKS = "packets.assign"
PERMISSION_APPROVE_PACKETS = "packets.approve"
PERMISSION_QA_REVIEW = "qa.review"
PERMISSION_SALES_APPROVE = "sales.approve"
PERMISSION_PAYMENTS_APPROVE = "sales.payments"
PERMISSION_DISPATCH = "dispatch.manage"

# Round-robin roster keys
ROSTER_PRODUCTION_HEADS = "production_heads"

# ============================================================================
# Error Messages
# ============================================================================

ERROR_REQUIRED_FIELD = "This field is required"
ERROR_INVALID_POSITIVE = "Must be a positive number"
ERROR_INVALID_WHOLE = "Must be a positive whole number"
ERROR_INVALID_DATE = "Must be an ISO date (YYYY-MM-DD)"
