"""QA Service - section quality review, the video barrier and QA videos.

Section flow:
    QA_PENDING -> QA_APPROVED            (approve, round unchanged)
    QA_PENDING -> REWORK_REQUIRED        (reject, round + 1)

The order item becomes ALL_SECTIONS_QA_APPROVED only when every one of its
sections is approved. The check reads the section rows inside the approving
transaction while the order item lock is held, so two approvals of the last
two sections cannot both miss the barrier.

Once the barrier holds, QA records a video of the finished garment. Media
storage is called first; the order item is only updated by the confirmation
step, so a storage failure leaves it untouched.

Session Management Pattern:
- All public functions accept session=None parameter
- If session provided, use it directly
- If session is None, take the order item lock and create a new session
  via session_scope()
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models.enums import (
    OrderItemStatus,
    ReviewStage,
    SalesRequestStatus,
    SalesRequestType,
    SectionStatus,
)
from ..models.order_item import OrderItem, VideoRecord
from ..models.sales_request import SalesRequest
from ..models.section_state import SectionEvent, SectionState
from ..utils.config import get_config
from ..utils.constants import (
    ALLOWED_VIDEO_CONTENT_TYPES,
    PERMISSION_QA_REVIEW,
    QA_REJECTION_REASONS,
)
from ..utils.datetime_utils import to_iso, utc_now
from ..utils.validators import validate_choice, validate_required_string
from .collaborators import StoredMedia, VideoSource, call_external, get_collaborators, require_permission
from .database import order_item_lock, queue_notification, session_scope
from .exceptions import StateConflictError, ValidationError
from .logging_utils import get_service_logger, log_operation
from .order_item_service import (
    get_order_item,
    get_order_item_for_update,
    get_section_or_raise,
    refresh_order_item_status,
    send_section_to_rework,
    transition_order_item,
    transition_section,
)
from .state_machine import ORDER_ITEM_FSM

logger = get_service_logger(__name__)

_APPROVED = (SectionStatus.QA_APPROVED, SectionStatus.CLIENT_APPROVED)


# =============================================================================
# Fan-in barrier
# =============================================================================


def all_sections_approved(order_item_id: int, session: Session) -> bool:
    """
    Check the video barrier against the section rows of the current transaction.

    The query autoflushes pending changes, so the approval being applied is
    included in the snapshot.

    Transaction boundary: Inherits session from caller.
    """
    statuses = [
        row[0]
        for row in session.query(SectionState.status)
        .filter(SectionState.order_item_id == order_item_id)
        .all()
    ]
    return bool(statuses) and all(status in _APPROVED for status in statuses)


# =============================================================================
# Section review
# =============================================================================


def _approve_impl(
    order_item_id: int, section: str, approved_by: str, session: Session
) -> OrderItem:
    require_permission(approved_by, PERMISSION_QA_REVIEW)

    item = get_order_item_for_update(order_item_id, session)
    state = get_section_or_raise(item, section)
    transition_section(state, "qa_approve", user_id=approved_by, action="qa_approved")
    session.flush()

    ready = all_sections_approved(item.id, session)
    refresh_order_item_status(item, user_id=approved_by, action="qa_approved")

    queue_notification(
        session,
        "qa.section_approved",
        {"order_item_id": item.id, "section": state.name, "round": state.current_round},
    )
    if ready:
        queue_notification(session, "qa.ready_for_video", {"order_item_id": item.id})

    log_operation(
        logger,
        operation="approve_section",
        outcome="success",
        order_item_id=item.id,
        section=state.name,
        round=state.current_round,
        ready_for_video=ready,
    )
    return item


def approve_section(
    order_item_id: int, section: str, approved_by: str, session: Session = None
) -> OrderItem:
    """Approve a section at QA (QA_PENDING -> QA_APPROVED).

    Transaction boundary: Multi-step operation (atomic).
        1. Section -> QA_APPROVED, round unchanged
        2. Re-read all section rows of the item
        3. If every section is approved, item -> ALL_SECTIONS_QA_APPROVED

    Args:
        order_item_id: Order item
        section: Section name (case-insensitive)
        approved_by: QA reviewer
        session: Optional session for transaction sharing

    Returns:
        The updated OrderItem

    Raises:
        AuthorizationError: If the reviewer lacks the QA review permission
        SectionNotFound: If the item has no such section
        StateConflictError: If the section is not QA_PENDING
    """
    if session is not None:
        return _approve_impl(order_item_id, section, approved_by, session)

    with order_item_lock(order_item_id), session_scope() as session:
        return _approve_impl(order_item_id, section, approved_by, session)


def _reject_impl(
    order_item_id: int,
    section: str,
    reason_code: str,
    notes: str,
    rejected_by: str,
    session: Session,
) -> OrderItem:
    errors = []
    is_valid, error = validate_required_string(notes, "notes")
    if not is_valid:
        errors.append(error)
    is_valid, error = validate_choice(reason_code, QA_REJECTION_REASONS.keys(), "reason_code")
    if not is_valid:
        errors.append(error)
    if errors:
        raise ValidationError(errors, field=errors[0].split(":")[0])

    require_permission(rejected_by, PERMISSION_QA_REVIEW)

    item = get_order_item_for_update(order_item_id, session)
    state = get_section_or_raise(item, section)
    rejected_round = state.current_round
    send_section_to_rework(
        state,
        "qa_reject",
        stage=ReviewStage.QA,
        user_id=rejected_by,
        reason_code=reason_code,
        notes=notes.strip(),
    )
    session.flush()
    refresh_order_item_status(item, user_id=rejected_by, action="qa_rejected")

    queue_notification(
        session,
        "qa.section_rejected",
        {
            "order_item_id": item.id,
            "section": state.name,
            "reason_code": reason_code,
            "round": rejected_round,
        },
    )
    log_operation(
        logger,
        operation="reject_section",
        outcome="success",
        order_item_id=item.id,
        section=state.name,
        reason_code=reason_code,
        new_round=state.current_round,
    )
    return item


def reject_section(
    order_item_id: int,
    section: str,
    reason_code: str,
    notes: str,
    rejected_by: str,
    session: Session = None,
) -> OrderItem:
    """Reject a section at QA and send it back to production for rework.

    Transaction boundary: Single-step write.
    The history row records the round that was rejected; the section then
    moves to the next round.

    Args:
        order_item_id: Order item
        section: Section name (case-insensitive)
        reason_code: One of QA_REJECTION_REASONS
        notes: Mandatory reviewer notes
        rejected_by: QA reviewer
        session: Optional session for transaction sharing

    Raises:
        ValidationError: If notes are empty or reason_code is unknown
        SectionNotFound: If the item has no such section
        StateConflictError: If the section is not QA_PENDING
    """
    if session is not None:
        return _reject_impl(order_item_id, section, reason_code, notes, rejected_by, session)

    with order_item_lock(order_item_id), session_scope() as session:
        return _reject_impl(order_item_id, section, reason_code, notes, rejected_by, session)


# =============================================================================
# Videos
# =============================================================================


def validate_video_source(source: VideoSource) -> None:
    """
    Check a video against the allowed content types and the size limit.

    Raises:
        ValidationError: Listing every problem found
    """
    errors = []
    if source is None:
        raise ValidationError(["video: A video is required"], field="video")
    if not source.data and not source.url:
        errors.append("video: Either file data or a URL is required")
    if source.content_type not in ALLOWED_VIDEO_CONTENT_TYPES:
        errors.append(
            f"content_type: {source.content_type} is not allowed "
            f"(allowed: {', '.join(ALLOWED_VIDEO_CONTENT_TYPES)})"
        )
    max_size = get_config().max_video_size
    if source.size is None or source.size <= 0:
        errors.append("size: Must be greater than zero")
    elif source.size > max_size:
        errors.append(f"size: {source.size} bytes exceeds the {max_size} byte limit")
    if errors:
        raise ValidationError(errors, field=errors[0].split(":")[0])


def _record_video(
    item: OrderItem,
    playback_reference: str,
    uploaded_at: Optional[datetime],
    uploaded_by: Optional[str],
    replaced_reason: str,
) -> VideoRecord:
    previous = item.current_video
    if previous is not None:
        previous.is_current = False
        previous.replaced_at = utc_now()
        previous.replaced_reason = replaced_reason

    video = VideoRecord(
        playback_reference=playback_reference,
        uploaded_at=uploaded_at or utc_now(),
        uploaded_by=uploaded_by,
        is_current=True,
    )
    item.videos.append(video)
    for section in item.sections:
        section.qa_video_reference = playback_reference
    return video


def _require_barrier(item: OrderItem, session: Session, operation: str) -> None:
    if not all_sections_approved(item.id, session):
        raise StateConflictError(
            "Order item", item.id, item.status, f"{operation} (not every section is QA approved)"
        )


def _confirm_impl(
    order_item_id: int,
    playback_reference: str,
    uploaded_at: Optional[datetime],
    uploaded_by: Optional[str],
    session: Session,
) -> OrderItem:
    is_valid, error = validate_required_string(playback_reference, "playback_reference")
    if not is_valid:
        raise ValidationError([error], field="playback_reference")

    item = get_order_item_for_update(order_item_id, session)
    ORDER_ITEM_FSM.next_state(item.status, "upload_video", entity_id=item.id)
    _require_barrier(item, session, "upload video")

    video = _record_video(
        item, playback_reference, uploaded_at, uploaded_by, replaced_reason="Superseded by a new QA video"
    )
    transition_order_item(
        item,
        "upload_video",
        user_id=uploaded_by,
        details={"playback_reference": playback_reference},
    )
    session.flush()

    queue_notification(
        session,
        "qa.video_uploaded",
        {"order_item_id": item.id, "playback_reference": playback_reference},
    )
    log_operation(
        logger,
        operation="confirm_video_upload",
        outcome="success",
        order_item_id=item.id,
        video_id=video.id,
    )
    return item


def confirm_video_upload(
    order_item_id: int,
    playback_reference: str,
    uploaded_at: Optional[datetime] = None,
    uploaded_by: Optional[str] = None,
    session: Session = None,
) -> OrderItem:
    """Record a stored QA video and move the item to VIDEO_UPLOADED.

    Transaction boundary: Multi-step operation (atomic).
        1. Item must be ALL_SECTIONS_QA_APPROVED and every section approved
        2. Any earlier video moves to history
        3. New current VideoRecord; sections reference it
        4. Item -> VIDEO_UPLOADED

    Raises:
        ValidationError: If playback_reference is empty
        StateConflictError: If the item is not ready for video
    """
    if session is not None:
        return _confirm_impl(order_item_id, playback_reference, uploaded_at, uploaded_by, session)

    with order_item_lock(order_item_id), session_scope() as session:
        return _confirm_impl(order_item_id, playback_reference, uploaded_at, uploaded_by, session)


def _store(source: VideoSource) -> StoredMedia:
    media = get_collaborators().media
    stored = call_external("media", media.store, source)
    log_operation(
        logger,
        operation="store_video",
        outcome="success",
        filename=source.filename,
        reference=stored.reference,
    )
    return stored


def upload_video(order_item_id: int, source: VideoSource, uploaded_by: str) -> OrderItem:
    """Validate, store and confirm a QA video.

    The item's readiness is checked before media storage is called; the
    confirmation runs in its own transaction afterwards.

    Raises:
        ValidationError: If the video is missing, too large or of a disallowed type
        StateConflictError: If the item is not ready for video
        ExternalServiceError: If media storage fails (item left unchanged)
    """
    validate_video_source(source)
    item = get_order_item(order_item_id)
    ORDER_ITEM_FSM.next_state(item.status, "upload_video", entity_id=item.id)

    stored = _store(source)
    return confirm_video_upload(
        order_item_id, stored.reference, uploaded_at=stored.uploaded_at, uploaded_by=uploaded_by
    )


def _open_re_video_request(item: OrderItem, session: Session) -> Optional[SalesRequest]:
    return (
        session.query(SalesRequest)
        .filter(
            SalesRequest.order_item_id == item.id,
            SalesRequest.request_type == SalesRequestType.RE_VIDEO,
            SalesRequest.status == SalesRequestStatus.OPEN,
        )
        .order_by(SalesRequest.id)
        .first()
    )


def _confirm_re_video_impl(
    order_item_id: int,
    playback_reference: str,
    uploaded_at: Optional[datetime],
    uploaded_by: Optional[str],
    session: Session,
) -> OrderItem:
    is_valid, error = validate_required_string(playback_reference, "playback_reference")
    if not is_valid:
        raise ValidationError([error], field="playback_reference")

    item = get_order_item_for_update(order_item_id, session)
    request = _open_re_video_request(item, session)
    if request is None:
        raise StateConflictError(
            "Order item", item.id, item.status, "upload re-video (no open re-video request)"
        )
    ORDER_ITEM_FSM.next_state(item.status, "re_video_upload", entity_id=item.id)
    _require_barrier(item, session, "upload re-video")

    video = _record_video(
        item,
        playback_reference,
        uploaded_at,
        uploaded_by,
        replaced_reason=f"Re-video requested: {request.notes}",
    )
    transition_order_item(
        item,
        "re_video_upload",
        user_id=uploaded_by,
        details={"playback_reference": playback_reference, "request_id": request.id},
    )
    request.status = SalesRequestStatus.RESOLVED
    request.resolved_at = utc_now()
    request.resolved_by = uploaded_by
    session.flush()

    queue_notification(
        session,
        "qa.re_video_uploaded",
        {
            "order_id": item.order_id,
            "order_item_id": item.id,
            "request_id": request.id,
            "playback_reference": playback_reference,
        },
    )
    log_operation(
        logger,
        operation="confirm_re_video_upload",
        outcome="success",
        order_item_id=item.id,
        request_id=request.id,
        video_id=video.id,
    )
    return item


def confirm_re_video_upload(
    order_item_id: int,
    playback_reference: str,
    uploaded_at: Optional[datetime] = None,
    uploaded_by: Optional[str] = None,
    session: Session = None,
) -> OrderItem:
    """Fulfil an open re-video request with a newly stored video.

    Transaction boundary: Multi-step operation (atomic).
    The previous video moves to history and the request is resolved. The item
    stays AWAITING_CLIENT_APPROVAL.

    Raises:
        StateConflictError: If there is no open re-video request for the item
            or the item is not awaiting client approval
    """
    if session is not None:
        return _confirm_re_video_impl(order_item_id, playback_reference, uploaded_at, uploaded_by, session)

    with order_item_lock(order_item_id), session_scope() as session:
        return _confirm_re_video_impl(order_item_id, playback_reference, uploaded_at, uploaded_by, session)


def upload_re_video(order_item_id: int, source: VideoSource, uploaded_by: str) -> OrderItem:
    """Validate, store and confirm a replacement video for a re-video request."""
    validate_video_source(source)
    with session_scope() as session:
        item = get_order_item(order_item_id, session=session)
        if _open_re_video_request(item, session) is None:
            raise StateConflictError(
                "Order item", item.id, item.status, "upload re-video (no open re-video request)"
            )

    stored = _store(source)
    return confirm_re_video_upload(
        order_item_id, stored.reference, uploaded_at=stored.uploaded_at, uploaded_by=uploaded_by
    )


# =============================================================================
# Queries
# =============================================================================


def get_qa_queue(session: Session = None) -> List[Dict[str, Any]]:
    """Sections waiting for QA review, oldest order item first.

    Returns:
        List of dicts with order_id, order_item_id, product_name, size,
        section and round
    """

    def _impl(session: Session) -> List[Dict[str, Any]]:
        rows = (
            session.query(SectionState, OrderItem)
            .join(OrderItem, OrderItem.id == SectionState.order_item_id)
            .filter(SectionState.status == SectionStatus.QA_PENDING)
            .order_by(OrderItem.id, SectionState.position)
            .all()
        )
        return [
            {
                "order_id": item.order_id,
                "order_item_id": item.id,
                "product_name": item.product_name,
                "size": item.size,
                "section": section.name,
                "round": section.current_round,
            }
            for section, item in rows
        ]

    if session is not None:
        return _impl(session)

    with session_scope() as session:
        return _impl(session)


def get_re_video_requests(session: Session = None) -> List[Dict[str, Any]]:
    """Open re-video requests raised by sales, oldest first."""

    def _impl(session: Session) -> List[Dict[str, Any]]:
        requests = (
            session.query(SalesRequest)
            .filter(
                SalesRequest.request_type == SalesRequestType.RE_VIDEO,
                SalesRequest.status == SalesRequestStatus.OPEN,
            )
            .order_by(SalesRequest.id)
            .all()
        )
        return [
            {
                "request_id": request.id,
                "order_id": request.order_id,
                "order_item_id": request.order_item_id,
                "sections": request.sections,
                "notes": request.notes,
                "requested_by": request.requested_by,
                "requested_at": to_iso(request.created_at),
            }
            for request in requests
        ]

    if session is not None:
        return _impl(session)

    with session_scope() as session:
        return _impl(session)


def get_qa_stats(session: Session = None) -> Dict[str, int]:
    """Counts for the QA dashboard."""

    def _impl(session: Session) -> Dict[str, int]:
        by_status = dict(
            session.query(SectionState.status, func.count(SectionState.id))
            .group_by(SectionState.status)
            .all()
        )
        rejections = (
            session.query(func.count(SectionEvent.id))
            .filter(SectionEvent.stage == ReviewStage.QA)
            .scalar()
        )
        ready_for_video = (
            session.query(func.count(OrderItem.id))
            .filter(OrderItem.status == OrderItemStatus.ALL_SECTIONS_QA_APPROVED)
            .scalar()
        )
        open_re_video = (
            session.query(func.count(SalesRequest.id))
            .filter(
                SalesRequest.request_type == SalesRequestType.RE_VIDEO,
                SalesRequest.status == SalesRequestStatus.OPEN,
            )
            .scalar()
        )
        return {
            "pending": by_status.get(SectionStatus.QA_PENDING, 0),
            "approved": by_status.get(SectionStatus.QA_APPROVED, 0),
            "rework_required": by_status.get(SectionStatus.REWORK_REQUIRED, 0),
            "total_rejections": rejections or 0,
            "ready_for_video": ready_for_video or 0,
            "open_re_video_requests": open_re_video or 0,
        }

    if session is not None:
        return _impl(session)

    with session_scope() as session:
        return _impl(session)
