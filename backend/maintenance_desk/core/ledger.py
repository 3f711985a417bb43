"""
Approval ledger: one row per (announcement, customer) tracking whether the
customer was notified and how they responded.

A recipient only ever moves pending -> approved or pending -> rejected, and
only while its announcement is still open.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..models import Announcement, AnnouncementRecipient
from ..models.announcements import (
    RECIPIENT_APPROVED,
    RECIPIENT_PENDING,
    RECIPIENT_REJECTED,
)
from .activity import ACTOR_CUSTOMER, log_activity
from .database import atomic
from .errors import ApprovalExpired, InvalidState, NotFound, ValidationError

logger = logging.getLogger(__name__)


def load_announcement(db: Session, announcement_id: str, lock: bool = False) -> Announcement:
    q = db.query(Announcement).filter(Announcement.id == announcement_id)
    if lock:
        # row lock on PostgreSQL, ignored by SQLite; always reread the row
        q = q.with_for_update().populate_existing()
    announcement = q.first()
    if announcement is None:
        raise NotFound("Announcement not found")
    return announcement


def get_recipient(db: Session, announcement_id: str, customer_id: str) -> AnnouncementRecipient:
    recipient = (
        db.query(AnnouncementRecipient)
        .filter(
            AnnouncementRecipient.announcement_id == announcement_id,
            AnnouncementRecipient.customer_id == customer_id,
        )
        .first()
    )
    if recipient is None:
        raise NotFound(f"Customer {customer_id} is not a recipient of this announcement")
    return recipient


def recipient_for_token(db: Session, token: str) -> AnnouncementRecipient:
    recipient = (
        db.query(AnnouncementRecipient)
        .filter(AnnouncementRecipient.approval_token == token)
        .first()
    )
    if recipient is None:
        raise NotFound("Invalid approval link")
    return recipient


def record_notification_sent(
    db: Session,
    announcement_id: str,
    customer_id: str,
    sent_at: Optional[datetime] = None,
) -> AnnouncementRecipient:
    """Stamp the recipient as notified. Joins the caller's transaction."""
    recipient = get_recipient(db, announcement_id, customer_id)
    recipient.notification_sent_at = sent_at or datetime.utcnow()
    return recipient


def _check_can_respond(announcement: Announcement, recipient: AnnouncementRecipient) -> None:
    if announcement.is_terminal:
        raise InvalidState(f"Announcement is {announcement.status}; responses are closed")
    if recipient.status != RECIPIENT_PENDING:
        raise InvalidState(f"This request was already answered ({recipient.status})")
    if announcement.approval_deadline and announcement.approval_deadline < datetime.utcnow():
        raise ApprovalExpired("The approval deadline has passed")


def record_approval(
    db: Session,
    announcement_id: str,
    customer_id: str,
    actor: Optional[str] = None,
) -> AnnouncementRecipient:
    with atomic(db):
        announcement = load_announcement(db, announcement_id, lock=True)
        recipient = get_recipient(db, announcement_id, customer_id)
        _check_can_respond(announcement, recipient)

        recipient.status = RECIPIENT_APPROVED
        recipient.approved_at = datetime.utcnow()
        recipient.approved_by = actor
        recipient.rejection_reason = None

        log_activity(
            db,
            announcement_id,
            "customer_approved",
            actor_type=ACTOR_CUSTOMER,
            actor_id=customer_id,
            actor_name=actor or (recipient.customer.name if recipient.customer else None),
            old_value=RECIPIENT_PENDING,
            new_value=RECIPIENT_APPROVED,
        )

    logger.info("Customer %s approved announcement %s", customer_id, announcement_id)
    return recipient


def record_rejection(
    db: Session,
    announcement_id: str,
    customer_id: str,
    reason: str,
    actor: Optional[str] = None,
) -> AnnouncementRecipient:
    reason = (reason or "").strip()

    with atomic(db):
        announcement = load_announcement(db, announcement_id, lock=True)
        recipient = get_recipient(db, announcement_id, customer_id)
        if not reason:
            raise ValidationError("A reason is required to reject a maintenance")
        _check_can_respond(announcement, recipient)

        recipient.status = RECIPIENT_REJECTED
        recipient.approved_at = datetime.utcnow()
        recipient.approved_by = actor
        recipient.rejection_reason = reason

        log_activity(
            db,
            announcement_id,
            "customer_rejected",
            actor_type=ACTOR_CUSTOMER,
            actor_id=customer_id,
            actor_name=actor or (recipient.customer.name if recipient.customer else None),
            old_value=RECIPIENT_PENDING,
            new_value=RECIPIENT_REJECTED,
            details={"reason": reason},
        )

    logger.info("Customer %s rejected announcement %s", customer_id, announcement_id)
    return recipient


def reminder_candidates(announcement: Announcement) -> List[AnnouncementRecipient]:
    """Recipients still pending that already got the first notification."""
    return [
        r
        for r in announcement.recipients
        if r.status == RECIPIENT_PENDING and r.notification_sent_at is not None
    ]


def approval_summary(announcement: Announcement, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Count recipients by response for display.

    Announcements without required approval count everyone as approved; after
    the deadline, ``auto_proceed_on_no_response`` turns silence into approval.
    Ledger rows are never touched here.
    """
    now = now or datetime.utcnow()
    recipients = announcement.recipients
    counts = {
        RECIPIENT_PENDING: 0,
        RECIPIENT_APPROVED: 0,
        RECIPIENT_REJECTED: 0,
    }
    for r in recipients:
        counts[r.status] = counts.get(r.status, 0) + 1

    implicit = not announcement.require_approval
    deadline_passed = bool(announcement.approval_deadline and announcement.approval_deadline < now)
    auto_approved = (
        counts[RECIPIENT_PENDING]
        if announcement.require_approval and deadline_passed and announcement.auto_proceed_on_no_response
        else 0
    )

    if implicit:
        effective_approved = len(recipients) - counts[RECIPIENT_REJECTED]
        effective_pending = 0
    else:
        effective_approved = counts[RECIPIENT_APPROVED] + auto_approved
        effective_pending = counts[RECIPIENT_PENDING] - auto_approved

    return {
        "total": len(recipients),
        "notified": sum(1 for r in recipients if r.notification_sent_at is not None),
        "pending": counts[RECIPIENT_PENDING],
        "approved": counts[RECIPIENT_APPROVED],
        "rejected": counts[RECIPIENT_REJECTED],
        "approval_required": not implicit,
        "deadline_passed": deadline_passed,
        "auto_approved": auto_approved,
        "effective_approved": effective_approved,
        "effective_pending": effective_pending,
    }
