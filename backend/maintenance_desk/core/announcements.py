"""
Announcement service: the operations the HTTP layer (and anything else)
calls to drive a maintenance announcement.

Every change is committed in one transaction. The announcement row is
loaded with a row lock before it is changed so two operators working on the
same announcement serialize instead of overwriting each other. Operations
that send messages commit twice: once to pick the recipients, and once to
record the outcome. No lock is held while mail servers and webhooks are
being contacted.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..integrations.channels import Contact
from ..models import Announcement, AnnouncementRecipient, Customer, NotificationDelivery
from ..models.announcements import (
    EDITABLE_STATUSES,
    MAINTENANCE_TYPES,
    RECIPIENT_APPROVED,
    RECIPIENT_PENDING,
    RECIPIENT_REJECTED,
    STATUS_DRAFT,
    STATUS_SCHEDULED,
    STATUS_SENT,
    ANNOUNCEMENT_STATUSES,
)
from .activity import ACTOR_ADMIN, ACTOR_SYSTEM, log_activity, recent_activity
from .database import atomic
from .errors import (
    ApprovalExpired,
    DependencyFailure,
    InvalidState,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from .ledger import (
    approval_summary,
    load_announcement,
    reminder_candidates,
    recipient_for_token,
    record_approval,
    record_notification_sent,
    record_rejection,
)
from .lifecycle import LifecycleEvent, apply_event, event_for_status
from .notifications import (
    KIND_NOTIFICATION,
    KIND_OPERATOR,
    KIND_REMINDER,
    AnnouncementSummary,
    DeliveryResult,
    NotificationDispatcher,
    record_delivery,
)
from .templates import apply_template, get_template

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = (
    "title",
    "description",
    "maintenance_type",
    "affected_systems",
    "scheduled_start",
    "scheduled_end",
    "require_approval",
    "approval_deadline",
    "auto_proceed_on_no_response",
    "notes",
)
DATETIME_FIELDS = ("scheduled_start", "scheduled_end", "approval_deadline")
# NOT NULL booleans; an explicit null is an error, not "unset"
REQUIRED_FLAGS = ("require_approval", "auto_proceed_on_no_response")


# ---------- Helpers ----------


def _naive_utc(value: Any) -> Optional[datetime]:
    """Store everything as naive UTC, like the ``datetime.utcnow`` defaults."""
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"Invalid timestamp: {value!r}")
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _normalize(data: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(data)
    for key in DATETIME_FIELDS:
        if key in out:
            out[key] = _naive_utc(out[key])
    return out


def _validate(fields: Dict[str, Any]) -> None:
    if not (fields.get("title") or "").strip():
        raise ValidationError("title is required")
    if len(fields["title"]) > 255:
        raise ValidationError("title must be at most 255 characters")
    if fields.get("scheduled_start") is None:
        raise ValidationError("scheduled_start is required")
    if fields.get("maintenance_type") not in MAINTENANCE_TYPES:
        raise ValidationError(f"maintenance_type must be one of {', '.join(MAINTENANCE_TYPES)}")
    end = fields.get("scheduled_end")
    if end is not None and end < fields["scheduled_start"]:
        raise ValidationError("scheduled_end must not be before scheduled_start")
    for key in REQUIRED_FLAGS:
        if key in fields and fields[key] is None:
            raise ValidationError(f"{key} must be true or false")


def _load_customers(db: Session, customer_ids: Iterable[str]) -> List[Customer]:
    ids = list(dict.fromkeys(customer_ids))
    if not ids:
        return []
    customers = db.query(Customer).filter(Customer.id.in_(ids)).all()
    found = {c.id for c in customers}
    missing = [cid for cid in ids if cid not in found]
    if missing:
        raise NotFound(f"Unknown customer(s): {', '.join(missing)}")
    return customers


def approval_url(frontend_url: str, token: str) -> str:
    return f"{frontend_url.rstrip('/')}/maintenance/approve/{token}"


def _summary_for(
    announcement: Announcement,
    recipient: AnnouncementRecipient,
    kind: str,
    frontend_url: str,
) -> AnnouncementSummary:
    return AnnouncementSummary(
        announcement_id=announcement.id,
        title=announcement.title,
        maintenance_type=announcement.maintenance_type,
        scheduled_start=announcement.scheduled_start,
        kind=kind,
        description=announcement.description,
        affected_systems=announcement.affected_systems,
        scheduled_end=announcement.scheduled_end,
        approval_deadline=announcement.approval_deadline,
        require_approval=announcement.require_approval,
        approval_url=approval_url(frontend_url, recipient.approval_token),
    )


def _contact_for(recipient: AnnouncementRecipient) -> Contact:
    customer = recipient.customer
    return Contact(
        name=customer.name if customer else "Customer",
        email=customer.email if customer else None,
        webhook_url=customer.webhook_url if customer else None,
    )


def _prepare(
    announcement: Announcement,
    recipients: List[AnnouncementRecipient],
    kind: str,
    frontend_url: str,
) -> List[Tuple[str, Contact, AnnouncementSummary]]:
    """Snapshot everything a send needs so it can run after the lock is released."""
    return [
        (r.id, _contact_for(r), _summary_for(announcement, r, kind, frontend_url))
        for r in recipients
    ]


def _send(
    dispatcher: NotificationDispatcher,
    batch: List[Tuple[str, Contact, AnnouncementSummary]],
) -> List[DeliveryResult]:
    return dispatcher.send_batch([(contact, summary) for _, contact, summary in batch])


def _record_results(
    db: Session,
    announcement_id: str,
    batch: List[Tuple[str, Contact, AnnouncementSummary]],
    results: List[DeliveryResult],
    kind: str,
) -> Tuple[List[AnnouncementRecipient], int]:
    """
    Write one delivery row per send and return the recipients reached plus
    the failure count. Must run inside the caller's transaction.

    Recipients removed while the messages were out still get their delivery
    row but are not returned.
    """
    ids = [recipient_id for recipient_id, _, _ in batch]
    current = {}
    if ids:
        current = {
            r.id: r
            for r in db.query(AnnouncementRecipient)
            .filter(AnnouncementRecipient.id.in_(ids))
            .populate_existing()
        }

    delivered: List[AnnouncementRecipient] = []
    failed = 0
    for recipient_id, result in zip(ids, results):
        record_delivery(db, result, kind, announcement_id, recipient_id)
        if not result.success:
            failed += 1
        elif recipient_id in current:
            delivered.append(current[recipient_id])
    return delivered, failed


def _on_notifications_dispatched(db: Session, announcement: Announcement) -> None:
    if announcement.is_terminal:
        # closed while the messages were out
        return
    change = apply_event(announcement, LifecycleEvent.NOTIFICATIONS_DISPATCHED)
    if change:
        log_activity(
            db,
            announcement.id,
            "status_changed",
            actor_type=ACTOR_SYSTEM,
            old_value=change[0],
            new_value=change[1],
        )


def _check_open(announcement: Announcement) -> None:
    if announcement.is_terminal:
        raise InvalidState(f"Announcement is {announcement.status}")


# ---------- Queries ----------


def get_announcement(db: Session, announcement_id: str) -> Dict[str, Any]:
    announcement = load_announcement(db, announcement_id)
    return {
        "announcement": announcement,
        "recipients": list(announcement.recipients),
        "activity_log": recent_activity(db, announcement_id, limit=50),
        "approval_summary": approval_summary(announcement),
    }


def list_announcements(
    db: Session,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[Tuple[Announcement, Dict[str, int]]]:
    q = db.query(Announcement)
    if status:
        q = q.filter(Announcement.status == status)
    announcements = (
        q.order_by(Announcement.scheduled_start.desc()).offset(offset).limit(limit).all()
    )

    ids = [a.id for a in announcements]
    counts: Dict[str, Dict[str, int]] = {a_id: {} for a_id in ids}
    if ids:
        rows = (
            db.query(
                AnnouncementRecipient.announcement_id,
                AnnouncementRecipient.status,
                func.count(AnnouncementRecipient.id),
            )
            .filter(AnnouncementRecipient.announcement_id.in_(ids))
            .group_by(AnnouncementRecipient.announcement_id, AnnouncementRecipient.status)
            .all()
        )
        for a_id, r_status, n in rows:
            counts[a_id][r_status] = n

    result = []
    for a in announcements:
        c = counts[a.id]
        result.append(
            (
                a,
                {
                    "customer_count": sum(c.values()),
                    "pending_count": c.get(RECIPIENT_PENDING, 0),
                    "approved_count": c.get(RECIPIENT_APPROVED, 0),
                    "rejected_count": c.get(RECIPIENT_REJECTED, 0),
                },
            )
        )
    return result


def list_deliveries(db: Session, announcement_id: str) -> List[NotificationDelivery]:
    load_announcement(db, announcement_id)
    return (
        db.query(NotificationDelivery)
        .filter(NotificationDelivery.announcement_id == announcement_id)
        .order_by(NotificationDelivery.id)
        .all()
    )


# ---------- Commands ----------


def create_announcement(
    db: Session,
    data: Dict[str, Any],
    actor: Optional[str] = None,
) -> Announcement:
    fields = _normalize(data)
    customer_ids = fields.pop("customer_ids", None) or []

    template_id = fields.pop("template_id", None)
    if template_id:
        fields = apply_template(get_template(db, template_id), fields)

    if not fields.get("maintenance_type"):
        fields["maintenance_type"] = "general"
    _validate(fields)

    with atomic(db):
        customers = _load_customers(db, customer_ids)
        announcement = Announcement(
            title=fields["title"].strip(),
            description=fields.get("description"),
            maintenance_type=fields["maintenance_type"],
            affected_systems=fields.get("affected_systems"),
            scheduled_start=fields["scheduled_start"],
            scheduled_end=fields.get("scheduled_end"),
            require_approval=fields.get("require_approval") is not False,
            approval_deadline=fields.get("approval_deadline"),
            auto_proceed_on_no_response=bool(fields.get("auto_proceed_on_no_response", False)),
            notes=fields.get("notes"),
            template_id=fields.get("template_id"),
            status=STATUS_DRAFT,
        )
        db.add(announcement)
        db.flush()

        for customer in customers:
            db.add(AnnouncementRecipient(announcement_id=announcement.id, customer_id=customer.id))

        log_activity(
            db,
            announcement.id,
            "created",
            actor_type=ACTOR_ADMIN,
            actor_name=actor,
            details={"title": announcement.title, "customers": len(customers)},
        )

    db.refresh(announcement)
    logger.info("Created announcement %s (%s)", announcement.id, announcement.title)
    return announcement


def update_announcement(
    db: Session,
    announcement_id: str,
    data: Dict[str, Any],
    actor: Optional[str] = None,
) -> Announcement:
    changes = _normalize(data)
    customer_ids = changes.pop("customer_ids", None)

    with atomic(db):
        announcement = load_announcement(db, announcement_id, lock=True)
        if announcement.status not in EDITABLE_STATUSES:
            raise InvalidState(f"An announcement in status '{announcement.status}' can no longer be edited")

        merged = {f: getattr(announcement, f) for f in EDITABLE_FIELDS}
        merged.update({k: v for k, v in changes.items() if k in EDITABLE_FIELDS})
        _validate(merged)

        changed = []
        for field in EDITABLE_FIELDS:
            if field in changes and getattr(announcement, field) != merged[field]:
                setattr(announcement, field, merged[field])
                changed.append(field)

        added: List[str] = []
        removed: List[str] = []
        if customer_ids is not None:
            added, removed = _replace_recipients(db, announcement, customer_ids)

        announcement.updated_at = datetime.utcnow()
        log_activity(
            db,
            announcement.id,
            "updated",
            actor_type=ACTOR_ADMIN,
            actor_name=actor,
            details={"fields": changed, "customers_added": added, "customers_removed": removed},
        )

    db.refresh(announcement)
    return announcement


def _replace_recipients(
    db: Session,
    announcement: Announcement,
    customer_ids: List[str],
) -> Tuple[List[str], List[str]]:
    wanted = list(dict.fromkeys(customer_ids))
    customers = _load_customers(db, wanted)
    current = {r.customer_id: r for r in announcement.recipients}

    to_remove = [r for cid, r in current.items() if cid not in wanted]
    notified = [r.customer_id for r in to_remove if r.notification_sent_at is not None]
    if notified:
        raise InvalidState(
            f"Customer(s) {', '.join(notified)} were already notified and can't be removed"
        )
    for r in to_remove:
        announcement.recipients.remove(r)

    added = []
    for customer in customers:
        if customer.id not in current:
            announcement.recipients.append(
                AnnouncementRecipient(announcement_id=announcement.id, customer_id=customer.id)
            )
            added.append(customer.id)
    return added, [r.customer_id for r in to_remove]


def delete_announcement(db: Session, announcement_id: str) -> None:
    with atomic(db):
        announcement = load_announcement(db, announcement_id, lock=True)
        if announcement.status != STATUS_DRAFT:
            raise InvalidState("Only draft announcements can be deleted")
        db.delete(announcement)
    logger.info("Deleted announcement %s", announcement_id)


def update_status(
    db: Session,
    dispatcher: NotificationDispatcher,
    announcement_id: str,
    new_status: str,
    frontend_url: str,
    actor: Optional[str] = None,
) -> Announcement:
    if new_status not in ANNOUNCEMENT_STATUSES:
        raise ValidationError(f"Unknown status '{new_status}'")
    if new_status == STATUS_SENT:
        return _enter_sent(db, dispatcher, announcement_id, frontend_url, actor)

    event = event_for_status(new_status)
    with atomic(db):
        announcement = load_announcement(db, announcement_id, lock=True)
        change = apply_event(announcement, event)
        if change is None:
            raise InvalidTransition(f"Announcement is already {announcement.status}")
        announcement.updated_at = datetime.utcnow()
        log_activity(
            db,
            announcement.id,
            "status_changed",
            actor_type=ACTOR_ADMIN,
            actor_name=actor,
            old_value=change[0],
            new_value=change[1],
        )

    logger.info("Announcement %s: %s -> %s", announcement_id, change[0], change[1])
    db.refresh(announcement)
    return announcement


def _enter_sent(
    db: Session,
    dispatcher: NotificationDispatcher,
    announcement_id: str,
    frontend_url: str,
    actor: Optional[str],
) -> Announcement:
    """Operator asks for 'sent': notify everyone not notified yet."""
    with atomic(db):
        announcement = load_announcement(db, announcement_id, lock=True)
        if announcement.status not in (STATUS_DRAFT, STATUS_SCHEDULED):
            raise InvalidTransition(
                f"Cannot move an announcement in status '{announcement.status}' to 'sent'"
            )
        unsent = [r for r in announcement.recipients if r.notification_sent_at is None]
        batch = _prepare(announcement, unsent, KIND_NOTIFICATION, frontend_url)

    results = _send(dispatcher, batch)

    with atomic(db):
        announcement = load_announcement(db, announcement_id, lock=True)
        delivered, failed = _record_results(db, announcement_id, batch, results, KIND_NOTIFICATION)
        for r in delivered:
            record_notification_sent(db, announcement_id, r.customer_id)
        if delivered:
            _on_notifications_dispatched(db, announcement)

        log_activity(
            db,
            announcement_id,
            "notifications_sent",
            actor_type=ACTOR_ADMIN,
            actor_name=actor,
            details={"sent_count": len(delivered), "failed_count": failed},
        )

    if not delivered:
        raise DependencyFailure(
            f"No recipient could be notified ({failed} failed); status unchanged"
        )
    db.refresh(announcement)
    return announcement


def send_notifications(
    db: Session,
    dispatcher: NotificationDispatcher,
    announcement_id: str,
    customer_ids: List[str],
    frontend_url: str,
    actor: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Notify the given recipients.

    Messages go out after the announcement lock is released; the outcome is
    recorded under a fresh lock, so a send that outlives a concurrent
    cancel still lands in the ledger but does not reopen the announcement.
    """
    if not customer_ids:
        raise ValidationError("At least one customer is required")

    with atomic(db):
        announcement = load_announcement(db, announcement_id, lock=True)
        _check_open(announcement)

        by_customer = {r.customer_id: r for r in announcement.recipients}
        wanted = list(dict.fromkeys(customer_ids))
        missing = [cid for cid in wanted if cid not in by_customer]
        if missing:
            raise NotFound(f"Not a recipient of this announcement: {', '.join(missing)}")

        batch = _prepare(
            announcement, [by_customer[cid] for cid in wanted], KIND_NOTIFICATION, frontend_url
        )

    results = _send(dispatcher, batch)

    with atomic(db):
        announcement = load_announcement(db, announcement_id, lock=True)
        delivered, failed = _record_results(db, announcement_id, batch, results, KIND_NOTIFICATION)
        for r in delivered:
            record_notification_sent(db, announcement_id, r.customer_id)
        if delivered:
            _on_notifications_dispatched(db, announcement)
            announcement.updated_at = datetime.utcnow()

        log_activity(
            db,
            announcement_id,
            "notifications_sent",
            actor_type=ACTOR_ADMIN,
            actor_name=actor,
            details={"sent_count": len(delivered), "failed_count": failed},
        )

    return {"sent_count": len(delivered), "failed_count": failed, "status": announcement.status}


def send_reminders(
    db: Session,
    dispatcher: NotificationDispatcher,
    announcement_id: str,
    frontend_url: str,
    actor: Optional[str] = None,
) -> Dict[str, Any]:
    with atomic(db):
        announcement = load_announcement(db, announcement_id, lock=True)
        _check_open(announcement)
        candidates = reminder_candidates(announcement)
        batch = _prepare(announcement, candidates, KIND_REMINDER, frontend_url)

    if not batch:
        return {"sent_count": 0, "failed_count": 0}

    results = _send(dispatcher, batch)

    with atomic(db):
        load_announcement(db, announcement_id, lock=True)
        delivered, failed = _record_results(db, announcement_id, batch, results, KIND_REMINDER)
        now = datetime.utcnow()
        for r in delivered:
            r.reminder_sent_at = now

        log_activity(
            db,
            announcement_id,
            "reminders_sent",
            actor_type=ACTOR_ADMIN,
            actor_name=actor,
            details={"sent_count": len(delivered), "failed_count": failed},
        )

    return {"sent_count": len(delivered), "failed_count": failed}


# ---------- Customer approval link ----------


def approval_view(db: Session, token: str) -> Dict[str, Any]:
    """What the customer sees behind their approval link."""
    recipient = recipient_for_token(db, token)
    announcement = recipient.announcement
    customer_name = recipient.customer.name if recipient.customer else None

    if recipient.status != RECIPIENT_PENDING:
        return {
            "already_responded": True,
            "status": recipient.status,
            "responded_at": recipient.approved_at,
            "rejection_reason": recipient.rejection_reason,
            "customer_name": customer_name,
            "title": announcement.title,
        }

    if announcement.approval_deadline and announcement.approval_deadline < datetime.utcnow():
        raise ApprovalExpired("The approval deadline has passed")

    return {
        "already_responded": False,
        "status": recipient.status,
        "customer_name": customer_name,
        "title": announcement.title,
        "description": announcement.description,
        "maintenance_type": announcement.maintenance_type,
        "affected_systems": announcement.affected_systems,
        "scheduled_start": announcement.scheduled_start,
        "scheduled_end": announcement.scheduled_end,
        "approval_deadline": announcement.approval_deadline,
        "require_approval": announcement.require_approval,
        "announcement_status": announcement.status,
    }


def respond_via_token(
    db: Session,
    dispatcher: NotificationDispatcher,
    token: str,
    action: str,
    reason: Optional[str] = None,
    approver_name: Optional[str] = None,
) -> AnnouncementRecipient:
    recipient = recipient_for_token(db, token)
    announcement_id = recipient.announcement_id
    customer_id = recipient.customer_id

    if action == "approve":
        recipient = record_approval(db, announcement_id, customer_id, approver_name)
    elif action == "reject":
        recipient = record_rejection(db, announcement_id, customer_id, reason or "", approver_name)
    else:
        raise ValidationError("action must be 'approve' or 'reject'")

    announcement = recipient.announcement
    summary = AnnouncementSummary(
        announcement_id=announcement.id,
        title=announcement.title,
        maintenance_type=announcement.maintenance_type,
        scheduled_start=announcement.scheduled_start,
        kind=KIND_OPERATOR,
        customer_name=approver_name or (recipient.customer.name if recipient.customer else customer_id),
        response=recipient.status,
        reason=recipient.rejection_reason,
    )
    result = dispatcher.notify_operator(summary)
    if result is not None:
        with atomic(db):
            record_delivery(db, result, KIND_OPERATOR, announcement.id, recipient.id)
    return recipient
