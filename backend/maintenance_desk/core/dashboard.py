from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models import ActivityLogEntry, Announcement, AnnouncementRecipient
from ..models.announcements import (
    ANNOUNCEMENT_STATUSES,
    RECIPIENT_PENDING,
    STATUS_SCHEDULED,
    STATUS_SENT,
)


def dashboard_overview(db: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.utcnow()

    upcoming = (
        db.query(Announcement)
        .filter(
            Announcement.status.in_((STATUS_SCHEDULED, STATUS_SENT)),
            Announcement.scheduled_start > now,
        )
        .order_by(Announcement.scheduled_start.asc())
        .limit(5)
        .all()
    )

    pending_approvals = (
        db.query(func.count(AnnouncementRecipient.id))
        .join(Announcement, AnnouncementRecipient.announcement_id == Announcement.id)
        .filter(
            AnnouncementRecipient.status == RECIPIENT_PENDING,
            Announcement.require_approval == True,  # noqa: E712
            Announcement.status.in_((STATUS_SCHEDULED, STATUS_SENT)),
        )
        .scalar()
    )

    recent = (
        db.query(ActivityLogEntry, Announcement.title)
        .join(Announcement, ActivityLogEntry.announcement_id == Announcement.id)
        .order_by(ActivityLogEntry.created_at.desc())
        .limit(10)
        .all()
    )

    by_status = dict(
        db.query(Announcement.status, func.count(Announcement.id))
        .group_by(Announcement.status)
        .all()
    )

    return {
        "upcoming": upcoming,
        "pending_approvals": pending_approvals or 0,
        "recent_activity": [(entry, title) for entry, title in recent],
        "statistics": {status: by_status.get(status, 0) for status in ANNOUNCEMENT_STATUSES},
    }
