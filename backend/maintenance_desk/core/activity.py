import json
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..models import ActivityLogEntry

ACTOR_ADMIN = "admin"
ACTOR_CUSTOMER = "customer"
ACTOR_SYSTEM = "system"


def log_activity(
    db: Session,
    announcement_id: str,
    action: str,
    actor_type: str = ACTOR_ADMIN,
    actor_id: Optional[str] = None,
    actor_name: Optional[str] = None,
    old_value: Optional[str] = None,
    new_value: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> ActivityLogEntry:
    """
    Append an entry to the announcement's audit trail.

    The entry joins the caller's transaction; it is written together with the
    change it describes or not at all.
    """
    entry = ActivityLogEntry(
        announcement_id=announcement_id,
        action=action,
        actor_type=actor_type,
        actor_id=actor_id,
        actor_name=actor_name,
        old_value=old_value,
        new_value=new_value,
        details_json=json.dumps(details, default=str) if details else None,
    )
    db.add(entry)
    return entry


def recent_activity(db: Session, announcement_id: str, limit: int = 50) -> List[ActivityLogEntry]:
    return (
        db.query(ActivityLogEntry)
        .filter(ActivityLogEntry.announcement_id == announcement_id)
        .order_by(ActivityLogEntry.created_at.desc())
        .limit(limit)
        .all()
    )
