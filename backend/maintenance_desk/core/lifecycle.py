"""
Announcement lifecycle.

The status of an announcement only changes in reaction to an event. Operator
actions (schedule, start, complete, cancel) and the system event raised after
a notification batch delivered at least one message are looked up in a single
transition table; anything not in the table is an ``InvalidTransition``.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

from ..models import Announcement
from ..models.announcements import (
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_DRAFT,
    STATUS_IN_PROGRESS,
    STATUS_SCHEDULED,
    STATUS_SENT,
    TERMINAL_STATUSES,
)
from .errors import InvalidTransition

logger = logging.getLogger(__name__)


class LifecycleEvent(str, Enum):
    SCHEDULE = "schedule"
    NOTIFICATIONS_DISPATCHED = "notifications_dispatched"
    START = "start"
    COMPLETE = "complete"
    CANCEL = "cancel"


TRANSITIONS: dict[tuple[str, LifecycleEvent], str] = {
    (STATUS_DRAFT, LifecycleEvent.SCHEDULE): STATUS_SCHEDULED,
    (STATUS_DRAFT, LifecycleEvent.NOTIFICATIONS_DISPATCHED): STATUS_SENT,
    (STATUS_SCHEDULED, LifecycleEvent.NOTIFICATIONS_DISPATCHED): STATUS_SENT,
    # later batches (e.g. a newly added recipient) don't move the status
    (STATUS_SENT, LifecycleEvent.NOTIFICATIONS_DISPATCHED): STATUS_SENT,
    (STATUS_IN_PROGRESS, LifecycleEvent.NOTIFICATIONS_DISPATCHED): STATUS_IN_PROGRESS,
    # pending approvals never block the start of work
    (STATUS_SCHEDULED, LifecycleEvent.START): STATUS_IN_PROGRESS,
    (STATUS_SENT, LifecycleEvent.START): STATUS_IN_PROGRESS,
    (STATUS_IN_PROGRESS, LifecycleEvent.COMPLETE): STATUS_COMPLETED,
    (STATUS_DRAFT, LifecycleEvent.CANCEL): STATUS_CANCELLED,
    (STATUS_SCHEDULED, LifecycleEvent.CANCEL): STATUS_CANCELLED,
    (STATUS_SENT, LifecycleEvent.CANCEL): STATUS_CANCELLED,
    (STATUS_IN_PROGRESS, LifecycleEvent.CANCEL): STATUS_CANCELLED,
}

# Operator-requested target status -> event. ``sent`` is handled separately
# because entering it means dispatching notifications first.
OPERATOR_EVENTS: dict[str, LifecycleEvent] = {
    STATUS_SCHEDULED: LifecycleEvent.SCHEDULE,
    STATUS_IN_PROGRESS: LifecycleEvent.START,
    STATUS_COMPLETED: LifecycleEvent.COMPLETE,
    STATUS_CANCELLED: LifecycleEvent.CANCEL,
}


def next_status(current: str, event: LifecycleEvent) -> str:
    """Return the status ``event`` leads to from ``current`` or raise."""
    if current in TERMINAL_STATUSES:
        raise InvalidTransition(f"Announcement is {current}; no further status changes are allowed")
    target = TRANSITIONS.get((current, event))
    if target is None:
        raise InvalidTransition(f"Cannot apply '{event.value}' to an announcement in status '{current}'")
    return target


def event_for_status(target: str) -> LifecycleEvent:
    event = OPERATOR_EVENTS.get(target)
    if event is None:
        raise InvalidTransition(f"Status '{target}' cannot be set manually")
    return event


def apply_event(announcement: Announcement, event: LifecycleEvent) -> Optional[tuple[str, str]]:
    """
    Move the announcement according to ``event``.

    Returns ``(old, new)`` when the status changed, ``None`` when the event was
    accepted without a change. Preconditions beyond the table are checked here.
    """
    target = next_status(announcement.status, event)

    if event is LifecycleEvent.SCHEDULE:
        if not (announcement.title or "").strip() or announcement.scheduled_start is None:
            raise InvalidTransition("A title and a scheduled start are required before scheduling")

    old = announcement.status
    if target == old:
        return None

    announcement.status = target
    logger.info("Announcement %s: %s -> %s (%s)", announcement.id, old, target, event.value)
    return old, target
