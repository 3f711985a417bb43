"""
Tests for the approval ledger: customer responses, reminders and the
approval summary.
"""
from datetime import datetime, timedelta

import pytest

from maintenance_desk.core import announcements as service
from maintenance_desk.core.errors import ApprovalExpired, InvalidState, NotFound, ValidationError
from maintenance_desk.core.ledger import (
    approval_summary,
    record_approval,
    record_notification_sent,
    record_rejection,
    reminder_candidates,
)
from maintenance_desk.models import ActivityLogEntry

from conftest import FRONTEND_URL


@pytest.fixture
def announcement(db, customers, dispatcher):
    """A sent announcement with A and B notified."""
    a = service.create_announcement(
        db,
        {
            "title": "Core router reboot",
            "maintenance_type": "reboot",
            "scheduled_start": datetime.utcnow() + timedelta(days=3),
            "require_approval": True,
            "customer_ids": [customers["A"].id, customers["B"].id],
        },
    )
    service.send_notifications(
        db, dispatcher, a.id, [customers["A"].id, customers["B"].id], FRONTEND_URL
    )
    return a


def _recipient(announcement, customer):
    return next(r for r in announcement.recipients if r.customer_id == customer.id)


class TestResponses:
    def test_approval_is_recorded_and_logged(self, db, customers, announcement):
        r = record_approval(db, announcement.id, customers["A"].id, "Anna")

        assert r.status == "approved"
        assert r.approved_at is not None
        assert r.approved_by == "Anna"
        entry = db.query(ActivityLogEntry).filter_by(action="customer_approved").one()
        assert entry.actor_type == "customer"
        assert entry.actor_id == customers["A"].id
        assert (entry.old_value, entry.new_value) == ("pending", "approved")

    def test_rejection_keeps_reason(self, db, customers, announcement):
        r = record_rejection(db, announcement.id, customers["B"].id, "  month-end close  ")

        assert r.status == "rejected"
        assert r.rejection_reason == "month-end close"
        entry = db.query(ActivityLogEntry).filter_by(action="customer_rejected").one()
        assert entry.details == {"reason": "month-end close"}

    def test_blank_reason_is_rejected(self, db, customers, announcement):
        with pytest.raises(ValidationError):
            record_rejection(db, announcement.id, customers["B"].id, "   ")
        assert _recipient(announcement, customers["B"]).status == "pending"

    @pytest.mark.parametrize("first", ["approve", "reject"])
    def test_response_is_final(self, db, customers, announcement, first):
        cid = customers["A"].id
        if first == "approve":
            record_approval(db, announcement.id, cid)
        else:
            record_rejection(db, announcement.id, cid, "no")

        with pytest.raises(InvalidState):
            record_approval(db, announcement.id, cid)
        with pytest.raises(InvalidState):
            record_rejection(db, announcement.id, cid, "changed my mind")

    @pytest.mark.parametrize("status", ["completed", "cancelled"])
    def test_closed_announcement_refuses_responses(self, db, customers, announcement, status):
        announcement.status = status
        db.commit()

        with pytest.raises(InvalidState):
            record_approval(db, announcement.id, customers["A"].id)
        with pytest.raises(InvalidState):
            record_rejection(db, announcement.id, customers["A"].id, "too late anyway")

    def test_deadline_passed(self, db, customers, announcement):
        announcement.approval_deadline = datetime.utcnow() - timedelta(minutes=1)
        db.commit()

        with pytest.raises(ApprovalExpired):
            record_approval(db, announcement.id, customers["A"].id)
        assert _recipient(announcement, customers["A"]).status == "pending"

    def test_unknown_recipient(self, db, customers, announcement):
        with pytest.raises(NotFound):
            record_approval(db, announcement.id, customers["C"].id)

    def test_unknown_announcement(self, db, customers):
        with pytest.raises(NotFound):
            record_approval(db, "missing", customers["A"].id)

    def test_unknown_announcement_wins_over_blank_reason(self, db, customers):
        with pytest.raises(NotFound):
            record_rejection(db, "missing", customers["A"].id, "")


class TestNotificationStamp:
    def test_stamps_notification_time(self, db, customers):
        a = service.create_announcement(
            db,
            {
                "title": "Storage firmware",
                "maintenance_type": "firmware",
                "scheduled_start": "2025-04-01T22:00Z",
                "customer_ids": [customers["A"].id],
            },
        )
        when = datetime(2025, 3, 20, 9, 30)

        r = record_notification_sent(db, a.id, customers["A"].id, sent_at=when)
        db.commit()

        assert r.notification_sent_at == when
        assert r.status == "pending"

    def test_defaults_to_now(self, db, customers):
        a = service.create_announcement(
            db,
            {"title": "x", "scheduled_start": "2025-04-01T22:00Z", "customer_ids": [customers["A"].id]},
        )
        before = datetime.utcnow()

        r = record_notification_sent(db, a.id, customers["A"].id)

        assert r.notification_sent_at >= before

    def test_non_recipient_is_not_found(self, db, customers, announcement):
        with pytest.raises(NotFound):
            record_notification_sent(db, announcement.id, customers["C"].id)

    def test_unknown_announcement_is_not_found(self, db, customers):
        with pytest.raises(NotFound):
            record_notification_sent(db, "missing", customers["A"].id)


class TestReminders:
    def test_only_notified_pending_recipients_are_candidates(self, db, customers, dispatcher):
        a = service.create_announcement(
            db,
            {
                "title": "Firmware rollout",
                "maintenance_type": "firmware",
                "scheduled_start": datetime.utcnow() + timedelta(days=5),
                "customer_ids": [customers["A"].id, customers["B"].id, customers["C"].id],
            },
        )
        service.send_notifications(
            db, dispatcher, a.id, [customers["A"].id, customers["B"].id], FRONTEND_URL
        )
        record_approval(db, a.id, customers["A"].id)

        assert [r.customer_id for r in reminder_candidates(a)] == [customers["B"].id]

    def test_send_reminders_stamps_and_logs(self, db, customers, announcement, dispatcher, channel):
        record_approval(db, announcement.id, customers["A"].id)

        result = service.send_reminders(db, dispatcher, announcement.id, FRONTEND_URL)

        assert result == {"sent_count": 1, "failed_count": 0}
        assert _recipient(announcement, customers["B"]).reminder_sent_at is not None
        assert _recipient(announcement, customers["A"]).reminder_sent_at is None
        assert channel.subjects_for("ops@globex.example")[-1].startswith("Reminder: ")
        assert db.query(ActivityLogEntry).filter_by(action="reminders_sent").count() == 1

    def test_nothing_to_remind(self, db, customers, announcement, dispatcher):
        record_approval(db, announcement.id, customers["A"].id)
        record_rejection(db, announcement.id, customers["B"].id, "no")

        result = service.send_reminders(db, dispatcher, announcement.id, FRONTEND_URL)

        assert result == {"sent_count": 0, "failed_count": 0}
        assert db.query(ActivityLogEntry).filter_by(action="reminders_sent").count() == 0


class TestApprovalSummary:
    def test_counts_by_response(self, db, customers, announcement):
        record_approval(db, announcement.id, customers["A"].id)

        s = approval_summary(announcement)

        assert s["total"] == 2
        assert s["notified"] == 2
        assert (s["approved"], s["pending"], s["rejected"]) == (1, 1, 0)
        assert s["approval_required"] is True
        assert s["effective_approved"] == 1
        assert s["effective_pending"] == 1

    def test_no_approval_required_counts_everyone_but_rejections(self, db, customers, announcement):
        record_rejection(db, announcement.id, customers["B"].id, "no")
        announcement.require_approval = False

        s = approval_summary(announcement)

        assert s["approval_required"] is False
        assert s["effective_approved"] == 1
        assert s["effective_pending"] == 0
        # ledger itself is untouched
        assert _recipient(announcement, customers["A"]).status == "pending"

    def test_auto_proceed_after_deadline(self, db, customers, announcement):
        announcement.approval_deadline = datetime(2025, 1, 10)
        announcement.auto_proceed_on_no_response = True

        before = approval_summary(announcement, now=datetime(2025, 1, 9))
        after = approval_summary(announcement, now=datetime(2025, 1, 11))

        assert before["auto_approved"] == 0
        assert before["effective_pending"] == 2
        assert after["deadline_passed"] is True
        assert after["auto_approved"] == 2
        assert after["effective_approved"] == 2
        assert after["effective_pending"] == 0
        assert _recipient(announcement, customers["A"]).status == "pending"

    def test_deadline_without_auto_proceed(self, db, customers, announcement):
        announcement.approval_deadline = datetime(2025, 1, 10)

        s = approval_summary(announcement, now=datetime(2025, 1, 11))

        assert s["deadline_passed"] is True
        assert s["auto_approved"] == 0
        assert s["effective_pending"] == 2
