"""
Tests for the announcement service: creation, editing, deletion, status
changes and notification dispatch.
"""
from datetime import datetime, timedelta

import pytest

from maintenance_desk.core import announcements as service
from maintenance_desk.core.errors import (
    DependencyFailure,
    InvalidState,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from maintenance_desk.core.ledger import record_approval, record_rejection
from maintenance_desk.models import ActivityLogEntry, Announcement, NotificationDelivery

from conftest import FRONTEND_URL


def _create(db, customers, **overrides):
    data = {
        "title": "Patch Tuesday",
        "maintenance_type": "patch",
        "scheduled_start": "2025-01-14T20:00Z",
        "require_approval": True,
        "customer_ids": [customers["A"].id, customers["B"].id],
    }
    data.update(overrides)
    return service.create_announcement(db, data, actor="alice")


def _recipient(announcement, customer):
    return next(r for r in announcement.recipients if r.customer_id == customer.id)


def _actions(db, announcement_id):
    return [
        e.action
        for e in db.query(ActivityLogEntry).filter(ActivityLogEntry.announcement_id == announcement_id)
    ]


class TestCreateAnnouncement:
    def test_new_announcement_is_draft_with_pending_recipients(self, db, customers):
        a = _create(db, customers)

        assert a.status == "draft"
        assert a.scheduled_start == datetime(2025, 1, 14, 20, 0)
        assert len(a.recipients) == 2
        for r in a.recipients:
            assert r.status == "pending"
            assert r.notification_sent_at is None
            assert r.approval_token
        assert "created" in _actions(db, a.id)

    def test_missing_title_is_rejected(self, db, customers):
        with pytest.raises(ValidationError):
            _create(db, customers, title="  ")

    def test_missing_start_is_rejected(self, db, customers):
        with pytest.raises(ValidationError):
            _create(db, customers, scheduled_start=None)

    def test_end_before_start_is_rejected(self, db, customers):
        with pytest.raises(ValidationError):
            _create(db, customers, scheduled_end="2025-01-14T19:00Z")

    def test_unknown_customer_is_rejected(self, db, customers):
        with pytest.raises(NotFound):
            _create(db, customers, customer_ids=["nope"])
        assert db.query(Announcement).count() == 0

    def test_duplicate_customer_ids_create_one_recipient(self, db, customers):
        a = _create(db, customers, customer_ids=[customers["A"].id, customers["A"].id])
        assert len(a.recipients) == 1


class TestUpdateAnnouncement:
    def test_fields_are_updated_and_logged(self, db, customers):
        a = _create(db, customers)
        a = service.update_announcement(db, a.id, {"title": "Patch Wednesday", "notes": "n/a"})

        assert a.title == "Patch Wednesday"
        assert a.notes == "n/a"
        assert "updated" in _actions(db, a.id)

    def test_recipient_list_is_replaced(self, db, customers):
        a = _create(db, customers)
        a = service.update_announcement(db, a.id, {"customer_ids": [customers["B"].id, customers["C"].id]})

        assert {r.customer_id for r in a.recipients} == {customers["B"].id, customers["C"].id}

    def test_notified_recipient_cannot_be_removed(self, db, customers, dispatcher):
        a = _create(db, customers)
        service.send_notifications(db, dispatcher, a.id, [customers["A"].id], FRONTEND_URL)

        with pytest.raises(InvalidState):
            service.update_announcement(db, a.id, {"customer_ids": [customers["B"].id]})

    @pytest.mark.parametrize("status", ["in_progress", "completed", "cancelled"])
    def test_locked_once_work_started(self, db, customers, status):
        a = _create(db, customers)
        a.status = status
        db.commit()

        with pytest.raises(InvalidState):
            service.update_announcement(db, a.id, {"title": "Too late"})

    def test_unknown_announcement(self, db):
        with pytest.raises(NotFound):
            service.update_announcement(db, "missing", {"title": "x"})


class TestDeleteAnnouncement:
    def test_draft_can_be_deleted_with_children(self, db, customers):
        a = _create(db, customers)
        service.delete_announcement(db, a.id)

        assert db.query(Announcement).count() == 0
        assert db.query(ActivityLogEntry).count() == 0

    @pytest.mark.parametrize("status", ["scheduled", "sent", "in_progress", "completed", "cancelled"])
    def test_only_drafts_can_be_deleted(self, db, customers, status):
        a = _create(db, customers)
        a.status = status
        db.commit()

        with pytest.raises(InvalidState):
            service.delete_announcement(db, a.id)
        assert db.query(Announcement).count() == 1


class TestSendNotifications:
    def test_first_successful_batch_marks_announcement_sent(self, db, customers, dispatcher, channel):
        a = _create(db, customers)
        result = service.send_notifications(
            db, dispatcher, a.id, [customers["A"].id, customers["B"].id], FRONTEND_URL
        )

        assert result == {"sent_count": 2, "failed_count": 0, "status": "sent"}
        assert a.status == "sent"
        for r in a.recipients:
            assert r.notification_sent_at is not None
            assert r.status == "pending"

        body = channel.sent[0][1].body
        assert f"{FRONTEND_URL}/maintenance/approve/" in body

    def test_one_failure_does_not_abort_the_batch(self, db, customers, dispatcher, channel):
        channel.failing.add("it@acme.example")
        a = _create(db, customers)

        result = service.send_notifications(
            db, dispatcher, a.id, [customers["A"].id, customers["B"].id], FRONTEND_URL
        )

        assert result["sent_count"] == 1
        assert result["failed_count"] == 1
        assert _recipient(a, customers["A"]).notification_sent_at is None
        assert _recipient(a, customers["B"]).notification_sent_at is not None
        statuses = sorted(d.status for d in db.query(NotificationDelivery))
        assert statuses == ["FAILED", "SENT"]

    def test_all_failed_keeps_status(self, db, customers, dispatcher):
        a = _create(db, customers, customer_ids=[customers["C"].id])
        result = service.send_notifications(db, dispatcher, a.id, [customers["C"].id], FRONTEND_URL)

        assert result["sent_count"] == 0
        assert result["failed_count"] == 1
        assert a.status == "draft"

    def test_scheduled_moves_to_sent(self, db, customers, dispatcher):
        a = _create(db, customers)
        service.update_status(db, dispatcher, a.id, "scheduled", FRONTEND_URL)
        service.send_notifications(db, dispatcher, a.id, [customers["A"].id], FRONTEND_URL)
        assert a.status == "sent"

    def test_sending_during_work_keeps_in_progress(self, db, customers, dispatcher):
        a = _create(db, customers)
        service.send_notifications(db, dispatcher, a.id, [customers["A"].id], FRONTEND_URL)
        service.update_status(db, dispatcher, a.id, "in_progress", FRONTEND_URL)

        service.send_notifications(db, dispatcher, a.id, [customers["B"].id], FRONTEND_URL)
        assert a.status == "in_progress"

    def test_non_recipient_is_not_found(self, db, customers, dispatcher):
        a = _create(db, customers, customer_ids=[customers["A"].id])
        with pytest.raises(NotFound):
            service.send_notifications(db, dispatcher, a.id, [customers["B"].id], FRONTEND_URL)

    def test_empty_list_is_rejected(self, db, customers, dispatcher):
        a = _create(db, customers)
        with pytest.raises(ValidationError):
            service.send_notifications(db, dispatcher, a.id, [], FRONTEND_URL)

    def test_closed_announcement_cannot_notify(self, db, customers, dispatcher):
        a = _create(db, customers)
        service.update_status(db, dispatcher, a.id, "cancelled", FRONTEND_URL)
        with pytest.raises(InvalidState):
            service.send_notifications(db, dispatcher, a.id, [customers["A"].id], FRONTEND_URL)


class TestUpdateStatus:
    def test_manual_sent_notifies_everyone_not_yet_notified(self, db, customers, dispatcher, channel):
        a = _create(db, customers)
        service.send_notifications(db, dispatcher, a.id, [customers["A"].id], FRONTEND_URL)
        a.status = "scheduled"
        db.commit()

        service.update_status(db, dispatcher, a.id, "sent", FRONTEND_URL)

        assert a.status == "sent"
        assert len(channel.subjects_for("it@acme.example")) == 1
        assert len(channel.subjects_for("ops@globex.example")) == 1

    def test_manual_sent_without_deliveries_fails(self, db, customers, dispatcher):
        a = _create(db, customers, customer_ids=[customers["C"].id])
        with pytest.raises(DependencyFailure):
            service.update_status(db, dispatcher, a.id, "sent", FRONTEND_URL)

        db.expire_all()
        assert db.get(Announcement, a.id).status == "draft"
        assert db.query(NotificationDelivery).filter_by(status="FAILED").count() == 1

    def test_manual_sent_only_from_draft_or_scheduled(self, db, customers, dispatcher):
        a = _create(db, customers)
        service.send_notifications(db, dispatcher, a.id, [customers["A"].id], FRONTEND_URL)
        with pytest.raises(InvalidTransition):
            service.update_status(db, dispatcher, a.id, "sent", FRONTEND_URL)

    def test_same_status_is_invalid(self, db, customers, dispatcher):
        a = _create(db, customers)
        service.update_status(db, dispatcher, a.id, "scheduled", FRONTEND_URL)
        with pytest.raises(InvalidTransition):
            service.update_status(db, dispatcher, a.id, "scheduled", FRONTEND_URL)

    def test_unknown_status(self, db, customers, dispatcher):
        a = _create(db, customers)
        with pytest.raises(ValidationError):
            service.update_status(db, dispatcher, a.id, "paused", FRONTEND_URL)

    def test_status_change_is_logged_with_old_and_new(self, db, customers, dispatcher):
        a = _create(db, customers)
        service.update_status(db, dispatcher, a.id, "scheduled", FRONTEND_URL, actor="bob")

        entry = (
            db.query(ActivityLogEntry)
            .filter_by(announcement_id=a.id, action="status_changed")
            .one()
        )
        assert (entry.old_value, entry.new_value) == ("draft", "scheduled")
        assert entry.actor_name == "bob"

    def test_closing_keeps_recipient_states(self, db, customers, dispatcher):
        a = _create(db, customers)
        service.send_notifications(db, dispatcher, a.id, [customers["A"].id, customers["B"].id], FRONTEND_URL)
        record_approval(db, a.id, customers["A"].id, "Anna")
        service.update_status(db, dispatcher, a.id, "cancelled", FRONTEND_URL)

        assert _recipient(a, customers["A"]).status == "approved"
        assert _recipient(a, customers["B"]).status == "pending"


class TestPatchTuesdayScenario:
    def test_full_walkthrough(self, db, customers, dispatcher):
        a = _create(db, customers)
        assert a.status == "draft"

        service.send_notifications(
            db, dispatcher, a.id, [customers["A"].id, customers["B"].id], FRONTEND_URL
        )
        assert a.status == "sent"
        assert all(r.notification_sent_at and r.status == "pending" for r in a.recipients)

        record_approval(db, a.id, customers["A"].id, "Anna from Acme")
        assert _recipient(a, customers["A"]).status == "approved"

        # approvals are not a hard gate
        service.update_status(db, dispatcher, a.id, "in_progress", FRONTEND_URL)
        assert a.status == "in_progress"
        assert _recipient(a, customers["B"]).status == "pending"

        with pytest.raises(InvalidTransition):
            service.update_status(db, dispatcher, a.id, "draft", FRONTEND_URL)

        record_rejection(db, a.id, customers["B"].id, "conflicts with our deployment")
        b = _recipient(a, customers["B"])
        assert b.status == "rejected"
        assert b.rejection_reason == "conflicts with our deployment"

        service.update_status(db, dispatcher, a.id, "completed", FRONTEND_URL)
        with pytest.raises(InvalidTransition):
            service.update_status(db, dispatcher, a.id, "cancelled", FRONTEND_URL)

    def test_approval_after_completion_fails(self, db, customers, dispatcher):
        a = _create(db, customers)
        service.send_notifications(db, dispatcher, a.id, [customers["A"].id], FRONTEND_URL)
        service.update_status(db, dispatcher, a.id, "in_progress", FRONTEND_URL)
        service.update_status(db, dispatcher, a.id, "completed", FRONTEND_URL)

        with pytest.raises(InvalidState):
            record_approval(db, a.id, customers["A"].id, "late")
        assert _recipient(a, customers["A"]).status == "pending"


class TestTemplates:
    def test_template_fills_missing_fields(self, db, customers):
        from maintenance_desk.core.templates import create_template

        t = create_template(
            db,
            {
                "name": "Firmware",
                "title": "Switch firmware",
                "maintenance_type": "firmware",
                "affected_systems": "Core switches",
                "estimated_duration_minutes": 90,
                "require_approval": False,
            },
        )
        a = service.create_announcement(
            db,
            {"template_id": t.id, "scheduled_start": "2025-02-01T22:00:00+01:00"},
        )

        assert a.title == "Switch firmware"
        assert a.maintenance_type == "firmware"
        assert a.require_approval is False
        assert a.scheduled_start == datetime(2025, 2, 1, 21, 0)
        assert a.scheduled_end == a.scheduled_start + timedelta(minutes=90)
        assert a.template_id == t.id

    def test_payload_wins_over_template(self, db, customers):
        from maintenance_desk.core.templates import create_template

        t = create_template(db, {"name": "Reboot", "title": "Reboot", "maintenance_type": "reboot"})
        a = service.create_announcement(
            db,
            {"template_id": t.id, "title": "Reboot DC2", "scheduled_start": "2025-02-01T22:00Z"},
        )
        assert a.title == "Reboot DC2"
        assert a.maintenance_type == "reboot"

    def test_unknown_template(self, db):
        with pytest.raises(NotFound):
            service.create_announcement(db, {"template_id": "nope", "scheduled_start": "2025-02-01T22:00Z"})


class TestDispatchIsolation:
    def test_malformed_webhook_url_fails_alone(self, db):
        import httpx

        from maintenance_desk.core.notifications import NotificationDispatcher, NotifierConfig
        from maintenance_desk.integrations.channels import WebhookChannel
        from maintenance_desk.models import Customer

        posted = []

        def handler(request):
            posted.append(str(request.url))
            return httpx.Response(200)

        hooks = NotificationDispatcher(
            NotifierConfig(),
            channels=[WebhookChannel(client=httpx.Client(transport=httpx.MockTransport(handler)))],
        )
        bad = Customer(name="Broken Hook Ltd", webhook_url="http://[::1")
        good = Customer(name="Good Hook Ltd", webhook_url="https://ok.example/hook")
        db.add_all([bad, good])
        db.commit()
        a = service.create_announcement(
            db,
            {
                "title": "Firewall upgrade",
                "scheduled_start": "2025-03-01T22:00Z",
                "customer_ids": [bad.id, good.id],
            },
        )

        result = service.send_notifications(db, hooks, a.id, [bad.id, good.id], FRONTEND_URL)

        assert result == {"sent_count": 1, "failed_count": 1, "status": "sent"}
        assert posted == ["https://ok.example/hook"]
        assert _recipient(a, good).notification_sent_at is not None
        assert _recipient(a, bad).notification_sent_at is None
        failed = db.query(NotificationDelivery).filter_by(status="FAILED").one()
        assert failed.address == "http://[::1"

    def test_no_transaction_is_open_while_sending(self, db, customers, dispatcher, channel):
        a = _create(db, customers)
        open_during_send = []
        channel.on_deliver = lambda contact: open_during_send.append(db.in_transaction())

        service.send_notifications(
            db, dispatcher, a.id, [customers["A"].id, customers["B"].id], FRONTEND_URL
        )
        service.send_reminders(db, dispatcher, a.id, FRONTEND_URL)

        assert open_during_send == [False] * 4

    def test_cancel_during_send_is_kept(self, app, db, customers, dispatcher, channel):
        a = _create(db, customers)

        def cancel_once(contact):
            if channel.sent:
                return
            other = app.state.session_factory()
            try:
                service.update_status(other, dispatcher, a.id, "cancelled", FRONTEND_URL, actor="bob")
            finally:
                other.close()

        channel.on_deliver = cancel_once

        result = service.send_notifications(
            db, dispatcher, a.id, [customers["A"].id, customers["B"].id], FRONTEND_URL
        )

        assert result["sent_count"] == 2
        assert result["status"] == "cancelled"
        assert a.status == "cancelled"
        assert all(r.notification_sent_at is not None for r in a.recipients)
        assert db.query(NotificationDelivery).filter_by(status="SENT").count() == 2


class TestNullFlags:
    @pytest.mark.parametrize("flag", ["require_approval", "auto_proceed_on_no_response"])
    def test_null_flag_on_update_is_rejected(self, db, customers, flag):
        a = _create(db, customers)

        with pytest.raises(ValidationError):
            service.update_announcement(db, a.id, {flag: None})

        db.expire_all()
        assert getattr(db.get(Announcement, a.id), flag) is not None
