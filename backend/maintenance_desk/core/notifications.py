from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from ..config import Settings
from ..integrations.channels import (
    Contact,
    DeliveryError,
    LogChannel,
    NotificationChannel,
    OutgoingMessage,
    SmtpEmailChannel,
    WebhookChannel,
)
from ..models import NotificationDelivery

logger = logging.getLogger(__name__)

KIND_NOTIFICATION = "notification"
KIND_REMINDER = "reminder"
KIND_OPERATOR = "operator"

TYPE_LABELS = {
    "patch": "Patch installation",
    "reboot": "System reboot",
    "security_update": "Security update",
    "firmware": "Firmware update",
    "general": "Maintenance",
}

DEFAULT_TYPE_TEXT = {
    "patch": "We will install pending software patches on the affected systems.",
    "reboot": "The affected systems will be restarted and briefly unavailable.",
    "security_update": "We will apply security updates to keep the affected systems protected.",
    "firmware": "We will update the firmware of the affected devices. Short outages are possible.",
    "general": "We will carry out scheduled maintenance on the affected systems.",
}


@dataclass
class NotifierConfig:
    """Everything the dispatcher needs, resolved once at startup."""

    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_sender: str = "maintenance@example.com"
    webhooks_enabled: bool = True
    webhook_timeout_sec: float = 10.0
    test_mode: bool = False
    operator_contact_email: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "NotifierConfig":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_sender=settings.smtp_sender,
            webhook_timeout_sec=settings.webhook_timeout_sec,
            test_mode=settings.notify_test_mode,
            operator_contact_email=settings.operator_contact_email,
        )


@dataclass
class AnnouncementSummary:
    announcement_id: str
    title: str
    maintenance_type: str
    scheduled_start: datetime
    kind: str = KIND_NOTIFICATION
    description: Optional[str] = None
    affected_systems: Optional[str] = None
    scheduled_end: Optional[datetime] = None
    approval_deadline: Optional[datetime] = None
    require_approval: bool = True
    approval_url: Optional[str] = None
    # operator notices only
    customer_name: Optional[str] = None
    response: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class DeliveryResult:
    success: bool
    channel: Optional[str] = None
    address: Optional[str] = None
    error: Optional[str] = None
    sent_at: Optional[datetime] = None


def _fmt(dt: Optional[datetime]) -> str:
    return dt.strftime("%Y-%m-%d %H:%M UTC") if dt else "-"


def render_message(contact: Contact, summary: AnnouncementSummary) -> OutgoingMessage:
    label = TYPE_LABELS.get(summary.maintenance_type, "Maintenance")

    if summary.kind == KIND_OPERATOR:
        subject = f"{summary.customer_name} {summary.response} maintenance: {summary.title}"
        lines = [f"{summary.customer_name} has {summary.response} \"{summary.title}\"."]
        if summary.reason:
            lines.append(f"Reason: {summary.reason}")
    else:
        prefix = "Reminder: " if summary.kind == KIND_REMINDER else ""
        subject = f"{prefix}{label} planned: {summary.title}"
        lines = [
            f"Hello {contact.name},",
            "",
            summary.description or DEFAULT_TYPE_TEXT.get(summary.maintenance_type, ""),
            "",
            f"Start: {_fmt(summary.scheduled_start)}",
        ]
        if summary.scheduled_end:
            lines.append(f"End: {_fmt(summary.scheduled_end)}")
        if summary.affected_systems:
            lines.append(f"Affected systems: {summary.affected_systems}")
        if summary.require_approval and summary.approval_url:
            lines.append("")
            if summary.approval_deadline:
                lines.append(f"Please respond by {_fmt(summary.approval_deadline)}:")
            else:
                lines.append("Please approve or reject the maintenance here:")
            lines.append(summary.approval_url)

    payload = {
        key: (value.isoformat() if isinstance(value, datetime) else value)
        for key, value in asdict(summary).items()
    }
    return OutgoingMessage(subject=subject, body="\n".join(lines), payload=payload)


def build_channels(config: NotifierConfig) -> List[NotificationChannel]:
    if config.test_mode:
        return [LogChannel()]

    channels: List[NotificationChannel] = []
    if config.smtp_host:
        channels.append(
            SmtpEmailChannel(
                host=config.smtp_host,
                port=config.smtp_port,
                user=config.smtp_user,
                password=config.smtp_password,
                sender=config.smtp_sender,
            )
        )
    if config.webhooks_enabled:
        channels.append(WebhookChannel(timeout=config.webhook_timeout_sec))
    return channels


class NotificationDispatcher:
    """
    Sends announcement messages to customer contacts.

    Constructed once per application from a ``NotifierConfig``. A failed send
    is reported in the returned ``DeliveryResult`` and never raised, so one
    unreachable customer can't abort a batch.
    """

    def __init__(
        self,
        config: NotifierConfig,
        channels: Optional[List[NotificationChannel]] = None,
    ):
        self.config = config
        self.channels = channels if channels is not None else build_channels(config)

    def is_configured(self) -> bool:
        return bool(self.channels)

    def send(self, contact: Contact, summary: AnnouncementSummary) -> DeliveryResult:
        if not self.channels:
            return DeliveryResult(success=False, error="No notification channel configured")

        message = render_message(contact, summary)
        last: Optional[DeliveryResult] = None

        for channel in self.channels:
            address = channel.address_for(contact)
            if not address:
                continue
            try:
                channel.deliver(contact, message)
            except DeliveryError as exc:
                logger.warning("Delivery via %s to %s failed: %s", channel.name, address, exc)
                last = DeliveryResult(success=False, channel=channel.name, address=address, error=str(exc))
                continue
            except Exception as exc:
                logger.exception("Unexpected error from %s channel for %s", channel.name, address)
                last = DeliveryResult(
                    success=False, channel=channel.name, address=address, error=f"Unexpected error: {exc}"
                )
                continue
            logger.info("Sent %s for %s via %s to %s", summary.kind, summary.announcement_id, channel.name, address)
            return DeliveryResult(
                success=True,
                channel=channel.name,
                address=address,
                sent_at=datetime.utcnow(),
            )

        return last or DeliveryResult(success=False, error="No contact address")

    def send_batch(
        self, items: Iterable[Tuple[Contact, AnnouncementSummary]]
    ) -> List[DeliveryResult]:
        # sequential on purpose; each item stands alone
        return [self.send(contact, summary) for contact, summary in items]

    def notify_operator(self, summary: AnnouncementSummary) -> Optional[DeliveryResult]:
        if not self.config.operator_contact_email:
            return None
        contact = Contact(name="Operator", email=self.config.operator_contact_email)
        result = self.send(contact, summary)
        if not result.success:
            logger.warning("Operator notice for %s not delivered: %s", summary.announcement_id, result.error)
        return result


def record_delivery(
    db: Session,
    result: DeliveryResult,
    kind: str,
    announcement_id: Optional[str],
    recipient_id: Optional[str] = None,
) -> NotificationDelivery:
    row = NotificationDelivery(
        announcement_id=announcement_id,
        recipient_id=recipient_id,
        kind=kind,
        channel=result.channel,
        address=result.address,
        status="SENT" if result.success else "FAILED",
        last_error=result.error,
        sent_at=result.sent_at,
    )
    db.add(row)
    return row
