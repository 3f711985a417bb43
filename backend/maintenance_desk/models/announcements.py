import secrets
import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from ..core.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def new_approval_token() -> str:
    return secrets.token_urlsafe(32)


MAINTENANCE_TYPES = ("patch", "reboot", "security_update", "firmware", "general")

STATUS_DRAFT = "draft"
STATUS_SCHEDULED = "scheduled"
STATUS_SENT = "sent"
STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"

ANNOUNCEMENT_STATUSES = (
    STATUS_DRAFT,
    STATUS_SCHEDULED,
    STATUS_SENT,
    STATUS_IN_PROGRESS,
    STATUS_COMPLETED,
    STATUS_CANCELLED,
)
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_CANCELLED)
EDITABLE_STATUSES = (STATUS_DRAFT, STATUS_SCHEDULED, STATUS_SENT)

RECIPIENT_PENDING = "pending"
RECIPIENT_APPROVED = "approved"
RECIPIENT_REJECTED = "rejected"


class Announcement(Base):
    __tablename__ = "maintenance_announcements"

    id = Column(String(36), primary_key=True, default=_uuid)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    maintenance_type = Column(String(32), nullable=False, default="general")
    affected_systems = Column(Text, nullable=True)

    scheduled_start = Column(DateTime, nullable=False, index=True)
    scheduled_end = Column(DateTime, nullable=True)

    status = Column(String(20), nullable=False, default=STATUS_DRAFT, index=True)

    require_approval = Column(Boolean, nullable=False, default=True)
    approval_deadline = Column(DateTime, nullable=True)
    auto_proceed_on_no_response = Column(Boolean, nullable=False, default=False)

    notes = Column(Text, nullable=True)
    template_id = Column(String(36), ForeignKey("maintenance_templates.id"), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    recipients = relationship(
        "AnnouncementRecipient",
        back_populates="announcement",
        cascade="all, delete-orphan",
        order_by="AnnouncementRecipient.created_at",
    )
    activity = relationship(
        "ActivityLogEntry",
        back_populates="announcement",
        cascade="all, delete-orphan",
    )
    deliveries = relationship(
        "NotificationDelivery",
        back_populates="announcement",
        cascade="all, delete-orphan",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self) -> str:
        return f"<Announcement id={self.id} status={self.status} title={self.title!r}>"


class AnnouncementRecipient(Base):
    __tablename__ = "maintenance_announcement_customers"
    __table_args__ = (
        UniqueConstraint("announcement_id", "customer_id", name="uq_announcement_customer"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    announcement_id = Column(
        String(36),
        ForeignKey("maintenance_announcements.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    customer_id = Column(String(36), ForeignKey("customers.id"), nullable=False)

    status = Column(String(20), nullable=False, default=RECIPIENT_PENDING)
    approval_token = Column(String(64), unique=True, nullable=False, default=new_approval_token)

    notification_sent_at = Column(DateTime, nullable=True)
    reminder_sent_at = Column(DateTime, nullable=True)

    # set on approval and on rejection
    approved_at = Column(DateTime, nullable=True)
    approved_by = Column(String(255), nullable=True)
    rejection_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    announcement = relationship("Announcement", back_populates="recipients")
    customer = relationship("Customer", lazy="joined")
