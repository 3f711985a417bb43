from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from ..core.database import Base


class NotificationDelivery(Base):
    __tablename__ = "notification_deliveries"

    id = Column(Integer, primary_key=True, index=True)
    announcement_id = Column(
        String(36),
        ForeignKey("maintenance_announcements.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    recipient_id = Column(String(36), nullable=True)

    kind = Column(String(16), nullable=False)  # notification | reminder | operator
    channel = Column(String(16), nullable=True)  # email | webhook | log
    address = Column(String(512), nullable=True)
    status = Column(String(16), nullable=False)  # SENT | FAILED
    last_error = Column(Text, nullable=True)

    sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    announcement = relationship("Announcement", back_populates="deliveries")
