import json
import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import relationship

from ..core.database import Base


class ActivityLogEntry(Base):
    __tablename__ = "maintenance_activity_log"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    announcement_id = Column(
        String(36),
        ForeignKey("maintenance_announcements.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    action = Column(String(64), nullable=False)
    actor_type = Column(String(16), nullable=False, default="admin")  # admin | customer | system
    actor_id = Column(String(64), nullable=True)
    actor_name = Column(String(255), nullable=True)

    old_value = Column(String(255), nullable=True)
    new_value = Column(String(255), nullable=True)
    details_json = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    announcement = relationship("Announcement", back_populates="activity")

    @property
    def details(self) -> dict | None:
        if not self.details_json:
            return None
        try:
            return json.loads(self.details_json)
        except ValueError:
            return None
