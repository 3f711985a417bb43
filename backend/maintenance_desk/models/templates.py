import uuid
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text

from ..core.database import Base


class MaintenanceTemplate(Base):
    __tablename__ = "maintenance_templates"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(100), nullable=False, index=True)

    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    maintenance_type = Column(String(32), nullable=False, default="general")
    affected_systems = Column(Text, nullable=True)
    estimated_duration_minutes = Column(Integer, nullable=True)

    require_approval = Column(Boolean, default=True)
    auto_proceed_on_no_response = Column(Boolean, default=False)

    # soft delete
    is_active = Column(Boolean, default=True)

    created_at = Column(DateTime, default=datetime.utcnow)
