from datetime import timedelta
from typing import Any, Dict, List

from sqlalchemy.orm import Session

from ..models import MaintenanceTemplate
from ..models.announcements import MAINTENANCE_TYPES
from .database import atomic
from .errors import NotFound, ValidationError

TEMPLATE_FIELDS = (
    "title",
    "description",
    "maintenance_type",
    "affected_systems",
    "require_approval",
    "auto_proceed_on_no_response",
)


def list_templates(db: Session) -> List[MaintenanceTemplate]:
    return (
        db.query(MaintenanceTemplate)
        .filter(MaintenanceTemplate.is_active == True)  # noqa: E712
        .order_by(MaintenanceTemplate.name)
        .all()
    )


def get_template(db: Session, template_id: str) -> MaintenanceTemplate:
    t = (
        db.query(MaintenanceTemplate)
        .filter(MaintenanceTemplate.id == template_id, MaintenanceTemplate.is_active == True)  # noqa: E712
        .first()
    )
    if not t:
        raise NotFound("Template not found")
    return t


def create_template(db: Session, data: Dict[str, Any]) -> MaintenanceTemplate:
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("Template name is required")
    if not (data.get("title") or "").strip():
        raise ValidationError("Template title is required")
    maintenance_type = data.get("maintenance_type") or "general"
    if maintenance_type not in MAINTENANCE_TYPES:
        raise ValidationError(f"maintenance_type must be one of {', '.join(MAINTENANCE_TYPES)}")

    existing = (
        db.query(MaintenanceTemplate)
        .filter(MaintenanceTemplate.name == name, MaintenanceTemplate.is_active == True)  # noqa: E712
        .first()
    )
    if existing:
        raise ValidationError("A template with this name already exists")

    with atomic(db):
        t = MaintenanceTemplate(
            name=name,
            title=data["title"].strip(),
            description=data.get("description"),
            maintenance_type=maintenance_type,
            affected_systems=data.get("affected_systems"),
            estimated_duration_minutes=data.get("estimated_duration_minutes"),
            require_approval=data.get("require_approval", True),
            auto_proceed_on_no_response=data.get("auto_proceed_on_no_response", False),
        )
        db.add(t)
    return t


def delete_template(db: Session, template_id: str) -> None:
    with atomic(db):
        t = get_template(db, template_id)
        t.is_active = False


def apply_template(template: MaintenanceTemplate, data: Dict[str, Any]) -> Dict[str, Any]:
    """Fill whatever ``data`` leaves out from the template."""
    merged = dict(data)
    for field in TEMPLATE_FIELDS:
        if merged.get(field) is None:
            merged[field] = getattr(template, field)

    if (
        merged.get("scheduled_end") is None
        and merged.get("scheduled_start") is not None
        and template.estimated_duration_minutes
    ):
        merged["scheduled_end"] = merged["scheduled_start"] + timedelta(
            minutes=template.estimated_duration_minutes
        )
    merged["template_id"] = template.id
    return merged
