from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session

from ..core import templates as service
from ..core.database import get_db
from ..models.announcements import MAINTENANCE_TYPES

router = APIRouter(prefix="/maintenance/templates", tags=["templates"])


# ---------- Schemas ----------


class TemplateBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    maintenance_type: str = "general"
    affected_systems: Optional[str] = None
    estimated_duration_minutes: Optional[int] = Field(None, ge=1)
    require_approval: bool = True
    auto_proceed_on_no_response: bool = False

    @field_validator("maintenance_type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        v = v.lower()
        if v not in MAINTENANCE_TYPES:
            raise ValueError(f"maintenance_type must be one of {MAINTENANCE_TYPES}")
        return v


class TemplateCreate(TemplateBase):
    pass


class TemplateOut(TemplateBase):
    id: str
    created_at: datetime

    class Config:
        from_attributes = True


# ---------- Endpoints ----------


@router.get("", response_model=List[TemplateOut])
def list_templates(db: Session = Depends(get_db)):
    return service.list_templates(db)


@router.post("", response_model=TemplateOut, status_code=status.HTTP_201_CREATED)
def create_template(payload: TemplateCreate, db: Session = Depends(get_db)):
    return service.create_template(db, payload.model_dump())


@router.delete("/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_template(template_id: str, db: Session = Depends(get_db)):
    service.delete_template(db, template_id)
    return
