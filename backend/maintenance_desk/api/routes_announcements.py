from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session

from ..config import Settings
from ..core import announcements as service
from ..core.database import get_db
from ..core.notifications import NotificationDispatcher
from ..models.announcements import ANNOUNCEMENT_STATUSES, MAINTENANCE_TYPES
from .deps import get_actor, get_dispatcher, get_settings

router = APIRouter(prefix="/maintenance", tags=["maintenance"])


# ---------- Schemas ----------


def _check_type(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    v = v.lower()
    if v not in MAINTENANCE_TYPES:
        raise ValueError(f"maintenance_type must be one of {MAINTENANCE_TYPES}")
    return v


class AnnouncementCreate(BaseModel):
    # title/type may come from the template instead
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    maintenance_type: Optional[str] = None
    affected_systems: Optional[str] = None
    scheduled_start: datetime
    scheduled_end: Optional[datetime] = None
    require_approval: Optional[bool] = None
    approval_deadline: Optional[datetime] = None
    auto_proceed_on_no_response: Optional[bool] = None
    notes: Optional[str] = None
    customer_ids: List[str] = []
    template_id: Optional[str] = None

    @field_validator("maintenance_type")
    @classmethod
    def validate_type(cls, v: Optional[str]) -> Optional[str]:
        return _check_type(v)


class AnnouncementUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    maintenance_type: Optional[str] = None
    affected_systems: Optional[str] = None
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None
    require_approval: Optional[bool] = None
    approval_deadline: Optional[datetime] = None
    auto_proceed_on_no_response: Optional[bool] = None
    notes: Optional[str] = None
    customer_ids: Optional[List[str]] = None

    @field_validator("maintenance_type")
    @classmethod
    def validate_type(cls, v: Optional[str]) -> Optional[str]:
        return _check_type(v)


class StatusUpdate(BaseModel):
    status: str

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        v = v.lower()
        if v not in ANNOUNCEMENT_STATUSES:
            raise ValueError(f"status must be one of {ANNOUNCEMENT_STATUSES}")
        return v


class SendRequest(BaseModel):
    customer_ids: List[str] = Field(..., min_length=1)


class DispatchResponse(BaseModel):
    sent_count: int
    failed_count: int
    status: Optional[str] = None


class AnnouncementOut(BaseModel):
    id: str
    title: str
    description: Optional[str]
    maintenance_type: str
    affected_systems: Optional[str]
    scheduled_start: datetime
    scheduled_end: Optional[datetime]
    status: str
    require_approval: bool
    approval_deadline: Optional[datetime]
    auto_proceed_on_no_response: bool
    notes: Optional[str]
    template_id: Optional[str]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class AnnouncementListItem(AnnouncementOut):
    customer_count: int
    pending_count: int
    approved_count: int
    rejected_count: int


class RecipientOut(BaseModel):
    id: str
    customer_id: str
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    status: str
    approval_token: str
    notification_sent_at: Optional[datetime]
    reminder_sent_at: Optional[datetime]
    approved_at: Optional[datetime]
    approved_by: Optional[str]
    rejection_reason: Optional[str]


class ActivityOut(BaseModel):
    id: str
    action: str
    actor_type: str
    actor_id: Optional[str]
    actor_name: Optional[str]
    old_value: Optional[str]
    new_value: Optional[str]
    details: Optional[dict]
    created_at: datetime

    class Config:
        from_attributes = True


class ApprovalSummaryOut(BaseModel):
    total: int
    notified: int
    pending: int
    approved: int
    rejected: int
    approval_required: bool
    deadline_passed: bool
    auto_approved: int
    effective_approved: int
    effective_pending: int


class AnnouncementDetail(BaseModel):
    announcement: AnnouncementOut
    recipients: List[RecipientOut]
    activity_log: List[ActivityOut]
    approval_summary: ApprovalSummaryOut


class DeliveryOut(BaseModel):
    id: int
    recipient_id: Optional[str]
    kind: str
    channel: Optional[str]
    address: Optional[str]
    status: str
    last_error: Optional[str]
    sent_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


# ---------- Helpers ----------


def _recipient_out(r) -> RecipientOut:
    return RecipientOut(
        id=r.id,
        customer_id=r.customer_id,
        customer_name=r.customer.name if r.customer else None,
        customer_email=r.customer.email if r.customer else None,
        status=r.status,
        approval_token=r.approval_token,
        notification_sent_at=r.notification_sent_at,
        reminder_sent_at=r.reminder_sent_at,
        approved_at=r.approved_at,
        approved_by=r.approved_by,
        rejection_reason=r.rejection_reason,
    )


def _detail(db: Session, announcement_id: str) -> AnnouncementDetail:
    data = service.get_announcement(db, announcement_id)
    return AnnouncementDetail(
        announcement=AnnouncementOut.model_validate(data["announcement"]),
        recipients=[_recipient_out(r) for r in data["recipients"]],
        activity_log=[ActivityOut.model_validate(e) for e in data["activity_log"]],
        approval_summary=ApprovalSummaryOut(**data["approval_summary"]),
    )


# ---------- Endpoints ----------


@router.get("/announcements", response_model=List[AnnouncementListItem])
def list_announcements(
    status_filter: Optional[str] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    rows = service.list_announcements(db, status=status_filter, limit=limit, offset=offset)
    return [
        AnnouncementListItem(**AnnouncementOut.model_validate(a).model_dump(), **counts)
        for a, counts in rows
    ]


@router.post("/announcements", response_model=AnnouncementDetail, status_code=status.HTTP_201_CREATED)
def create_announcement(
    payload: AnnouncementCreate,
    db: Session = Depends(get_db),
    actor: Optional[str] = Depends(get_actor),
):
    a = service.create_announcement(db, payload.model_dump(exclude_unset=True), actor=actor)
    return _detail(db, a.id)


@router.get("/announcements/{announcement_id}", response_model=AnnouncementDetail)
def get_announcement(announcement_id: str, db: Session = Depends(get_db)):
    return _detail(db, announcement_id)


@router.patch("/announcements/{announcement_id}", response_model=AnnouncementDetail)
def update_announcement(
    announcement_id: str,
    payload: AnnouncementUpdate,
    db: Session = Depends(get_db),
    actor: Optional[str] = Depends(get_actor),
):
    service.update_announcement(db, announcement_id, payload.model_dump(exclude_unset=True), actor=actor)
    return _detail(db, announcement_id)


@router.delete("/announcements/{announcement_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_announcement(announcement_id: str, db: Session = Depends(get_db)):
    service.delete_announcement(db, announcement_id)
    return


@router.post("/announcements/{announcement_id}/status", response_model=AnnouncementOut)
def update_status(
    announcement_id: str,
    payload: StatusUpdate,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    settings: Settings = Depends(get_settings),
    actor: Optional[str] = Depends(get_actor),
):
    return service.update_status(
        db,
        dispatcher,
        announcement_id,
        payload.status,
        frontend_url=settings.frontend_url,
        actor=actor,
    )


@router.post("/announcements/{announcement_id}/send", response_model=DispatchResponse)
def send_notifications(
    announcement_id: str,
    payload: SendRequest,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    settings: Settings = Depends(get_settings),
    actor: Optional[str] = Depends(get_actor),
):
    result = service.send_notifications(
        db,
        dispatcher,
        announcement_id,
        payload.customer_ids,
        frontend_url=settings.frontend_url,
        actor=actor,
    )
    return DispatchResponse(**result)


@router.post("/announcements/{announcement_id}/remind", response_model=DispatchResponse)
def send_reminders(
    announcement_id: str,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    settings: Settings = Depends(get_settings),
    actor: Optional[str] = Depends(get_actor),
):
    result = service.send_reminders(
        db, dispatcher, announcement_id, frontend_url=settings.frontend_url, actor=actor
    )
    return DispatchResponse(**result)


@router.get("/announcements/{announcement_id}/deliveries", response_model=List[DeliveryOut])
def list_deliveries(announcement_id: str, db: Session = Depends(get_db)):
    return service.list_deliveries(db, announcement_id)
