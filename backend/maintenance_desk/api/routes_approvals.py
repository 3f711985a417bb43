from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..core import announcements as service
from ..core.database import get_db
from ..core.notifications import NotificationDispatcher
from .deps import get_dispatcher

# Public: reached through the link in the customer's notification, no login.
router = APIRouter(prefix="/maintenance/approve", tags=["approvals"])


class ApprovalView(BaseModel):
    already_responded: bool
    status: str
    customer_name: Optional[str] = None
    title: str
    responded_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    description: Optional[str] = None
    maintenance_type: Optional[str] = None
    affected_systems: Optional[str] = None
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None
    approval_deadline: Optional[datetime] = None
    require_approval: Optional[bool] = None
    announcement_status: Optional[str] = None


class ApprovalAction(BaseModel):
    action: Literal["approve", "reject"]
    reason: Optional[str] = None
    approver_name: Optional[str] = None


class ApprovalResult(BaseModel):
    ok: bool
    status: str
    message: str


@router.get("/{token}", response_model=ApprovalView)
def approval_details(token: str, db: Session = Depends(get_db)):
    return ApprovalView(**service.approval_view(db, token))


@router.post("/{token}", response_model=ApprovalResult)
def submit_approval(
    token: str,
    payload: ApprovalAction,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    recipient = service.respond_via_token(
        db,
        dispatcher,
        token,
        payload.action,
        reason=payload.reason,
        approver_name=payload.approver_name,
    )
    if payload.action == "approve":
        message = "Thank you! The maintenance has been approved."
    else:
        message = "The maintenance has been rejected. We will get in touch with you."
    return ApprovalResult(ok=True, status=recipient.status, message=message)
