from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..core.dashboard import dashboard_overview
from ..core.database import get_db
from .routes_announcements import AnnouncementOut

router = APIRouter(prefix="/maintenance", tags=["dashboard"])


class RecentActivityItem(BaseModel):
    announcement_id: str
    announcement_title: str
    action: str
    actor_type: str
    actor_name: Optional[str]
    created_at: datetime


class DashboardResponse(BaseModel):
    upcoming: List[AnnouncementOut]
    pending_approvals: int
    recent_activity: List[RecentActivityItem]
    statistics: Dict[str, int]


@router.get("/dashboard", response_model=DashboardResponse)
def dashboard(db: Session = Depends(get_db)):
    data = dashboard_overview(db)
    return DashboardResponse(
        upcoming=[AnnouncementOut.model_validate(a) for a in data["upcoming"]],
        pending_approvals=data["pending_approvals"],
        recent_activity=[
            RecentActivityItem(
                announcement_id=entry.announcement_id,
                announcement_title=title,
                action=entry.action,
                actor_type=entry.actor_type,
                actor_name=entry.actor_name,
                created_at=entry.created_at,
            )
            for entry, title in data["recent_activity"]
        ],
        statistics=data["statistics"],
    )
