from datetime import datetime

from fastapi import APIRouter, Depends, Request

from ..core.notifications import NotificationDispatcher
from .deps import get_dispatcher

router = APIRouter(tags=["status"])


@router.get("/health")
def health(request: Request, dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    return {
        "status": "ok",
        "app": request.app.title,
        "notifications_configured": dispatcher.is_configured(),
        "time": datetime.utcnow().isoformat() + "Z",
    }
