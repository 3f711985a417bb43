from typing import Optional

from fastapi import Header, Request

from ..config import Settings
from ..core.notifications import NotificationDispatcher


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_actor(x_actor: Optional[str] = Header(None, alias="X-Actor")) -> Optional[str]:
    """Name of the operator acting; recorded in the activity log only."""
    return x_actor
