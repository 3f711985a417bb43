import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .api.routes_announcements import router as announcements_router
from .api.routes_approvals import router as approvals_router
from .api.routes_dashboard import router as dashboard_router
from .api.routes_status import router as status_router
from .api.routes_templates import router as templates_router
from .config import Settings, settings as default_settings
from .core.database import Base, make_engine, make_session_factory
from .core.errors import MaintenanceError
from .core.notifications import NotificationDispatcher, NotifierConfig
from .core.seed import seed_initial_data

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logging.getLogger("maintenance_desk").setLevel(level.upper())


async def maintenance_error_handler(request: Request, exc: MaintenanceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def create_app(
    settings: Optional[Settings] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> FastAPI:
    settings = settings or default_settings
    configure_logging(settings.log_level)

    app = FastAPI(
        title=settings.app_name,
        version="0.1.0",
    )

    engine = make_engine(settings.database_url)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = make_session_factory(engine)
    app.state.dispatcher = dispatcher or NotificationDispatcher(NotifierConfig.from_settings(settings))

    if not app.state.dispatcher.is_configured():
        logger.warning("No notification channel configured; customer notifications will fail")

    # Create tables
    Base.metadata.create_all(bind=engine)

    if settings.seed_demo_data:
        db = app.state.session_factory()
        try:
            seed_initial_data(db)
        finally:
            db.close()

    app.add_exception_handler(MaintenanceError, maintenance_error_handler)

    app.include_router(status_router)
    app.include_router(announcements_router)
    app.include_router(approvals_router)
    app.include_router(templates_router)
    app.include_router(dashboard_router)

    return app
