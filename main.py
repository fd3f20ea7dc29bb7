import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from library_portal import models  # noqa: F401  registers the tables
from library_portal.database import Base, engine
from library_portal.events import AdminNotifications, ChangeFeed
from library_portal.routes import router
from library_portal.settings import settings

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

Base.metadata.create_all(bind=engine)


def create_app() -> FastAPI:
    app = FastAPI(title="Library Portal")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.change_feed = ChangeFeed()
    app.state.notifications = AdminNotifications(app.state.change_feed)

    @app.exception_handler(SQLAlchemyError)
    async def database_error_handler(request: Request, exc: SQLAlchemyError):
        logger.error("Database error on %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
        return JSONResponse(status_code=500, content={"detail": "Database error"})

    app.include_router(router)
    return app


app = create_app()
