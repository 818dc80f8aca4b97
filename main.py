from typing import Callable, Optional

import socketio
import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from mailhub.api.api import api_router
from mailhub.config import Settings, get_settings
from mailhub.database import Base, SessionLocal, engine
from mailhub.exceptions import MailhubError
from mailhub.logging_config import configure_logging
from mailhub.realtime.broadcaster import Broadcaster
from mailhub.realtime.socket_gateway import create_socket_server
from mailhub.services.graph_service import GraphClient
from mailhub.services.sync_service import SyncEngine

logger = structlog.get_logger()


def create_app(
    settings: Optional[Settings] = None,
    session_factory: Optional[Callable[[], Session]] = None,
    provider=None,
    broadcaster: Optional[Broadcaster] = None,
    create_tables: bool = True,
) -> FastAPI:
    """
    Build the FastAPI application and its shared services.

    Tests pass their own session factory, provider and broadcaster; in
    production everything is built from the environment.
    """
    settings = settings or get_settings()
    session_factory = session_factory or SessionLocal
    provider = provider or GraphClient(settings)
    broadcaster = broadcaster or Broadcaster()

    app = FastAPI(
        title="Mailhub",
        description="Mailbox sync and realtime mail notifications",
        version="1.0.0",
    )

    app.state.settings = settings
    app.state.broadcaster = broadcaster
    app.state.provider = provider
    app.state.sync_engine = SyncEngine(session_factory, provider, broadcaster)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(MailhubError)
    async def mailhub_error_handler(request: Request, exc: MailhubError):
        if exc.status_code >= 500:
            logger.error("request_failed", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})

    @app.on_event("startup")
    def on_startup():
        """Configure logging and create database tables."""
        configure_logging(settings.log_level)
        if create_tables:
            Base.metadata.create_all(bind=engine)
            logger.info("database_tables_ready")

    @app.on_event("shutdown")
    async def on_shutdown():
        await app.state.sync_engine.drain()
        close = getattr(app.state.provider, "aclose", None)
        if close is not None:
            await close()

    app.include_router(api_router)

    @app.get("/")
    def health_check():
        return {"status": "ok"}

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "realtimeClients": app.state.broadcaster.client_count(),
        }

    return app


def create_asgi_app(app: FastAPI) -> socketio.ASGIApp:
    """Wrap the FastAPI app with the Socket.IO server on /socket.io."""
    sio = create_socket_server(app.state.broadcaster, app.state.settings.cors_origins)
    app.state.sio = sio
    return socketio.ASGIApp(sio, other_asgi_app=app, socketio_path="socket.io")


app = create_app()

# Serve with: uvicorn main:asgi_app
asgi_app = create_asgi_app(app)
