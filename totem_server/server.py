"""
FastAPI application: WebSocket voice calls plus the HTTP API.

Run with `python -m totem_server` or `uvicorn totem_server.server:app`.
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from logging_setup import get_logger, Component
from observability.event_store import event_store
from totem_pipeline.config import get_config
from .api import sessions_router, totem_router
from .config import ServerConfig
from .services import Services, build_services
from .transport import ClientConnection

logger = get_logger(Component.SERVER)


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Build the app. Without injected services, they are built from the
    environment at startup and closed at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        app.state.services = build_services(get_config(), ServerConfig.from_env()) if owned else services
        logger.info("Server started")
        try:
            yield
        finally:
            if owned:
                await app.state.services.aclose()
            logger.info("Server stopped")

    server_config = services.server_config if services else ServerConfig.from_env()

    app = FastAPI(title="Totem Voice Server", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=server_config.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(totem_router)
    app.include_router(sessions_router)

    @app.get("/health")
    async def health():
        """Liveness check."""
        active = app.state.services.sessions.list_sessions()
        return {
            "status": "ok",
            "component": "totem_server",
            "sessions": len(active),
            "events": event_store.get_stats(),
        }

    @app.websocket("/ws")
    async def voice_socket(websocket: WebSocket):
        await websocket.accept()
        svc: Services = app.state.services
        session = svc.sessions.create_session(history_limit=svc.server_config.history_limit)
        connection = ClientConnection(websocket, session, svc.sessions, svc.create_orchestrator)
        await connection.run()

    return app


app = create_app()
