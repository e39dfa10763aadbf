"""
PeerDrop: FastAPI application entry point.

Builds the service container, starts the reconciler on startup, and serves
the REST API and the WebSocket presence endpoint.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from api.routes import router
from api.websocket import PresenceSession, SessionClosed, parse_event
from config import API_HOST, API_PORT, CORS_ORIGINS, LOG_LEVEL
from errors import ServiceError
from services import Services

# --- Logging ---
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(services: Services | None = None) -> FastAPI:
    """Build the app around an explicitly constructed service container."""
    services = services or Services()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start/stop background services."""
        logger.info("Starting PeerDrop services...")
        try:
            await services.start()
            logger.info(f"PeerDrop ready, API on {API_HOST}:{API_PORT}")
            yield
        except Exception as e:
            logger.error(f"Startup failed: {e}", exc_info=True)
            raise
        finally:
            logger.info("Shutting down PeerDrop services...")
            await services.stop()

    app = FastAPI(
        title="PeerDrop",
        version="1.0.0",
        description="Peer file exchange with live delivery and queued fallback",
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error in {request.method} {request.url.path}: {exc}", exc_info=exc)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    app.include_router(router)

    @app.get("/health")
    def health_check():
        return {
            "status": "ok",
            "database": "connected" if services.database.ping() else "disconnected",
        }

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        hub = services.hub
        await hub.connect(websocket)
        session = PresenceSession(websocket, services.presence, hub)
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    event = parse_event(raw)
                except PydanticValidationError as e:
                    logger.warning(f"Invalid session event: {e.errors()[:1]}")
                    await websocket.send_json({"event": "error", "data": {"message": "Invalid event"}})
                    continue
                await session.handle(event)
        except WebSocketDisconnect:
            pass
        finally:
            await session.handle(SessionClosed())
            await hub.disconnect(websocket)

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        create_app(),
        host=API_HOST,
        port=API_PORT,
        log_level=LOG_LEVEL.lower(),
    )
