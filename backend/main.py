"""
PeerShare: FastAPI application entry point.

Starts the Session Manager on startup and serves the relay REST API
plus a per-session WebSocket event feed.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from api.routes import init_routes, register_error_handlers, router
from api.websocket import ConnectionManager
from config import API_HOST, API_PORT, CORS_ORIGINS, LOG_LEVEL
from transfer.errors import SessionNotFound
from transfer.manager import SessionManager

# --- Logging ---
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(session_manager: SessionManager | None = None) -> FastAPI:
    """Build the application around a session manager."""
    if session_manager is None:
        session_manager = SessionManager()
    ws_manager = ConnectionManager()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start/stop background services."""
        logger.info("Starting PeerShare services...")

        try:
            # Wire up event broadcasting
            session_manager.on_event(ws_manager.handle_event)
            await session_manager.start()

            logger.info(f"PeerShare ready, API: {API_HOST}:{API_PORT}")

            yield

        except Exception as e:
            logger.error(f"Startup failed: {e}", exc_info=True)
            raise
        finally:
            logger.info("Shutting down PeerShare services...")
            await session_manager.stop()

    app = FastAPI(
        title="PeerShare",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.session_manager = session_manager
    app.state.ws_manager = ws_manager

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Inject services into routes
    init_routes(session_manager)
    register_error_handlers(app)
    app.include_router(router)

    @app.websocket("/ws/{token}")
    async def websocket_endpoint(websocket: WebSocket, token: str):
        try:
            handle = session_manager.resolve(token)
        except SessionNotFound:
            await websocket.close(code=4404)
            return

        session_id = handle.session_id
        await ws_manager.connect(session_id, websocket)
        try:
            # Current snapshot first so late subscribers are in sync
            status = session_manager.get_status(handle)
            await ws_manager.send(websocket, "session_state", status.model_dump(mode="json"))
            while True:
                # Keep the connection alive; we don't expect client messages
                await websocket.receive_text()
        except WebSocketDisconnect:
            await ws_manager.disconnect(session_id, websocket)
        except Exception:
            await ws_manager.disconnect(session_id, websocket)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level=LOG_LEVEL.lower(),
    )
