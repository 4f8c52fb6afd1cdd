# main.py
import logging
from typing import Optional

import uvicorn
from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from starlette.websockets import WebSocketDisconnect

from config import Settings
from price_generator import PriceSource
from service import TickerService

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(settings: Optional[Settings] = None, source: Optional[PriceSource] = None) -> FastAPI:
    """Build the app; settings are read once here and never reloaded.

    Nothing is built at import time. Serve with ``run()`` or
    ``uvicorn --factory main:create_app``.
    """
    settings = settings or Settings.from_env()

    app = FastAPI(title="Stock Ticker Price Broadcast")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.service = TickerService(settings, source=source)

    # --- LIFECYCLE ---

    @app.on_event("startup")
    async def startup_event():
        await app.state.service.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        await app.state.service.stop()

    # --- GET / liveness ---

    @app.get("/", tags=["Health"])
    async def health():
        return {"status": "ok"}

    # --- WS /ws price updates ---

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """
        One watchlist per socket. Clients send {"event": ..., "data": ...} frames
        (subscribe / add_symbol / remove_symbol) and receive price_update frames
        on every tick.
        """
        service: TickerService = app.state.service
        await websocket.accept()
        connection_id = service.connections.connect(websocket)
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes")
                service.connections.handle_message(connection_id, raw)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error(f"WebSocket error on {connection_id}: {e}")
        finally:
            service.connections.disconnect(connection_id)

    return app


def run() -> None:
    settings = Settings.from_env()
    configure_logging(settings)
    app = create_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
