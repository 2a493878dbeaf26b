import asyncio
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from backend import RoomDirectory
from connections import Connection, ConnectionRegistry
from constants import LOG_FILE, LOG_LEVEL, SWEEP_INTERVAL_SECONDS
from logging_config import get_logger, setup_logging
from relay import MessageRouter
from routers.rooms import rooms_router
from schemas.rooms import StatusResponse

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)


async def _receive_frame(websocket: WebSocket):
    """Next text or binary frame; raises WebSocketDisconnect when the peer goes away."""
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", 1000))
    if message.get("text") is not None:
        return message["text"]
    return message.get("bytes") or b""


def create_app(directory: RoomDirectory = None, sweep_interval: float = SWEEP_INTERVAL_SECONDS) -> FastAPI:
    directory = directory if directory is not None else RoomDirectory()
    registry = ConnectionRegistry()
    router = MessageRouter(directory)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper = asyncio.create_task(router.run_sweeper(sweep_interval))
        try:
            yield
        finally:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
            for connection in registry.all():
                await router.disconnect(connection)
            logger.info("Relay shut down")

    app = FastAPI(title="Watch Party Signaling Relay", lifespan=lifespan)
    app.state.directory = directory
    app.state.registry = registry
    app.state.router = router

    # Configure CORS to allow all origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(rooms_router)

    @app.get("/", response_model=StatusResponse)
    async def status(request: Request):
        return StatusResponse(
            message="Watch Party WebSocket Server",
            status="running",
            rooms=len(request.app.state.directory),
            connections=len(request.app.state.registry),
            timestamp=datetime.now().isoformat(),
        )

    async def signaling_endpoint(websocket: WebSocket):
        """One participant's signaling link. Membership ends when this returns."""
        await websocket.accept()
        connection = registry.register(Connection(websocket))
        connection.start()
        client_host = websocket.client.host if websocket.client else "unknown"
        logger.info(f"New WebSocket connection {connection.connection_id} from {client_host}")

        try:
            router.welcome(connection)
            while True:
                raw = await _receive_frame(websocket)
                await router.handle_text(connection, raw)
        except WebSocketDisconnect:
            logger.info(f"WebSocket connection closed: {connection!r}")
        except Exception as e:
            logger.error(f"WebSocket error on {connection!r}: {e}", exc_info=True)
        finally:
            registry.unregister(connection)
            await router.disconnect(connection)

    app.add_api_websocket_route("/", signaling_endpoint)
    app.add_api_websocket_route("/ws", signaling_endpoint)

    logger.info("FastAPI application initialized")
    return app


app = create_app()
