import json
import logging
import sys
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .errors import ConfigurationError
from .runtime import AgentRuntime
from .settings import get_settings, validate_startup


def setup_server_logging(level: str = "INFO") -> logging.Logger:
    """Configure the package logger (console + rotating file) and return the server logger."""
    logs_dir = Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)

    package_logger = logging.getLogger("starkagent")
    logger = logging.getLogger("starkagent.server")
    if package_logger.handlers:
        return logger

    package_logger.setLevel(level)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    package_logger.addHandler(ch)

    fh = RotatingFileHandler(logs_dir / "server.log", maxBytes=5_000_000, backupCount=3)
    fh.setFormatter(fmt)
    package_logger.addHandler(fh)

    return logger


def _cors_origins_list(origins: str) -> list[str]:
    """Parse CORS_ORIGINS into a list."""
    if not origins or origins.strip() == "*":
        return ["*"]
    return [o.strip() for o in origins.split(",") if o.strip()]


settings = get_settings()
LOGGER = setup_server_logging(settings.log_level)


class WebSocketTransport:
    """Pushes background action results to an open chat WebSocket."""

    name = "websocket"

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket

    async def send_message(self, conversation_id: str, text: str) -> None:
        try:
            await self._websocket.send_json(
                {"type": "background", "session_id": conversation_id, "data": text}
            )
        except (WebSocketDisconnect, RuntimeError) as e:
            raise ConnectionError(f"websocket closed: {e}") from e


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Validate configuration, start the runtime; drain it on shutdown."""
    try:
        validate_startup(settings)
    except ConfigurationError as e:
        LOGGER.error("%s", e)
        raise

    runtime = AgentRuntime(settings)
    await runtime.start()
    app.state.runtime = runtime
    LOGGER.info("starkagent ready")

    yield

    LOGGER.info("Shutting down...")
    await runtime.close()


app = FastAPI(
    title="starkagent",
    version="0.1.0",
    debug=settings.debug,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health() -> dict[str, Any]:
    """Health check for load balancers and monitoring."""
    runtime: AgentRuntime | None = getattr(app.state, "runtime", None)
    return {
        "status": "ok",
        "background_actions": len(runtime.scheduler) if runtime else 0,
    }


@app.websocket("/ws/chat")
async def chat_ws(websocket: WebSocket) -> None:
    """Persistent chat connection.

    Client frames: ``{"session_id": str, "message": str}``.

    Server frames:
        - ``{"type": "message", "session_id": str, "data": str}`` - reply to a message
        - ``{"type": "background", "session_id": str, "data": str}`` - background action result
        - ``{"type": "error", "data": str}``
    """
    runtime: AgentRuntime = websocket.app.state.runtime
    transport = WebSocketTransport(websocket)
    bound: set[str] = set()

    await websocket.accept()
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                payload = json.loads(raw)
            except json.JSONDecodeError as e:
                LOGGER.error("Invalid WS payload (not JSON): %s", e)
                await websocket.send_json({"type": "error", "data": "Invalid JSON payload"})
                continue
            if not isinstance(payload, dict):
                await websocket.send_json({"type": "error", "data": "Expected a JSON object"})
                continue

            session_id = str(payload.get("session_id") or "default")
            message = str(payload.get("message") or "").strip()
            if not message:
                await websocket.send_json({"type": "error", "data": "Empty message"})
                continue

            LOGGER.info("WS message session_id=%s", session_id)
            bound.add(session_id)
            reply = await runtime.handle_message(session_id, message, transport)
            await websocket.send_json({"type": "message", "session_id": session_id, "data": reply})

    except WebSocketDisconnect:
        LOGGER.info("WS disconnect")
    finally:
        for session_id in bound:
            runtime.hub.unbind(session_id, transport)


def run() -> None:
    """Console entrypoint: fail fast on missing configuration, then serve."""
    try:
        validate_startup(settings)
    except ConfigurationError as e:
        LOGGER.error("%s", e)
        sys.exit(1)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
