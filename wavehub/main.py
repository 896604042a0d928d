import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Response, WebSocket, WebSocketDisconnect, status

from wavehub.auth import TokenVerifier
from wavehub.config import settings
from wavehub.hub import SignalingHub
from wavehub.logging_utils import setup_logging, RequestLoggingMiddleware, connection_context
from wavehub.metrics import connection_closed, connection_opened, get_metrics, get_metrics_content_type
from wavehub.schemas import HealthResponse
from wavehub.storage import SessionLocal, check_db_health, init_db


setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

# Close code for sockets that never authenticated in time
AUTH_TIMEOUT_CLOSE_CODE = 4401


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create missing tables and the hub instance
    - Shutdown: close every live connection
    """
    init_db()
    app.state.hub = SignalingHub(
        session_factory=SessionLocal,
        verifier=TokenVerifier(settings.JWT_SECRET, settings.JWT_ALGORITHM),
    )
    logger.info("Signaling hub started")
    yield
    await app.state.hub.close_all()
    logger.info("Signaling hub stopped")


app = FastAPI(
    title="wavehub",
    description="Real-time chat and WebRTC call signaling hub",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. JWT_SECRET is set (non-empty), tokens cannot be verified otherwise
    2. DB is reachable and schema is applied

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.JWT_SECRET:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="JWT_SECRET not configured"
        )

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# WebSocket Route
# =============================================================================

async def receive_frame(websocket: WebSocket, timeout: Optional[float] = None) -> str:
    """
    Wait for the next frame and return its text.

    Binary frames are decoded as UTF-8 so they reach the protocol error path
    instead of killing the loop.

    Raises:
        WebSocketDisconnect: the client closed the socket
        asyncio.TimeoutError: no frame arrived within timeout
    """
    if timeout is None:
        message = await websocket.receive()
    else:
        message = await asyncio.wait_for(websocket.receive(), timeout)

    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", 1000))

    text = message.get("text")
    if text is None and message.get("bytes") is not None:
        text = message["bytes"].decode("utf-8", errors="replace")
    return text or ""


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """
    Persistent signaling connection.

    Frames from one socket are dispatched strictly in arrival order. The
    client must send an auth frame within WS_AUTH_TIMEOUT seconds.
    """
    hub: SignalingHub = websocket.app.state.hub

    await websocket.accept()
    state = hub.connect(websocket)
    connection_opened()

    loop = asyncio.get_running_loop()
    auth_timeout = settings.WS_AUTH_TIMEOUT
    deadline = loop.time() + auth_timeout if auth_timeout > 0 else None

    with connection_context(state.connection_id):
        try:
            while True:
                if deadline is not None and not hub.is_authorized(state.connection_id):
                    remaining = deadline - loop.time()
                    try:
                        if remaining <= 0:
                            raise asyncio.TimeoutError
                        raw = await receive_frame(websocket, timeout=remaining)
                    except asyncio.TimeoutError:
                        logger.warning("Connection not authorized in time, closing")
                        await websocket.close(code=AUTH_TIMEOUT_CLOSE_CODE)
                        break
                else:
                    raw = await receive_frame(websocket)

                await hub.dispatch(state.connection_id, raw)
        except WebSocketDisconnect as e:
            logger.info(f"Connection closed by client (code {e.code})")
        except RuntimeError as e:
            # receive() on a socket the hub already closed (eviction)
            logger.debug(f"Receive loop stopped: {e}")
        finally:
            await hub.disconnect(state.connection_id)
            connection_closed()


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
