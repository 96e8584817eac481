# relay/main.py
"""
FastAPI application: REST API under /api and the real-time socket at /ws.

The connection registry, channel membership manager and fan-out engine are
created once here and stored on ``app.state``.
"""
import logging
from typing import Optional

from fastapi import Depends, FastAPI, Request, HTTPException, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from relay.core.config import settings
from relay.core.exceptions import AuthError, RelayError
from relay.core.jwt_auth import Identity, JWTAuth
from relay.core.logging_config import setup_logging, get_realtime_logger
from relay.db.session import SessionLocal, get_db_session, init_db, test_db_connection
from relay.api.deps import get_registry
from relay.api.v1.router import api_router
from relay.models.user import User
from relay.ws.fanout import MessageFanout
from relay.ws.handlers import SocketSession
from relay.ws.manager import Connection, ConnectionClosed, ConnectionRegistry
from relay.ws.membership import ChannelMembershipManager

setup_logging(app_name="relay", level=settings.LOG_LEVEL, log_dir=settings.LOG_DIR)

log = logging.getLogger("relay")
ws_log = get_realtime_logger("endpoint")

# Close code sent when the handshake credential is rejected
WS_UNAUTHORIZED = 4401

# Initialize database
try:
    init_db()
    if test_db_connection():
        log.info("Database initialized")
except Exception as e:
    log.error(f"Database error: {e}")

# FastAPI app
app = FastAPI(
    title="Relay - Messaging API",
    description="Direct and group messaging with real-time delivery",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# ────────────────────────────────────────────
# Real-time components
# ────────────────────────────────────────────
registry = ConnectionRegistry()
app.state.registry = registry
app.state.membership = ChannelMembershipManager(registry, SessionLocal)
app.state.fanout = MessageFanout(registry, SessionLocal)

# ────────────────────────────────────────────
# CORS Configuration
# ────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["Authorization", "Content-Type"],
    max_age=86400,
)

# Include API routes
app.include_router(api_router, prefix="/api")


# ────────────────────────────────────────────
# Public routes
# ────────────────────────────────────────────

@app.get("/healthz", tags=["System"])
def health(registry: ConnectionRegistry = Depends(get_registry)):
    """Health check endpoint"""
    db_ok = test_db_connection()
    return {
        "status": "ok" if db_ok else "degraded",
        "database_ok": db_ok,
        "jwt_enabled": bool(settings.JWT_SECRET_KEY),
        "websocket_connections": registry.connection_count(),
    }


# ────────────────────────────────────────────
# WebSocket Endpoint
# ────────────────────────────────────────────

def _handshake_credential(websocket: WebSocket) -> Optional[str]:
    """Token from ``?token=`` or an ``Authorization: Bearer`` header"""
    token = websocket.query_params.get("token")
    if token:
        return token
    header = websocket.headers.get("authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return None


def _user_exists(user_id: int) -> bool:
    with get_db_session() as db:
        return db.get(User, user_id) is not None


async def _authenticate(websocket: WebSocket) -> Identity:
    identity = JWTAuth.verify(_handshake_credential(websocket))
    if not await run_in_threadpool(_user_exists, identity.user_id):
        raise AuthError("User no longer exists")
    return identity


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Authenticated socket for acked requests and server pushes"""
    await websocket.accept()

    try:
        identity = await _authenticate(websocket)
    except AuthError as e:
        ws_log.info("WebSocket handshake rejected: %s", e.message)
        await websocket.close(code=WS_UNAUTHORIZED, reason=e.message)
        return

    state = websocket.app.state
    connection = Connection(websocket)
    state.registry.bind(connection, identity)

    try:
        await connection.send_event("connected", identity.to_dict())
        session = SocketSession(connection, identity, state.membership, state.fanout)
        await session.run()
    except WebSocketDisconnect:
        ws_log.info("WebSocket disconnected: conn=%s user=%s", connection.id, identity.user_id)
    except ConnectionClosed:
        ws_log.info("WebSocket dropped after a failed delivery: conn=%s", connection.id)
    except Exception as e:
        ws_log.error("WebSocket error: conn=%s user=%s error=%r", connection.id, identity.user_id, e)
    finally:
        state.registry.unbind(connection)


# ────────────────────────────────────────────
# Exception Handlers
# ────────────────────────────────────────────

@app.exception_handler(RelayError)
async def relay_exception_handler(request: Request, exc: RelayError):
    """Render service errors as {"error", "message", "details"}"""
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(SQLAlchemyError)
async def database_exception_handler(request: Request, exc: SQLAlchemyError):
    log.error("Database error on %s %s: %r", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "InternalError", "message": "Database error", "details": {}},
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions"""
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
        headers=exc.headers,
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8100)
