"""
FastAPI web server for the WhatsApp pairing gateway.

Thin request/response mapping onto the session core. Every response carries
``success`` plus either a payload or a single ``error`` string.

Endpoints:
    Pages:
        GET  /                          - Pairing page (public/index.html)

    API - Pairing:
        POST   /api/pair                - Create a session and wait for its pairing code
        GET    /api/session/{id}        - Poll one session's status
        DELETE /api/session/{id}        - Close a session and delete its credentials
        GET    /api/sessions            - List tracked sessions

    API - Service:
        GET  /api/health                - Uptime, memory and session counts
        POST /api/bridge/events         - Event ingress for the Baileys sidecar
"""

import hmac
import uuid as _uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Optional

import psutil
import structlog
from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from wagateway import __version__
from wagateway.config.loader import load_config
from wagateway.config.models import GatewayConfig
from wagateway.context import GatewayContext
from wagateway.session.exceptions import (
    AdmissionRejected,
    PairingError,
    PairingTimeoutError,
    PersistenceError,
    PhoneValidationError,
    TransportError,
)
from wagateway.session.models import SESSION_ID_RE, SessionRecord, SessionStatus, from_millis
from wagateway.session.phone import normalize_phone
from wagateway.transport.bridge import BridgeTransport

logger = structlog.get_logger("server")

PAIR_MESSAGE = "Enter this code in WhatsApp: Settings → Linked Devices → Link a Device"

_PENDING_STATUSES = (
    SessionStatus.PENDING.value,
    SessionStatus.AWAITING_CODE.value,
    SessionStatus.AWAITING_LINK.value,
)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class PairRequest(BaseModel):
    """Request body for ``POST /api/pair``."""
    model_config = ConfigDict(coerce_numbers_to_str=True)

    phoneNumber: Optional[str] = Field(default=None, max_length=64)


class BridgeEvent(BaseModel):
    """One event pushed by the sidecar."""
    sessionId: str = Field(..., max_length=128)
    event: str = Field(..., max_length=64)
    data: Any = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _error(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message, **extra})


def _ctx(request: Request) -> GatewayContext:
    return request.app.state.context


def _status_from_file(session_id: str, data: dict) -> dict:
    """Polling view rebuilt from a status file when the store has no record."""
    match = SESSION_ID_RE.match(session_id)
    created_at = from_millis(int(match.group(2)))
    payload = {
        "success": True,
        "status": data.get("status"),
        "sessionId": session_id,
        "phoneNumber": data.get("phoneNumber") or match.group(1),
        "createdAt": created_at.isoformat(),
    }
    if data.get("code"):
        payload["code"] = data["code"]
    connected_at = data.get("connectedAt")
    if connected_at:
        payload["connectedAt"] = from_millis(connected_at).isoformat()
    if data.get("error"):
        payload["error"] = data["error"]
    return payload


# ---------------------------------------------------------------------------
# Middleware and exception handlers
# ---------------------------------------------------------------------------


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(_uuid.uuid4())[:12]
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


async def _http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _error(exc.status_code, str(exc.detail))


async def _validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info("request_validation_failed", path=request.url.path, errors=len(exc.errors()))
    return _error(400, "Invalid request body")


async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_exception", path=request.url.path, error=str(exc), exc_type=type(exc).__name__)
    return _error(500, "Internal server error")


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

router = APIRouter()


@router.get("/")
async def index(request: Request):
    """Serve the pairing page."""
    page = Path(_ctx(request).config.server.public_dir) / "index.html"
    if not page.is_file():
        return _error(404, "Page not found")
    return FileResponse(str(page))


@router.post("/api/pair")
async def pair(body: PairRequest, request: Request):
    """Create a session for a phone number and wait for its pairing code."""
    ctx = _ctx(request)
    raw_phone = (body.phoneNumber or "").strip()
    if not raw_phone:
        return _error(400, "Phone number is required")
    try:
        phone = normalize_phone(raw_phone)
    except PhoneValidationError as exc:
        return _error(400, str(exc))

    session_id = ctx.allocate_session_id(phone)
    record = SessionRecord(session_id=session_id, phone_number=phone)
    decision = ctx.admission.admit(record)
    try:
        decision.raise_for_rejection()
    except AdmissionRejected as exc:
        return _error(429, str(exc), limit=exc.limit, current=exc.current)

    logger.info("pair_requested", session_id=session_id, phone=phone)
    ctx.pairing.register(session_id)
    try:
        await ctx.lifecycle.start(phone, session_id)
    except TransportError as exc:
        ctx.pairing.discard(session_id)
        logger.error("pair_start_failed", session_id=session_id, error=str(exc))
        return _error(500, "Failed to start session")

    if not ctx.pairing.is_scheduled(session_id) and record.pairing_code is None:
        # Credentials were already registered, nothing to pair
        ctx.pairing.discard(session_id)
        return {
            "success": True,
            "sessionId": session_id,
            "phoneNumber": phone,
            "code": None,
            "message": "Session already registered",
        }

    try:
        code = await ctx.pairing.wait_for_code(session_id, ctx.config.sessions.pairing_timeout)
    except PairingTimeoutError:
        return _error(408, "Pairing code generation timeout")
    except PairingError as exc:
        return _error(500, f"Failed to generate pairing code: {exc}")

    return {
        "success": True,
        "sessionId": session_id,
        "phoneNumber": phone,
        "code": code,
        "message": PAIR_MESSAGE,
    }


@router.get("/api/session/{session_id}")
async def get_session(session_id: str, request: Request):
    """Current status of one session."""
    ctx = _ctx(request)
    record = ctx.store.get(session_id)
    if record is not None:
        return {"success": True, **record.to_status()}

    if not SESSION_ID_RE.match(session_id):
        return _error(404, "Session not found")
    try:
        data = ctx.credentials.read_status(session_id)
    except PersistenceError as exc:
        logger.error("session_status_unreadable", session_id=session_id, error=str(exc))
        return _error(500, "Failed to read session status")
    if not data:
        return _error(404, "Session not found")
    return _status_from_file(session_id, data)


@router.delete("/api/session/{session_id}")
async def delete_session(session_id: str, request: Request):
    """Close the session, delete its credential directory, drop the record."""
    ctx = _ctx(request)
    if not SESSION_ID_RE.match(session_id):
        return _error(404, "Session not found")

    closed = await ctx.lifecycle.close(session_id)
    if not closed and not ctx.credentials.exists(session_id):
        return _error(404, "Session not found")

    try:
        ctx.credentials.delete(session_id)
    except PersistenceError as exc:
        logger.error("session_cleanup_failed", session_id=session_id, error=str(exc))
        return _error(500, "Session closed but credential cleanup failed")

    logger.info("session_deleted", session_id=session_id, was_tracked=closed)
    return {"success": True, "message": "Session deleted successfully"}


@router.get("/api/sessions")
async def list_sessions(request: Request):
    """Summary of every tracked session."""
    ctx = _ctx(request)
    records = ctx.store.list_all()
    return {
        "success": True,
        "count": len(records),
        "limit": ctx.admission.max_sessions,
        "sessions": [record.to_summary() for record in records],
    }


@router.get("/api/health")
async def health(request: Request):
    """Process uptime, memory and session counts."""
    ctx = _ctx(request)
    mem = psutil.Process().memory_info()
    counts = ctx.store.count_by_status()
    return {
        "success": True,
        "status": "online",
        "version": __version__,
        "uptime": round(ctx.uptime, 3),
        "memory": {"rss": mem.rss, "vms": mem.vms},
        "activeSessions": ctx.store.count(),
        "sessions": {
            "total": ctx.store.count(),
            "pending": sum(counts[s] for s in _PENDING_STATUSES),
            "connected": counts[SessionStatus.CONNECTED.value],
            "error": counts[SessionStatus.ERROR.value],
            "limit": ctx.admission.max_sessions,
        },
    }


@router.post("/api/bridge/events")
async def bridge_events(event: BridgeEvent, request: Request):
    """Route a sidecar event to the matching connection handle."""
    ctx = _ctx(request)
    transport = ctx.transport
    if not isinstance(transport, BridgeTransport):
        return _error(404, "Bridge transport not active")
    if transport.token:
        supplied = request.headers.get("X-Bridge-Token", "")
        if not hmac.compare_digest(supplied, transport.token):
            logger.warning("bridge_event_rejected", session_id=event.sessionId)
            return _error(401, "Invalid bridge token")

    routed = await transport.dispatch(event.sessionId, event.event, event.data)
    return {"success": True, "routed": routed}


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------


def create_app(
    context: Optional[GatewayContext] = None,
    config: Optional[GatewayConfig] = None,
) -> FastAPI:
    """Build the FastAPI app.

    With no ``context`` one is built at startup from ``config`` (or the
    YAML config file) and torn down at shutdown.
    """

    @asynccontextmanager
    async def _lifespan(application: FastAPI):
        ctx = context or GatewayContext.build(config or load_config())
        application.state.context = ctx
        ctx.start_background()
        logger.info(
            "server_started",
            sessions=ctx.store.count(),
            max_sessions=ctx.admission.max_sessions,
        )

        yield  # --- App running ---

        await ctx.shutdown()
        logger.info("server_shutdown_complete")

    application = FastAPI(title="WhatsApp Pairing Gateway", version=__version__, lifespan=_lifespan)
    application.add_middleware(RequestIDMiddleware)
    application.add_exception_handler(StarletteHTTPException, _http_exception_handler)
    application.add_exception_handler(RequestValidationError, _validation_exception_handler)
    application.add_exception_handler(Exception, _unhandled_exception_handler)
    application.include_router(router)
    return application


app = create_app()
