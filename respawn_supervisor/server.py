"""FastAPI server exposing respawn control, hook events and metrics."""

import logging
import time
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, HTTPException, Request
from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware

from .errors import ConfigValidationError, SessionNotFoundError
from .models import Session

logger = logging.getLogger(__name__)


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """Log slow requests for debugging."""

    def __init__(self, app, config: Optional[dict] = None):
        super().__init__(app)
        self.config = config or {}

        timeouts = self.config.get("timeouts", {})
        server_timeouts = timeouts.get("server", {})
        self.slow_threshold = server_timeouts.get("slow_request_threshold_seconds", 1.0)

    async def dispatch(self, request: Request, call_next):
        start = time.monotonic()
        response = await call_next(request)
        elapsed = time.monotonic() - start

        if elapsed > self.slow_threshold:
            logger.warning(
                f"SLOW REQUEST: {request.method} {request.url.path} "
                f"took {elapsed:.2f}s"
            )

        return response


class AttachSessionRequest(BaseModel):
    """Request to attach an existing tmux session for supervision."""
    tmux_session: str
    working_dir: str = ""
    name: Optional[str] = None


class SessionResponse(BaseModel):
    """Response containing session info."""
    id: str
    name: str
    working_dir: str
    status: str
    created_at: str
    last_activity: str
    tmux_session: str
    respawn_enabled: bool = False


class EnableRespawnRequest(BaseModel):
    """Request to enable or disable respawn for a session."""
    enabled: bool
    duration_minutes: Optional[int] = None


class HookEventRequest(BaseModel):
    """Hook event forwarded by the agent's hook scripts."""
    session_id: str

    class Config:
        extra = "allow"  # Hook scripts may forward their whole payload


def _session_response(session: Session) -> SessionResponse:
    return SessionResponse(
        id=session.id,
        name=session.name,
        working_dir=session.working_dir,
        status=session.status.value,
        created_at=session.created_at.isoformat(),
        last_activity=session.last_activity.isoformat(),
        tmux_session=session.tmux_session,
        respawn_enabled=session.respawn_enabled,
    )


def create_app(
    respawn_manager=None,
    config: Optional[dict] = None,
    lifespan=None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        respawn_manager: RespawnManager instance
        config: Configuration dictionary
        lifespan: Optional ASGI lifespan context manager

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(
        title="Respawn Supervisor",
        description="Keep coding-agent sessions working by respawning them when idle",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.config = config or {}
    app.add_middleware(RequestTimingMiddleware, config=config)
    app.state.respawn_manager = respawn_manager

    def _manager():
        if not app.state.respawn_manager:
            raise HTTPException(status_code=503, detail="Respawn manager not configured")
        return app.state.respawn_manager

    def _get_session(session_id: str) -> Session:
        try:
            return _manager().get_session(session_id)
        except SessionNotFoundError:
            raise HTTPException(status_code=404, detail="Session not found")

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.post("/sessions", response_model=SessionResponse)
    async def attach_session(request: AttachSessionRequest):
        """Attach an existing tmux session for supervision."""
        manager = _manager()
        try:
            session = await manager.attach_session(
                tmux_session=request.tmux_session,
                working_dir=request.working_dir,
                name=request.name or "",
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return _session_response(session)

    @app.get("/sessions")
    async def list_sessions():
        """List attached sessions."""
        sessions = _manager().list_sessions()
        return {"sessions": [_session_response(s) for s in sessions]}

    @app.get("/sessions/{session_id}/respawn")
    async def get_respawn_status(session_id: str):
        """Respawn controller status, or enabled=False when no controller runs."""
        _get_session(session_id)
        return _manager().get_respawn_status(session_id)

    @app.get("/sessions/{session_id}/respawn/config")
    async def get_respawn_config(session_id: str):
        _get_session(session_id)
        return {"config": _manager().get_respawn_config(session_id).to_dict()}

    @app.put("/sessions/{session_id}/respawn/config")
    async def update_respawn_config(session_id: str, partial: Dict[str, Any] = Body(...)):
        """Merge a partial config update into the session's config."""
        _get_session(session_id)
        try:
            config = _manager().update_respawn_config(session_id, partial)
        except ConfigValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"success": True, "config": config.to_dict()}

    @app.post("/sessions/{session_id}/respawn/start")
    async def start_respawn(session_id: str, partial: Optional[Dict[str, Any]] = Body(None)):
        """Start respawn, optionally with a partial config applied first."""
        _get_session(session_id)
        try:
            status = _manager().start_respawn(session_id, partial)
        except ConfigValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"success": True, "status": status}

    @app.post("/sessions/{session_id}/respawn/stop")
    async def stop_respawn(session_id: str):
        _get_session(session_id)
        was_running = _manager().stop_respawn(session_id)
        return {"success": True, "was_running": was_running}

    @app.post("/sessions/{session_id}/respawn/enable")
    async def enable_respawn(session_id: str, request: EnableRespawnRequest):
        _get_session(session_id)
        try:
            result = _manager().set_respawn_enabled(session_id, request.enabled, request.duration_minutes)
        except ConfigValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return result

    @app.get("/sessions/{session_id}/respawn/health")
    async def get_respawn_health(session_id: str):
        _get_session(session_id)
        return _manager().get_health(session_id)

    @app.post("/hooks/{event}")
    async def hook_event(event: str, request: HookEventRequest):
        """
        Receive agent hook events.

        elicitation_dialog blocks respawn until work resumes; stop and
        idle_prompt are definitive idle signals.
        """
        _get_session(request.session_id)
        try:
            handled = _manager().handle_hook_event(event, request.session_id)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"status": "received" if handled else "ignored", "event": event}

    @app.get("/respawn/metrics")
    async def get_metrics(limit: int = 20):
        """Aggregate metrics and recent cycles across all sessions."""
        return _manager().get_metrics(limit)

    return app
