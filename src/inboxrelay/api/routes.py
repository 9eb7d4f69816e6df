"""
Read-only view of the sessions this worker manages.

Nothing here can change session state; reconnects and removals are driven
solely by the schedulers.
"""

from datetime import datetime

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from inboxrelay.application.session_table import SessionTable

router = APIRouter(prefix="/internal")


class SessionStatus(BaseModel):
    """Snapshot of one managed mailbox session."""

    id: int
    email: str
    state: str = Field(..., description="idle, connecting, connected or closed")
    connected: bool
    polling: bool
    last_checked_at: datetime | None = None
    last_processed_uid: int | None = None
    last_activity_at: datetime | None = None
    uptime_seconds: int | None = None


class SessionList(BaseModel):
    instance_id: str
    count: int
    mailboxes: list[SessionStatus]


def _sessions(request: Request) -> SessionTable:
    return request.app.state.sessions


@router.get("/mailboxes", response_model=SessionList)
async def list_mailboxes(request: Request) -> SessionList:
    sessions = _sessions(request)
    items = [SessionStatus(**s.snapshot()) for s in sorted(sessions, key=lambda s: s.id)]
    return SessionList(instance_id=request.app.state.instance_id, count=len(items), mailboxes=items)


@router.get("/mailboxes/{mailbox_id}", response_model=SessionStatus)
async def get_mailbox(mailbox_id: int, request: Request) -> SessionStatus:
    session = _sessions(request).get(mailbox_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Mailbox {mailbox_id} is not managed by this instance")
    return SessionStatus(**session.snapshot())


@router.get("/health")
async def worker_health(request: Request) -> dict:
    """Health check for the worker: session counts and the PostgreSQL connection."""
    sessions = _sessions(request)
    connected = sum(1 for s in sessions if s.connection is not None)
    postgres = getattr(request.app.state, "postgres", None)
    db = await postgres.health_check() if postgres is not None else {"status": "not_configured"}

    return {
        "status": "healthy" if db["status"] != "unhealthy" else "unhealthy",
        "instance_id": request.app.state.instance_id,
        "sessions": len(sessions),
        "connected": connected,
        "postgres": db,
    }
