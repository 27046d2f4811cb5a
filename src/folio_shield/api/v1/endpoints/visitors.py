"""Visitor tracking endpoints used by the portfolio and admin frontends."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from folio_shield.db.session import get_db
from folio_shield.schemas import (
    LeaveRequest,
    LeaveResponse,
    TrackRequest,
    TrackResponse,
    VisitorStats,
)
from folio_shield.security.client import extract_client_ip
from folio_shield.services.presence import PresenceHub, get_presence_hub
from folio_shield.services.visitors import VisitorService, get_visitor_service

router = APIRouter(prefix="/visitors", tags=["visitors"])

SessionDep = Annotated[Session, Depends(get_db)]
VisitorServiceDep = Annotated[VisitorService, Depends(get_visitor_service)]
PresenceHubDep = Annotated[PresenceHub, Depends(get_presence_hub)]


def _require_session_id(session_id: str | None) -> str:
    if not session_id or not session_id.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Session ID is required",
        )
    return session_id


@router.post("/track", response_model=TrackResponse)
async def track_visitor(
    request: Request,
    db: SessionDep,
    visitors: VisitorServiceDep,
    hub: PresenceHubDep,
    payload: Annotated[TrackRequest | None, Body()] = None,
) -> TrackResponse:
    """Record a heartbeat, creating the session on first contact.

    Args:
        request: Incoming request, used for client address and user agent
        db: Database session
        visitors: Visitor store service
        hub: Presence hub used to push the new live count
        payload: ``{sessionId, page, socketId?}``

    Returns:
        The tracked session id and the current live count
    """
    session_id = _require_session_id(payload.session_id if payload else None)
    client_host = request.client.host if request.client else None
    visitor = visitors.track(
        db,
        session_id,
        page=payload.page,
        socket_id=payload.socket_id,
        ip_address=extract_client_ip(request.headers, client_host),
        user_agent=request.headers.get("user-agent", ""),
    )
    live_count = visitors.get_live_count(db)
    await hub.broadcast_live_count()
    return TrackResponse(session_id=visitor.session_id, live_count=live_count)


@router.post("/leave", response_model=LeaveResponse)
async def leave_visitor(
    db: SessionDep,
    visitors: VisitorServiceDep,
    hub: PresenceHubDep,
    payload: Annotated[LeaveRequest | None, Body()] = None,
) -> LeaveResponse:
    """Mark a session inactive."""
    session_id = _require_session_id(payload.session_id if payload else None)
    visitors.mark_inactive(db, session_id)
    live_count = visitors.get_live_count(db)
    await hub.broadcast_live_count()
    return LeaveResponse(live_count=live_count)


@router.get("/stats/all", response_model=VisitorStats)
async def get_all_stats(db: SessionDep, visitors: VisitorServiceDep) -> VisitorStats:
    """Live viewers plus hourly, daily, monthly and all-time visit counts."""
    return visitors.get_stats(db)
