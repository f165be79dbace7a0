"""Events router -- the subscription feed from the directory service.

Every endpoint acknowledges with 202 and hands the notification to the
engine after the response is sent.
"""

from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, status

from dirsync.engine import SyncEngine
from dirsync.models.events import RawExclusionChange, RawMemberJoin, RawMemberLeave, RawMemberUpdate
from web.backend.app.middleware.auth import get_engine, verify_signature
from web.backend.app.models.api import (
    AcceptedResponse,
    ExclusionChangeRequest,
    MemberPresenceRequest,
    MemberUpdateRequest,
)

router = APIRouter(prefix="/api/events", tags=["events"], dependencies=[Depends(verify_signature)])


@router.post("/member-update", response_model=AcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def member_update(
    request: MemberUpdateRequest,
    background: BackgroundTasks,
    engine: SyncEngine = Depends(get_engine),
):
    """Before/after grant snapshots for one principal."""
    raw = RawMemberUpdate(request.directory_id, request.principal_id, frozenset(request.before), frozenset(request.after))
    background.add_task(engine.handle_notification, raw)
    return AcceptedResponse(kind="member_update")


@router.post("/member-join", response_model=AcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def member_join(
    request: MemberPresenceRequest,
    background: BackgroundTasks,
    engine: SyncEngine = Depends(get_engine),
):
    raw = RawMemberJoin(request.directory_id, request.principal_id, frozenset(request.grant_ids))
    background.add_task(engine.handle_notification, raw)
    return AcceptedResponse(kind="member_join")


@router.post("/member-leave", response_model=AcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def member_leave(
    request: MemberPresenceRequest,
    background: BackgroundTasks,
    engine: SyncEngine = Depends(get_engine),
):
    """A principal left or was expelled; the engine tells the two apart."""
    raw = RawMemberLeave(request.directory_id, request.principal_id, frozenset(request.grant_ids))
    background.add_task(engine.handle_notification, raw)
    return AcceptedResponse(kind="member_leave")


@router.post("/exclusion", response_model=AcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def exclusion(
    request: ExclusionChangeRequest,
    background: BackgroundTasks,
    engine: SyncEngine = Depends(get_engine),
):
    raw = RawExclusionChange(request.directory_id, request.principal_id, request.added, request.reason)
    background.add_task(engine.handle_notification, raw)
    return AcceptedResponse(kind="exclusion_added" if request.added else "exclusion_removed")
