"""Selection router -- option lists, selection submission and current grant."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from dirsync.config.loader import SelectableGrant
from dirsync.engine import SyncEngine
from dirsync.errors import NotFoundError, SelectionError
from web.backend.app.middleware.auth import get_engine
from web.backend.app.models.api import (
    CurrentGrantResponse,
    SelectionOption,
    SelectionRequest,
    SelectionResponse,
    SelectionSetResponse,
)

router = APIRouter(prefix="/api/selection", tags=["selection"])


def _option(grant: SelectableGrant) -> SelectionOption:
    return SelectionOption(
        label=grant.name,
        value=grant.grant_id,
        category=grant.category,
        emoji=grant.emoji,
        description=grant.description or grant.category,
    )


@router.get("/sets", response_model=list[SelectionSetResponse])
async def list_sets(engine: SyncEngine = Depends(get_engine)):
    """Every configured selection set with its options."""
    return [
        SelectionSetResponse(
            id=s.id,
            directory_id=s.directory_id,
            title=s.title,
            exclusive=s.exclusive,
            options=[_option(g) for g in s.grants],
        )
        for s in engine.config.selection_sets
    ]


@router.post("", response_model=SelectionResponse, summary="Submit a selection")
async def submit_selection(request: SelectionRequest, engine: SyncEngine = Depends(get_engine)):
    try:
        result = await engine.submit_selection(
            request.principal_id, request.directory_id, request.grant_ids, request.set_id
        )
    except SelectionError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))

    return SelectionResponse(
        set_id=result.set_id,
        principal_id=result.principal_id,
        changed=result.changed,
        previous=result.previous,
        added=result.added,
        removed=result.removed,
        message=result.message,
    )


@router.get("/{set_id}/{principal_id}", response_model=CurrentGrantResponse)
async def current_grant(set_id: str, principal_id: str, engine: SyncEngine = Depends(get_engine)):
    try:
        grant = await engine.current_grant(principal_id, set_id)
    except SelectionError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return CurrentGrantResponse(
        set_id=set_id,
        principal_id=principal_id,
        grant=_option(grant) if grant else None,
    )
