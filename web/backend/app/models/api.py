"""Pydantic models for API request/response serialization.

These models mirror the dirsync dataclasses and provide JSON
serialization for the FastAPI endpoints. Identifiers are strings.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Subscription feed
# ---------------------------------------------------------------------------


class MemberUpdateRequest(BaseModel):
    """Mirrors dirsync.models.events.RawMemberUpdate."""

    directory_id: str
    principal_id: str
    before: list[str] = Field(default_factory=list)
    after: list[str] = Field(default_factory=list)


class MemberPresenceRequest(BaseModel):
    """Mirrors RawMemberJoin / RawMemberLeave."""

    directory_id: str
    principal_id: str
    grant_ids: list[str] = Field(default_factory=list)


class ExclusionChangeRequest(BaseModel):
    """Mirrors dirsync.models.events.RawExclusionChange."""

    directory_id: str
    principal_id: str
    added: bool = True
    reason: str = ""


class AcceptedResponse(BaseModel):
    accepted: bool = True
    kind: str


# ---------------------------------------------------------------------------
# Selection surface
# ---------------------------------------------------------------------------


class SelectionOption(BaseModel):
    """One selectable grant, shaped for a select menu."""

    label: str
    value: str
    category: str = ""
    emoji: str = ""
    description: str = ""


class SelectionSetResponse(BaseModel):
    id: str
    directory_id: str
    title: str = ""
    exclusive: bool = True
    options: list[SelectionOption] = Field(default_factory=list)


class SelectionRequest(BaseModel):
    principal_id: str
    directory_id: str
    set_id: str
    grant_ids: list[str] = Field(default_factory=list)


class SelectionResponse(BaseModel):
    """Mirrors dirsync.sync.exclusivity.SelectionResult."""

    set_id: str
    principal_id: str
    changed: bool
    previous: list[str] = Field(default_factory=list)
    added: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)
    message: str = ""


class CurrentGrantResponse(BaseModel):
    set_id: str
    principal_id: str
    grant: Optional[SelectionOption] = None


# ---------------------------------------------------------------------------
# Sync status
# ---------------------------------------------------------------------------


class SweepReportResponse(BaseModel):
    """Mirrors dirsync.sync.reconcile.SweepReport."""

    ok: bool
    dry_run: bool = False
    started_at: float = 0.0
    finished_at: float = 0.0
    principals_checked: int = 0
    markers_corrected: int = 0
    exclusions_mirrored: int = 0
    grants_added: int = 0
    grants_removed: int = 0
    multiple_groups: list[str] = Field(default_factory=list)
    failures: list[str] = Field(default_factory=list)
    summary: str = ""


class DispatchStatsResponse(BaseModel):
    applied: int = 0
    dry_run: int = 0
    duplicates: int = 0
    not_found: int = 0
    failed: int = 0


class StatusResponse(BaseModel):
    started: bool
    dry_run: bool
    primary: str
    replicas: list[str] = Field(default_factory=list)
    dedup_records: int = 0
    pending_changes: int = 0
    events_received: int = 0
    events_dropped: int = 0
    dispatch: DispatchStatsResponse = Field(default_factory=DispatchStatsResponse)
    last_sweep: Optional[SweepReportResponse] = None
