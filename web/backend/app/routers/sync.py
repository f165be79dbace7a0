"""Sync router -- on-demand reconciliation and engine status."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from dirsync.engine import SyncEngine
from web.backend.app.middleware.auth import get_engine
from web.backend.app.models.api import StatusResponse, SweepReportResponse

router = APIRouter(prefix="/api/sync", tags=["sync"])


@router.post("/sweep", response_model=SweepReportResponse, summary="Run one reconciliation sweep")
async def run_sweep(engine: SyncEngine = Depends(get_engine)):
    """Run a full sweep now and return its report.

    Waits for a sweep that is already running to finish first.
    """
    report = await engine.run_sweep()
    return SweepReportResponse(**report.to_dict())


@router.get("/status", response_model=StatusResponse)
async def status(engine: SyncEngine = Depends(get_engine)):
    return StatusResponse(**engine.status())
