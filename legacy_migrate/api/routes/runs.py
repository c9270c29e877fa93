"""Read-only endpoints over stored migration runs."""

import os
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException

from ...services.report_store import ReportStore
from ..models import (
    IntegrityReportResponse,
    RejectionListResponse,
    RunListResponse,
    RunResponse,
)

router = APIRouter()

DEFAULT_OUTPUT_DIR = "./data"


def get_report_store() -> ReportStore:
    """Report store under MIGRATION_OUTPUT_DIR."""
    return ReportStore(os.environ.get("MIGRATION_OUTPUT_DIR", DEFAULT_OUTPUT_DIR))


@router.get("", response_model=RunListResponse)
async def list_runs(status: Optional[str] = None, store: ReportStore = Depends(get_report_store)):
    """List stored runs, newest first."""
    runs = store.list_runs()
    if status:
        runs = [r for r in runs if r.get("status") == status]
    return RunListResponse(runs=runs, total=len(runs))


@router.get("/{run_id}", response_model=RunResponse)
async def get_run(run_id: str, store: ReportStore = Depends(get_report_store)):
    """Get the summary of a run, including its run-log records."""
    run = store.get_run(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    return run


@router.get("/{run_id}/integrity", response_model=IntegrityReportResponse)
async def get_integrity(run_id: str, store: ReportStore = Depends(get_report_store)):
    """Get the integrity report of a run."""
    report = store.get_integrity(run_id)
    if report is None:
        raise HTTPException(status_code=404, detail="Integrity report not found")
    return report.to_dict()


@router.get("/{run_id}/rejections", response_model=RejectionListResponse)
async def get_rejections(
    run_id: str,
    entity_type: Optional[str] = None,
    store: ReportStore = Depends(get_report_store),
):
    """Get the records a run quarantined, optionally for one entity type."""
    rejections = store.get_rejections(run_id)
    if rejections is None:
        raise HTTPException(status_code=404, detail="Rejections not found")
    if entity_type:
        rejections = [r for r in rejections if r.get("entity_type") == entity_type]
    return RejectionListResponse(run_id=run_id, rejections=rejections, total=len(rejections))
