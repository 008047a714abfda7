"""
Migration run history endpoints
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from api.dependencies import get_db
from schemas.api import RunDetail, RunListResponse, RunSummary
from models.base import RunStatus
from models.migration_run import MigrationRun
from typing import Optional
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Runs"])


@router.get("/runs", response_model=RunListResponse)
async def list_runs(
    request: Request,
    limit: int = Query(20, ge=1, le=100, description="Number of recent runs to return"),
    status: Optional[RunStatus] = Query(None, description="Filter by run status"),
    db: AsyncSession = Depends(get_db)
):
    """Most recent migration runs first"""
    request_id = getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")
    logger.info(f"[{request_id}] GET /runs - limit={limit}, status={status}")

    query = select(MigrationRun)
    count_query = select(func.count()).select_from(MigrationRun)
    if status is not None:
        query = query.where(MigrationRun.status == status)
        count_query = count_query.where(MigrationRun.status == status)

    total = (await db.execute(count_query)).scalar() or 0
    result = await db.execute(
        query.order_by(MigrationRun.started_at.desc(), MigrationRun.id.desc()).limit(limit)
    )
    runs = [RunSummary.model_validate(run) for run in result.scalars().all()]

    return RunListResponse(runs=runs, total=total, request_id=request_id)


@router.get("/runs/{run_id}", response_model=RunDetail)
async def get_run(run_id: str, db: AsyncSession = Depends(get_db)):
    """One migration run with its per-stage results"""
    result = await db.execute(select(MigrationRun).where(MigrationRun.run_id == run_id))
    run = result.scalar_one_or_none()
    if run is None:
        raise HTTPException(status_code=404, detail=f"Migration run {run_id} not found")

    return RunDetail.model_validate(run)
