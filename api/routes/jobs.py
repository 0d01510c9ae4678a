"""
Job run history endpoint
"""

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from api.dependencies import get_db
from schemas.api import JobRunsResponse, JobRunInfo
from models.job_run import MigrationJobRun
from typing import Optional
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/jobs", tags=["Jobs"])


@router.get("/runs", response_model=JobRunsResponse)
async def list_job_runs(
    request: Request,
    job: Optional[str] = Query(None, description="Filter by job name"),
    limit: int = Query(50, ge=1, le=500, description="Maximum runs to return"),
    db: AsyncSession = Depends(get_db)
):
    """Most recent job lifecycles recorded by the sequencer, newest first."""
    request_id = getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")
    logger.info(f"[{request_id}] GET /jobs/runs - job={job}, limit={limit}")

    query = select(MigrationJobRun)
    if job:
        query = query.where(MigrationJobRun.job_name == job)
    query = query.order_by(MigrationJobRun.id.desc()).limit(limit)

    result = await db.execute(query)
    runs = [JobRunInfo.model_validate(run) for run in result.scalars().all()]

    return JobRunsResponse(runs=runs, count=len(runs))
