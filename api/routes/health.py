"""
Health check endpoint with ledger database and job status
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, text
from api.dependencies import get_db
from schemas.api import HealthCheckResponse, JobRunInfo
from models.base import JobState
from models.job_run import MigrationJobRun
from datetime import datetime, timezone
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.

    Returns:
    - Ledger database connectivity
    - Latest recorded run of every job
    """

    db_connected = False

    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except Exception as e:
        logger.error(f"Database connection failed: {str(e)}")

    jobs = []
    failed_jobs = 0
    skipped_jobs = 0

    if db_connected:
        try:
            latest = (
                select(MigrationJobRun.job_name, func.max(MigrationJobRun.id).label("last_id"))
                .group_by(MigrationJobRun.job_name)
                .subquery()
            )
            result = await db.execute(
                select(MigrationJobRun)
                .join(latest, MigrationJobRun.id == latest.c.last_id)
                .order_by(MigrationJobRun.job_name)
            )
            for run in result.scalars().all():
                if run.state == JobState.FAILED:
                    failed_jobs += 1
                elif run.state == JobState.SKIPPED:
                    skipped_jobs += 1
                jobs.append(JobRunInfo.model_validate(run))
        except Exception as e:
            logger.error(f"Failed to fetch job runs: {str(e)}")

    return HealthCheckResponse(
        timestamp=datetime.now(timezone.utc),
        database_connected=db_connected,
        jobs=jobs,
        total_jobs=len(jobs),
        failed_jobs=failed_jobs,
        skipped_jobs=skipped_jobs
    )
