"""
Error ledger listing with pagination and filtering
"""

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, and_
from api.dependencies import get_db
from schemas.api import ErrorLedgerResponse, ErrorLedgerItem, PaginationMetadata
from models.error_ledger import MigrationErrorLog
from typing import Optional
from datetime import datetime
import time
import uuid
import math
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Errors"])


@router.get("/errors", response_model=ErrorLedgerResponse)
async def list_errors(
    request: Request,
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=1000, description="Items per page"),
    migration_step: Optional[str] = Query(None, description="Filter by migration step"),
    source_primary_key: Optional[str] = Query(None, description="Filter by source primary key"),
    created_after: Optional[datetime] = Query(None, description="Logged after date"),
    db: AsyncSession = Depends(get_db)
):
    """
    Page through migration_error_log, newest first.

    Used for offline remediation; the pipeline itself never reads the ledger.
    """
    start_time = time.time()
    request_id = getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")

    logger.info(
        f"[{request_id}] GET /errors - page={page}, page_size={page_size}, "
        f"migration_step={migration_step}"
    )

    filters = []
    if migration_step:
        filters.append(MigrationErrorLog.migration_step == migration_step)
    if source_primary_key:
        filters.append(MigrationErrorLog.source_primary_key == source_primary_key)
    if created_after:
        filters.append(MigrationErrorLog.created_at >= created_after)

    count_query = select(func.count()).select_from(MigrationErrorLog)
    query = select(MigrationErrorLog)
    if filters:
        count_query = count_query.where(and_(*filters))
        query = query.where(and_(*filters))

    total_items = (await db.execute(count_query)).scalar()

    total_pages = math.ceil(total_items / page_size) if total_items > 0 else 0
    offset = (page - 1) * page_size

    query = query.order_by(MigrationErrorLog.id.desc()).offset(offset).limit(page_size)
    result = await db.execute(query)
    items = [ErrorLedgerItem.model_validate(row) for row in result.scalars().all()]

    api_latency_ms = (time.time() - start_time) * 1000
    logger.info(f"[{request_id}] Returned {len(items)} ledger entries ({api_latency_ms:.2f}ms)")

    return ErrorLedgerResponse(
        items=items,
        pagination=PaginationMetadata(
            current_page=page,
            page_size=page_size,
            total_items=total_items,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_previous=page > 1
        ),
        filters_applied={k: v for k, v in {
            "migration_step": migration_step,
            "source_primary_key": source_primary_key,
            "created_after": created_after,
        }.items() if v is not None}
    )
