"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from models.base import JobState


# ============================================================================
# Job Run Schemas
# ============================================================================

class JobRunInfo(BaseModel):
    """One recorded job lifecycle"""
    id: int
    cycle: int
    job_name: str
    group_id: str
    topic: str
    state: JobState
    records_sent: Optional[int] = 0
    producer_attempts: Optional[int] = 0
    drained: Optional[bool] = False
    log_end_offset: Optional[int] = None
    lag: Optional[int] = None
    error_message: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None

    class Config:
        from_attributes = True
        use_enum_values = True


class JobRunsResponse(BaseModel):
    """Recent job runs, newest first"""
    runs: List[JobRunInfo] = Field(default_factory=list)
    count: int = 0


# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response model"""
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")
    timestamp: datetime
    database_connected: bool
    jobs: List[JobRunInfo] = Field(default_factory=list, description="Latest run per job")
    total_jobs: int = 0
    failed_jobs: int = 0
    skipped_jobs: int = 0

    @model_validator(mode="after")
    def determine_status(self):
        """Determine overall health status"""
        if not self.database_connected:
            self.status = "unhealthy"
        elif self.total_jobs and self.failed_jobs == self.total_jobs:
            self.status = "unhealthy"
        elif self.failed_jobs or self.skipped_jobs:
            self.status = "degraded"
        else:
            self.status = "healthy"
        return self

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "total_jobs": 6,
                "failed_jobs": 0,
                "skipped_jobs": 0
            }
        }


# ============================================================================
# Error Ledger Schemas
# ============================================================================

class ErrorLedgerItem(BaseModel):
    """One migration_error_log row"""
    id: int
    source_table: str
    target_table: str
    source_primary_key: Optional[str] = None
    failed_data: str
    error_message: str
    migration_step: str
    created_at: datetime

    class Config:
        from_attributes = True


class PaginationMetadata(BaseModel):
    """Pagination metadata"""
    current_page: int
    page_size: int
    total_items: int
    total_pages: int
    has_next: bool
    has_previous: bool


class ErrorLedgerResponse(BaseModel):
    """Paged error ledger listing"""
    items: List[ErrorLedgerItem]
    pagination: PaginationMetadata
    filters_applied: Dict[str, Any] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str
    message: str
    details: Optional[Dict[str, Any]] = None
    timestamp: datetime

    class Config:
        json_schema_extra = {
            "example": {
                "error": "ValidationError",
                "message": "Invalid page number",
                "details": {"page": -1},
                "timestamp": "2024-01-15T10:30:00Z"
            }
        }
