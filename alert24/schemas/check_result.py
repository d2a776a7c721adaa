"""Check result schemas for API."""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field


class CheckResultCreate(BaseModel):
    """A probe result reported by an external agent."""
    monitoring_check_id: int
    is_successful: bool
    response_time: Optional[int] = Field(None, ge=0)  # ms
    timestamp: Optional[datetime] = None
    status_code: Optional[int] = None
    error_message: Optional[str] = Field(None, max_length=2000)


class CheckResultRecorded(BaseModel):
    """Check state after a result is recorded."""
    monitoring_check_id: int
    current_status: str
    consecutive_failures: int
    last_failure_at: Optional[datetime] = None
    service_ids: List[int] = []
    services_changed: int = 0
