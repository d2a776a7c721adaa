"""Service status schemas for API."""
from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel


class StatusUpdateResponse(BaseModel):
    """A published status update."""
    id: int
    service_id: Optional[int] = None
    title: str
    message: str
    status: str
    update_type: str
    created_at: datetime

    class Config:
        from_attributes = True


class ServiceStatus(BaseModel):
    """A service with its current status."""
    id: int
    name: str
    status: str
    status_locked: bool
    status_since: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class StatusPageOverview(BaseModel):
    """Services and recent updates of one status page."""
    status_page_id: int
    name: str
    services: List[ServiceStatus]
    updates: List[StatusUpdateResponse]


class CronSummary(BaseModel):
    """Aggregated result of one cron run."""
    success: bool
    executed_at: datetime
    reports: List[dict]
