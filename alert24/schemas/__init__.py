"""Pydantic schemas for API request/response models."""
from .check_result import (
    CheckResultCreate,
    CheckResultRecorded,
)
from .incident import (
    IncidentCreate,
    IncidentAction,
    IncidentResponse,
    IncidentEscalationResponse,
    NotificationLogResponse,
    IncidentEscalations,
)
from .status import (
    StatusUpdateResponse,
    ServiceStatus,
    StatusPageOverview,
    CronSummary,
)

__all__ = [
    "CheckResultCreate",
    "CheckResultRecorded",
    "IncidentCreate",
    "IncidentAction",
    "IncidentResponse",
    "IncidentEscalationResponse",
    "NotificationLogResponse",
    "IncidentEscalations",
    "StatusUpdateResponse",
    "ServiceStatus",
    "StatusPageOverview",
    "CronSummary",
]
