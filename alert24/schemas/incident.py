"""Incident schemas for API."""
from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel, Field


class IncidentCreate(BaseModel):
    """Schema for creating an incident."""
    organization_id: int
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=5000)
    severity: str = Field(default="medium", pattern="^(critical|high|medium|low)$")
    escalation_policy_id: Optional[int] = None
    created_by: Optional[str] = None


class IncidentAction(BaseModel):
    """Who acknowledged or resolved an incident."""
    user: Optional[str] = None


class IncidentResponse(BaseModel):
    """Schema for incident in API responses."""
    id: int
    organization_id: int
    title: str
    description: Optional[str] = None
    severity: str
    status: str
    escalation_policy_id: Optional[int] = None
    current_step_index: int
    escalation_state: str
    created_by: Optional[str] = None
    acknowledged_by: Optional[str] = None
    created_at: datetime
    acknowledged_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class IncidentEscalationResponse(BaseModel):
    """One escalation step attempt."""
    id: int
    step_index: int
    status: str
    created_at: datetime
    notified_at: Optional[datetime] = None
    timeout_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    notes: Optional[str] = None

    class Config:
        from_attributes = True


class NotificationLogResponse(BaseModel):
    """One notification attempt."""
    id: int
    incident_escalation_id: Optional[int] = None
    channel: str
    recipient: str
    success: Optional[bool] = None
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    sent_at: datetime

    class Config:
        from_attributes = True


class IncidentEscalations(BaseModel):
    """An incident with its escalation trail."""
    incident: IncidentResponse
    escalations: List[IncidentEscalationResponse]
    notifications: List[NotificationLogResponse]
