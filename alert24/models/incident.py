"""Incident and IncidentEscalation models."""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint

from ..database import Base
from ..utils.db_utils import utcnow

# Incident lifecycle (forward only)
INCIDENT_NEW = "new"
INCIDENT_ACKNOWLEDGED = "acknowledged"
INCIDENT_RESOLVED = "resolved"

# Incident escalation markers
ESCALATION_PENDING = "pending"
ESCALATION_ESCALATING = "escalating"
ESCALATION_UNESCALATED = "unescalated"
ESCALATION_FAILED = "escalation_failed"
ESCALATION_STOPPED = "stopped"

# IncidentEscalation step states
STEP_PENDING = "pending"
STEP_NOTIFIED = "notified"
STEP_ACKNOWLEDGED = "acknowledged"
STEP_TIMED_OUT = "timed_out"
STEP_CANCELLED = "cancelled"

ACTIVE_STEP_STATES = (STEP_PENDING, STEP_NOTIFIED)


class Incident(Base):
    """An incident; drives the escalation walker while in ``new`` status."""

    __tablename__ = "incidents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(String, nullable=True)
    severity = Column(String, nullable=False, default="medium")  # critical, high, medium, low
    status = Column(String, nullable=False, default=INCIDENT_NEW, index=True)
    escalation_policy_id = Column(
        Integer, ForeignKey("escalation_policies.id", ondelete="SET NULL"), nullable=True
    )
    current_step_index = Column(Integer, nullable=False, default=0)
    escalation_state = Column(String, nullable=False, default=ESCALATION_PENDING)
    created_by = Column(String, nullable=True)
    acknowledged_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    acknowledged_at = Column(DateTime, nullable=True)
    resolved_at = Column(DateTime, nullable=True)


class IncidentEscalation(Base):
    """One attempt at one escalation step for an incident."""

    __tablename__ = "incident_escalations"
    __table_args__ = (
        UniqueConstraint("incident_id", "step_index", name="uq_incident_escalation_step"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    incident_id = Column(Integer, ForeignKey("incidents.id", ondelete="CASCADE"), nullable=False, index=True)
    step_index = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default=STEP_PENDING, index=True)
    created_at = Column(DateTime, default=utcnow)
    notified_at = Column(DateTime, nullable=True)
    timeout_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    notes = Column(String, nullable=True)
