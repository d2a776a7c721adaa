"""EscalationPolicy and Contact models."""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON

from ..database import Base
from ..utils.db_utils import utcnow


class EscalationPolicy(Base):
    """Ordered notification steps for an unresolved incident.

    ``escalation_steps`` is a JSON list of::

        {"delay_minutes": 0, "target_type": "user", "target_id": 1,
         "channels": ["email"], "timeout_minutes": 10}

    ``channels`` and ``timeout_minutes`` are optional. A step can page several
    targets with ``"targets": [{"type": "schedule", "id": 2}, ...]`` instead of
    ``target_type``/``target_id``. Target types are user, team and schedule.
    """

    __tablename__ = "escalation_policies"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    escalation_steps = Column(JSON, nullable=False, default=list)
    escalation_timeout_minutes = Column(Integer, nullable=True)  # Timeout for the last step
    is_active = Column(Integer, default=1)
    created_at = Column(DateTime, default=utcnow)


class Contact(Base):
    """A responder reachable by escalation steps, directly or through its team."""

    __tablename__ = "contacts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    team_id = Column(Integer, nullable=True, index=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)  # E.164
    webhook_url = Column(String, nullable=True)
    is_active = Column(Integer, default=1)
    created_at = Column(DateTime, default=utcnow)
