"""NotificationLog model - log of sent notifications."""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey

from ..database import Base
from ..utils.db_utils import utcnow


class NotificationLog(Base):
    """Record of a notification sent for an escalation step."""

    __tablename__ = "notification_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    incident_id = Column(Integer, ForeignKey("incidents.id", ondelete="CASCADE"), nullable=False, index=True)
    incident_escalation_id = Column(
        Integer, ForeignKey("incident_escalations.id", ondelete="CASCADE"), nullable=True
    )
    channel = Column(String, nullable=False)  # email, sms, voice, webhook
    recipient = Column(String, nullable=False)
    subject = Column(String, nullable=True)
    sent_at = Column(DateTime, default=utcnow)
    success = Column(Integer, nullable=True)  # 1=success, 0=failed
    provider_message_id = Column(String, nullable=True)
    error = Column(String, nullable=True)
