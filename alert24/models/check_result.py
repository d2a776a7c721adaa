"""CheckResult model - append-only probe history."""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Boolean

from ..database import Base
from ..utils.db_utils import utcnow


class CheckResult(Base):
    """Single probe result for a monitoring check. Never updated once written."""

    __tablename__ = "check_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    monitoring_check_id = Column(
        Integer, ForeignKey("monitoring_checks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    is_successful = Column(Boolean, nullable=False)
    response_time = Column(Integer, nullable=True)  # ms
    status_code = Column(Integer, nullable=True)
    error_message = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)
