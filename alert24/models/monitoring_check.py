"""MonitoringCheck model - probes configured against a target."""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey

from ..database import Base
from ..utils.db_utils import utcnow

CHECK_UP = "up"
CHECK_DOWN = "down"
CHECK_INACTIVE = "inactive"


class MonitoringCheck(Base):
    """A monitored endpoint - http, https, tcp, ping, or ssl check.

    ``last_failure_at`` marks the start of the current failure streak: it is
    set by the first failed result and cleared by the next success.
    """

    __tablename__ = "monitoring_checks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    type = Column(String, nullable=False)  # http, https, tcp, ping, ssl
    target = Column(String, nullable=False)  # URL, hostname or host:port
    interval = Column(Integer, default=300)  # seconds
    timeout_seconds = Column(Integer, default=30)
    expected_status_code = Column(Integer, default=200)
    is_active = Column(Integer, default=1)

    current_status = Column(String, nullable=False, default=CHECK_INACTIVE)  # up, down, inactive
    consecutive_failures = Column(Integer, nullable=False, default=0)
    consecutive_successes = Column(Integer, nullable=False, default=0)
    last_failure_at = Column(DateTime, nullable=True)
    last_success_at = Column(DateTime, nullable=True)
    last_check_at = Column(DateTime, nullable=True)
    failure_message = Column(String, nullable=True)

    created_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
