"""Service models - status page components, their check links and status history."""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint

from ..database import Base
from ..utils.db_utils import utcnow

SERVICE_OPERATIONAL = "operational"
SERVICE_DEGRADED = "degraded"
SERVICE_DOWN = "down"
SERVICE_MAINTENANCE = "maintenance"


class Service(Base):
    """A user-facing component shown on a status page.

    ``status`` is derived from the service's monitoring associations unless
    ``status_locked`` is set, in which case it is left as manually assigned.
    """

    __tablename__ = "services"

    id = Column(Integer, primary_key=True, autoincrement=True)
    status_page_id = Column(Integer, ForeignKey("status_pages.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    status = Column(String, nullable=False, default=SERVICE_OPERATIONAL)
    status_locked = Column(Integer, default=0)  # 0 or 1
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)


class ServiceMonitoringAssociation(Base):
    """Link between a service and a monitoring check with its failure impact."""

    __tablename__ = "service_monitoring_checks"
    __table_args__ = (
        UniqueConstraint("service_id", "monitoring_check_id", name="uq_service_monitoring_check"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    service_id = Column(Integer, ForeignKey("services.id", ondelete="CASCADE"), nullable=False, index=True)
    monitoring_check_id = Column(
        Integer, ForeignKey("monitoring_checks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    failure_threshold_minutes = Column(Integer, nullable=False, default=0)
    failure_status = Column(String, nullable=False, default=SERVICE_DEGRADED)  # degraded, down, maintenance
    failure_message = Column(String, nullable=True)  # Custom status update text
    created_at = Column(DateTime, default=utcnow)


class ServiceStatusHistory(Base):
    """Status interval for a service. ``ended_at`` is NULL for the open interval."""

    __tablename__ = "service_status_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    service_id = Column(Integer, ForeignKey("services.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(String, nullable=False)
    started_at = Column(DateTime, nullable=False, default=utcnow)
    ended_at = Column(DateTime, nullable=True)
    status_update_id = Column(Integer, ForeignKey("status_updates.id"), nullable=True)
