"""StatusUpdate model - public announcements posted on a status page."""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey

from ..database import Base
from ..utils.db_utils import utcnow


class StatusUpdate(Base):
    """Append-only status announcement, written on every derived status change."""

    __tablename__ = "status_updates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    status_page_id = Column(Integer, ForeignKey("status_pages.id"), nullable=False, index=True)
    service_id = Column(Integer, ForeignKey("services.id", ondelete="SET NULL"), nullable=True, index=True)
    title = Column(String, nullable=False)
    message = Column(String, nullable=False)
    status = Column(String, nullable=False)
    update_type = Column(String, default="monitoring")  # monitoring, manual
    created_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
