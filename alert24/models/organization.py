"""Organization and status page models."""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey

from ..database import Base
from ..utils.db_utils import utcnow


class Organization(Base):
    """A tenant owning status pages, checks, contacts and incidents."""

    __tablename__ = "organizations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class StatusPage(Base):
    """A public status page listing an organization's services."""

    __tablename__ = "status_pages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow)
