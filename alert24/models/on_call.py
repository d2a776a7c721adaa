"""On-call schedule models."""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint

from ..database import Base
from ..utils.db_utils import utcnow


class OnCallSchedule(Base):
    """A rotation of contacts; escalation steps can page whoever is on call.

    The rotation hands off every ``rotation_hours`` starting at
    ``rotation_start``. Without a start the first member is always on call.
    """

    __tablename__ = "on_call_schedules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    rotation_hours = Column(Integer, nullable=False, default=168)  # weekly
    rotation_start = Column(DateTime, nullable=True)
    is_active = Column(Integer, default=1)
    created_at = Column(DateTime, default=utcnow)


class OnCallScheduleMember(Base):
    """A contact's slot in a schedule's rotation."""

    __tablename__ = "on_call_schedule_members"
    __table_args__ = (
        UniqueConstraint("schedule_id", "contact_id", name="uq_on_call_member"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    schedule_id = Column(Integer, ForeignKey("on_call_schedules.id", ondelete="CASCADE"), nullable=False, index=True)
    contact_id = Column(Integer, ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False)
    position = Column(Integer, nullable=False, default=0)  # rotation order
