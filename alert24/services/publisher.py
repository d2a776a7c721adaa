"""Status update publisher - audit trail for service status transitions."""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Service, ServiceStatusHistory, StatusUpdate
from ..models.service import SERVICE_DEGRADED, SERVICE_DOWN, SERVICE_MAINTENANCE, SERVICE_OPERATIONAL

logger = logging.getLogger(__name__)


@dataclass
class StatusChangeReason:
    """Why a service changed status - the association that decided it, if any."""
    monitoring_check_id: Optional[int] = None
    check_name: Optional[str] = None
    failure_message: Optional[str] = None  # Custom text configured on the association
    error_message: Optional[str] = None  # Last probe error
    created_by: Optional[str] = None


class StatusUpdatePublisher:
    """Writes the StatusUpdate and history intervals for one transition.

    Runs inside the caller's transaction and never commits: the caller's
    status change and these rows are committed or rolled back together.
    """

    def _build_title(self, service: Service) -> str:
        return f"{service.name} Status Update"

    def _build_message(self, service: Service, new_status: str, reason: StatusChangeReason) -> str:
        if new_status != SERVICE_OPERATIONAL and reason.failure_message and reason.failure_message.strip():
            return reason.failure_message

        cause = f": {reason.error_message}" if reason.error_message else ""
        if new_status == SERVICE_DOWN:
            return f"{service.name} is currently down due to monitoring check failure{cause}"
        if new_status == SERVICE_DEGRADED:
            return f"{service.name} is experiencing degraded performance due to monitoring check issues{cause}"
        if new_status == SERVICE_MAINTENANCE:
            return f"{service.name} is under maintenance"
        return f"{service.name} has recovered and is operational"

    async def publish(
        self,
        session: AsyncSession,
        service: Service,
        old_status: str,
        new_status: str,
        reason: StatusChangeReason,
        now: datetime,
    ) -> StatusUpdate:
        """Write the StatusUpdate and close/open the history interval pair."""
        status_update = StatusUpdate(
            status_page_id=service.status_page_id,
            service_id=service.id,
            title=self._build_title(service),
            message=self._build_message(service, new_status, reason),
            status=new_status,
            update_type="monitoring",
            created_by=reason.created_by,
            created_at=now,
        )
        session.add(status_update)
        await session.flush()  # Get the status_update.id

        result = await session.execute(
            select(ServiceStatusHistory)
            .where(
                ServiceStatusHistory.service_id == service.id,
                ServiceStatusHistory.ended_at.is_(None),
            )
            .order_by(ServiceStatusHistory.started_at.desc())
        )
        open_intervals = list(result.scalars().all())

        if open_intervals:
            for interval in open_intervals:
                interval.ended_at = now
        else:
            # First transition: record the interval the service spent in its old status
            session.add(ServiceStatusHistory(
                service_id=service.id,
                status=old_status,
                started_at=min(service.created_at, now) if service.created_at else now,
                ended_at=now,
            ))

        session.add(ServiceStatusHistory(
            service_id=service.id,
            status=new_status,
            started_at=now,
            status_update_id=status_update.id,
        ))
        await session.flush()

        logger.info(f"Published status update for service {service.name}: {old_status} -> {new_status}")
        return status_update
