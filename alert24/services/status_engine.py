"""Status derivation engine - maps check states to service statuses.

A check drives its associated service only once it is *failing for
threshold*: currently down, and down for at least the association's
``failure_threshold_minutes``. Among all such associations the most severe
``failure_status`` wins (down > degraded > maintenance); on equal severity the
lowest association id wins. With none failing the service is operational.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..models import MonitoringCheck, Service, ServiceMonitoringAssociation, StatusPage
from ..models.monitoring_check import CHECK_DOWN
from ..models.service import (
    SERVICE_DEGRADED,
    SERVICE_DOWN,
    SERVICE_MAINTENANCE,
    SERVICE_OPERATIONAL,
)
from ..utils.db_utils import retry_on_lock, utcnow
from .publisher import StatusChangeReason, StatusUpdatePublisher
from .results import ERROR_INTEGRITY, BatchReport, OperationOutcome, classify_error, guarded

logger = logging.getLogger(__name__)

SEVERITY = {
    SERVICE_DOWN: 3,
    SERVICE_DEGRADED: 2,
    SERVICE_MAINTENANCE: 1,
}


@dataclass
class DerivedStatus:
    """Target status for a service and the association that decided it."""
    status: str
    association: Optional[ServiceMonitoringAssociation] = None
    check: Optional[MonitoringCheck] = None

    def reason(self) -> StatusChangeReason:
        if self.association is None:
            return StatusChangeReason()
        return StatusChangeReason(
            monitoring_check_id=self.check.id,
            check_name=self.check.name,
            failure_message=self.association.failure_message,
            error_message=self.check.failure_message,
            created_by=self.check.created_by,
        )


def is_failing_for_threshold(
    check: MonitoringCheck,
    association: ServiceMonitoringAssociation,
    now: datetime,
) -> bool:
    """Whether a check has been continuously down for the association's threshold."""
    if check.current_status != CHECK_DOWN or check.last_failure_at is None:
        return False
    threshold = timedelta(minutes=association.failure_threshold_minutes or 0)
    return now - check.last_failure_at >= threshold


def derive_status(
    pairs: Iterable[Tuple[ServiceMonitoringAssociation, MonitoringCheck]],
    now: datetime,
) -> DerivedStatus:
    """Pick the target status from a service's (association, check) pairs."""
    winner: Optional[Tuple[ServiceMonitoringAssociation, MonitoringCheck]] = None
    for association, check in pairs:
        if association.failure_status not in SEVERITY:
            logger.warning(
                f"Association {association.id} has unknown failure status '{association.failure_status}'"
            )
            continue
        if not is_failing_for_threshold(check, association, now):
            continue
        if winner is None:
            winner = (association, check)
            continue
        best = winner[0]
        severity = SEVERITY[association.failure_status]
        best_severity = SEVERITY[best.failure_status]
        if severity > best_severity or (severity == best_severity and association.id < best.id):
            winner = (association, check)

    if winner is None:
        return DerivedStatus(status=SERVICE_OPERATIONAL)
    return DerivedStatus(status=winner[0].failure_status, association=winner[0], check=winner[1])


class StatusDerivationEngine:
    """Derives and persists service statuses for an organization."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        publisher: StatusUpdatePublisher,
        timeout_seconds: float = 30,
        max_concurrent: int = 10,
    ):
        self.session_factory = session_factory
        self.publisher = publisher
        self.timeout_seconds = timeout_seconds
        self.max_concurrent = max_concurrent

    async def derive_service_statuses(
        self,
        organization_id: int,
        now: Optional[datetime] = None,
    ) -> BatchReport:
        """Re-derive every service of an organization. Idempotent for unchanged checks."""
        report = BatchReport(operation="derive_service_statuses")
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Service.id)
                    .join(StatusPage, Service.status_page_id == StatusPage.id)
                    .where(StatusPage.organization_id == organization_id)
                    .order_by(Service.id)
                )
                service_ids = list(result.scalars().all())
        except Exception as e:
            logger.error(f"Could not list services for organization {organization_id}: {e}")
            report.add(OperationOutcome.failure(organization_id, f"{type(e).__name__}: {e}", classify_error(e)))
            return report.finish()

        return await self.derive_services(service_ids, now=now, report=report)

    async def derive_services(
        self,
        service_ids: List[int],
        now: Optional[datetime] = None,
        report: Optional[BatchReport] = None,
    ) -> BatchReport:
        """Re-derive the given services, in parallel up to the concurrency cap."""
        report = report or BatchReport(operation="derive_service_statuses")
        now = now or utcnow()
        semaphore = asyncio.Semaphore(self.max_concurrent)

        async def derive_with_limit(service_id: int) -> OperationOutcome:
            async with semaphore:
                return await guarded(
                    service_id,
                    lambda: self._derive_one(service_id, now),
                    self.timeout_seconds,
                    "Status derivation",
                )

        for outcome in await asyncio.gather(*[derive_with_limit(sid) for sid in service_ids]):
            report.add(outcome)
        return report.finish()

    async def _derive_one(self, service_id: int, now: datetime) -> OperationOutcome:
        async with self.session_factory() as session:
            service = await session.get(Service, service_id)
            if service is None:
                return OperationOutcome.failure(service_id, f"Service {service_id} not found", ERROR_INTEGRITY)
            if service.status_locked:
                logger.debug(f"Service {service.name} is manually locked at {service.status}, skipping")
                return OperationOutcome.success(service_id, "locked", status=service.status)

            result = await session.execute(
                select(ServiceMonitoringAssociation, MonitoringCheck)
                .join(MonitoringCheck, ServiceMonitoringAssociation.monitoring_check_id == MonitoringCheck.id)
                .where(ServiceMonitoringAssociation.service_id == service_id)
                .order_by(ServiceMonitoringAssociation.id)
            )
            derived = derive_status(result.all(), now)
            old_status = service.status

            if derived.status == old_status:
                return OperationOutcome.success(service_id, "unchanged", status=old_status)

            # Compare-and-swap: only the run that still sees old_status may publish
            swapped = await session.execute(
                update(Service)
                .where(Service.id == service_id, Service.status == old_status)
                .values(status=derived.status, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if swapped.rowcount != 1:
                await session.rollback()
                logger.debug(f"Service {service_id} changed concurrently, skipping publish")
                return OperationOutcome.success(service_id, "stale", status=old_status)

            await self.publisher.publish(session, service, old_status, derived.status, derived.reason(), now)
            await retry_on_lock(session.commit)

        logger.info(f"Service {service.name}: {old_status} -> {derived.status}")
        return OperationOutcome.success(
            service_id,
            "changed",
            old_status=old_status,
            new_status=derived.status,
            monitoring_check_id=derived.check.id if derived.check else None,
        )
