"""Check result ingestor - records probe results against monitoring checks."""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..models import CheckResult, MonitoringCheck, ServiceMonitoringAssociation
from ..models.monitoring_check import CHECK_DOWN, CHECK_UP
from ..utils.db_utils import retry_on_lock, utcnow
from .results import ERROR_INTEGRITY, OperationOutcome, guarded

logger = logging.getLogger(__name__)


@dataclass
class CheckResultIn:
    """A probe result as reported by the probe runner or an external agent."""
    monitoring_check_id: int
    is_successful: bool
    response_time: Optional[int] = None  # ms
    timestamp: Optional[datetime] = None
    status_code: Optional[int] = None
    error_message: Optional[str] = None


def to_naive_utc(value: Optional[datetime]) -> datetime:
    """Normalize a timestamp to the naive UTC form stored in the database."""
    if value is None:
        return utcnow()
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class CheckResultIngestor:
    """Appends check results and advances the check's failure counters.

    The counters are updated with SQL expressions in the same transaction as
    the CheckResult insert, so concurrent results for the same check never
    lose an increment and a failed write leaves the check untouched.
    """

    def __init__(self, session_factory: async_sessionmaker, timeout_seconds: float = 30):
        self.session_factory = session_factory
        self.timeout_seconds = timeout_seconds

    async def process_check_result(self, result: CheckResultIn) -> OperationOutcome:
        """Record one probe result. Never raises; errors come back in the outcome."""
        return await guarded(
            result.monitoring_check_id,
            lambda: self._ingest(result),
            self.timeout_seconds,
            "Check result ingestion",
        )

    async def _ingest(self, result: CheckResultIn) -> OperationOutcome:
        timestamp = to_naive_utc(result.timestamp)

        async with self.session_factory() as session:
            check_id = await session.scalar(
                select(MonitoringCheck.id).where(MonitoringCheck.id == result.monitoring_check_id)
            )
            if check_id is None:
                logger.warning(f"Check result for unknown monitoring check {result.monitoring_check_id}")
                return OperationOutcome.failure(
                    result.monitoring_check_id,
                    f"Monitoring check {result.monitoring_check_id} not found",
                    ERROR_INTEGRITY,
                )

            session.add(CheckResult(
                monitoring_check_id=check_id,
                is_successful=result.is_successful,
                response_time=result.response_time,
                status_code=result.status_code,
                error_message=result.error_message,
                created_at=timestamp,
            ))

            if result.is_successful:
                values = {
                    "current_status": CHECK_UP,
                    "consecutive_failures": 0,
                    "consecutive_successes": MonitoringCheck.consecutive_successes + 1,
                    "last_success_at": timestamp,
                    "last_failure_at": None,
                    "failure_message": None,
                }
            else:
                values = {
                    "current_status": CHECK_DOWN,
                    "consecutive_failures": MonitoringCheck.consecutive_failures + 1,
                    "consecutive_successes": 0,
                    # Start of the failure streak; later failures keep it
                    "last_failure_at": func.coalesce(MonitoringCheck.last_failure_at, timestamp),
                    "failure_message": result.error_message,
                }
            values["last_check_at"] = case(
                (MonitoringCheck.last_check_at > timestamp, MonitoringCheck.last_check_at),
                else_=timestamp,
            )
            values["updated_at"] = utcnow()

            await session.execute(
                update(MonitoringCheck)
                .where(MonitoringCheck.id == check_id)
                .values(**values)
            )
            await retry_on_lock(session.commit)

            check = (await session.execute(
                select(
                    MonitoringCheck.current_status,
                    MonitoringCheck.consecutive_failures,
                    MonitoringCheck.last_failure_at,
                ).where(MonitoringCheck.id == check_id)
            )).one()
            service_ids = list((await session.execute(
                select(ServiceMonitoringAssociation.service_id)
                .where(ServiceMonitoringAssociation.monitoring_check_id == check_id)
                .order_by(ServiceMonitoringAssociation.service_id)
            )).scalars().all())

        logger.debug(
            f"Check {check_id}: {'SUCCESS' if result.is_successful else 'FAILED'} "
            f"({result.response_time}ms), consecutive failures {check.consecutive_failures}"
        )
        return OperationOutcome.success(
            check_id,
            "recorded",
            current_status=check.current_status,
            consecutive_failures=check.consecutive_failures,
            last_failure_at=check.last_failure_at.isoformat() if check.last_failure_at else None,
            service_ids=service_ids,
        )
