"""Scheduler service - runs the monitoring and escalation pipeline on a timer.

Every tick:
- probes the monitoring checks that are due and records their results
- re-derives service statuses for every organization
- advances escalations for unresolved incidents

Each run is stateless and rederives from the database, so a missed or
overlapping tick only delays work; conditional updates keep the effects
at-most-once. An hourly job deletes check results past the retention window.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import delete, select

from ..models import CheckResult, MonitoringCheck
from ..utils.db_utils import retry_on_lock, utcnow
from .ingestor import CheckResultIn
from .results import BatchReport, OperationOutcome, guarded

logger = logging.getLogger(__name__)


class SchedulerService:
    """Schedules the pipeline's periodic jobs."""

    def __init__(
        self,
        pipeline,
        tick_seconds: int = 60,
        max_concurrent: int = 10,
        retention_days: int = 365,
    ):
        self.pipeline = pipeline
        self.tick_seconds = tick_seconds
        self.max_concurrent = max_concurrent
        self.retention_days = retention_days
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    def start(self):
        """Start the scheduler."""
        if self._running:
            return

        self.scheduler = AsyncIOScheduler()

        self.scheduler.add_job(
            self._tick,
            trigger=IntervalTrigger(seconds=self.tick_seconds),
            id="pipeline_tick",
            replace_existing=True,
            max_instances=1,
            misfire_grace_time=self.tick_seconds,
        )

        # Add job to cleanup old check results
        self.scheduler.add_job(
            self.cleanup_old_results,
            trigger=IntervalTrigger(hours=1),
            id="cleanup_old_results",
            replace_existing=True,
            max_instances=1,
        )

        self.scheduler.start()
        self._running = True
        logger.info(f"Scheduler started (tick={self.tick_seconds}s, max_concurrent={self.max_concurrent})")

    def stop(self):
        """Stop the scheduler."""
        if self.scheduler and self._running:
            self.scheduler.shutdown(wait=False)
            self._running = False
            logger.info("Scheduler stopped")

    async def _tick(self):
        try:
            for report in await self.run_monitoring():
                report.log()
            (await self.run_escalations()).log()
        except Exception as e:
            # Keep the job alive for the next tick
            logger.exception(f"Error running scheduler tick: {e}")

    def is_check_due(self, interval: int, last_check_at: Optional[datetime], now: datetime) -> bool:
        """Whether a check's interval has elapsed since its last result.

        Half a tick of slack keeps a check from slipping a whole tick late.
        """
        if last_check_at is None:
            return True
        elapsed = (now - last_check_at).total_seconds()
        return elapsed >= (interval or 0) - self.tick_seconds / 2

    async def run_monitoring(self, now: Optional[datetime] = None) -> List[BatchReport]:
        """Probe due checks, then re-derive service statuses for every organization."""
        probes = await self.run_due_checks(now=now)
        derivation = await self.pipeline.derive_all_organizations(now=now)
        return [probes, derivation]

    async def run_escalations(self, now: Optional[datetime] = None) -> BatchReport:
        return await self.pipeline.advance_escalations(now=now)

    async def run_due_checks(self, now: Optional[datetime] = None) -> BatchReport:
        """Probe every active check whose interval has elapsed and record the results."""
        report = BatchReport(operation="run_checks")
        at = now
        now = now or utcnow()

        async with self.pipeline.session_factory() as session:
            result = await session.execute(
                select(
                    MonitoringCheck.id,
                    MonitoringCheck.interval,
                    MonitoringCheck.last_check_at,
                )
                .where(MonitoringCheck.is_active == 1)
                .order_by(MonitoringCheck.id)
            )
            checks = result.all()

        due = [check_id for check_id, interval, last in checks if self.is_check_due(interval, last, now)]
        if not due:
            return report.finish()

        logger.debug(f"Checking {len(due)} due checks out of {len(checks)} total")

        semaphore = asyncio.Semaphore(self.max_concurrent)

        async def check_with_limit(check_id: int) -> OperationOutcome:
            async with semaphore:
                return await self._check_single(check_id, at)

        for outcome in await asyncio.gather(*[check_with_limit(cid) for cid in due]):
            report.add(outcome)
        return report.finish()

    async def _check_single(self, check_id: int, at: Optional[datetime] = None) -> OperationOutcome:
        """Probe one check and hand the result to the ingestor."""
        async with self.pipeline.session_factory() as session:
            check = await session.get(MonitoringCheck, check_id)
            if check is None or not check.is_active:
                return OperationOutcome.success(check_id, "skipped")
            check_type, target = check.type, check.target
            timeout, expected = check.timeout_seconds, check.expected_status_code

        # Probes carry their own timeout; the guard adds slack for the write
        return await guarded(
            check_id,
            lambda: self._probe(check_id, check_type, target, timeout, expected, at),
            (timeout or 30) + 15,
            "Probe",
        )

    async def _probe(self, check_id, check_type, target, timeout, expected, at=None) -> OperationOutcome:
        probe = await self.pipeline.checker.check(
            check_type,
            target,
            timeout_seconds=timeout,
            expected_status_code=expected,
        )
        logger.debug(f"Check {check_id} ({check_type} {target}): {'up' if probe.is_successful else 'down'}")
        return await self.pipeline.process_check_result(CheckResultIn(
            monitoring_check_id=check_id,
            is_successful=probe.is_successful,
            response_time=probe.response_time_ms,
            timestamp=at or utcnow(),
            status_code=probe.status_code,
            error_message=probe.error_message,
        ))

    async def cleanup_old_results(self) -> int:
        """Delete check results older than the retention window."""
        cutoff = utcnow() - timedelta(days=self.retention_days)
        try:
            async with self.pipeline.session_factory() as session:
                result = await session.execute(
                    delete(CheckResult).where(CheckResult.created_at < cutoff)
                )
                await retry_on_lock(session.commit)
        except Exception as e:
            logger.error(f"Error cleaning up check results: {e}")
            return 0

        logger.info(f"Cleaned up {result.rowcount} old check results")
        return result.rowcount
