"""Cron endpoints for triggering pipeline runs from an external scheduler."""
import logging

from fastapi import APIRouter, Depends

from ..schemas.status import CronSummary
from ..services.scheduler import SchedulerService
from ..utils.db_utils import utcnow
from .deps import get_scheduler, verify_cron_secret

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/cron", tags=["cron"], dependencies=[Depends(verify_cron_secret)])


@router.api_route("/monitoring", methods=["GET", "POST"], response_model=CronSummary)
async def run_monitoring(scheduler: SchedulerService = Depends(get_scheduler)):
    """Probe due checks and re-derive every service status."""
    executed_at = utcnow()
    reports = await scheduler.run_monitoring()
    for report in reports:
        report.log()
    return CronSummary(
        success=not any(r.failures for r in reports),
        executed_at=executed_at,
        reports=[r.summary() for r in reports],
    )


@router.api_route("/escalations", methods=["GET", "POST"], response_model=CronSummary)
async def run_escalations(scheduler: SchedulerService = Depends(get_scheduler)):
    """Advance every unresolved incident's escalation."""
    executed_at = utcnow()
    report = await scheduler.run_escalations()
    report.log()
    return CronSummary(
        success=not report.failures,
        executed_at=executed_at,
        reports=[report.summary()],
    )
