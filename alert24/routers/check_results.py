"""Check result ingestion API for external probe agents."""
import logging

from fastapi import APIRouter, Depends

from ..pipeline import Pipeline
from ..schemas.check_result import CheckResultCreate, CheckResultRecorded
from ..services.ingestor import CheckResultIn
from .deps import get_pipeline, raise_for_outcome

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/check-results", tags=["check-results"])


@router.post("", response_model=CheckResultRecorded, status_code=201)
async def report_check_result(data: CheckResultCreate, pipeline: Pipeline = Depends(get_pipeline)):
    """Record a probe result and re-derive the services that check feeds."""
    outcome, report = await pipeline.record_and_derive(CheckResultIn(**data.model_dump()))
    raise_for_outcome(outcome)

    report.log()
    return CheckResultRecorded(
        monitoring_check_id=outcome.item_id,
        current_status=outcome.details["current_status"],
        consecutive_failures=outcome.details["consecutive_failures"],
        last_failure_at=outcome.details["last_failure_at"],
        service_ids=outcome.details["service_ids"],
        services_changed=report.count("changed"),
    )
