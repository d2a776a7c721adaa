"""Shared router dependencies."""
import hmac
from typing import Optional

from fastapi import Header, HTTPException, Request

from ..pipeline import Pipeline
from ..services.results import ERROR_CONFLICT, ERROR_INTEGRITY, ERROR_TRANSIENT, OperationOutcome
from ..services.scheduler import SchedulerService

# Outcome error kind -> HTTP status
ERROR_STATUS_CODES = {
    ERROR_INTEGRITY: 404,
    ERROR_CONFLICT: 409,
    ERROR_TRANSIENT: 503,
}


def get_pipeline(request: Request) -> Pipeline:
    return request.app.state.pipeline


def get_scheduler(request: Request) -> SchedulerService:
    return request.app.state.scheduler


async def verify_cron_secret(request: Request, authorization: Optional[str] = Header(None)):
    """Require ``Authorization: Bearer <CRON_SECRET>`` when a cron secret is configured."""
    secret = request.app.state.config.cron_secret
    if not secret:
        return
    if not authorization or not hmac.compare_digest(authorization, f"Bearer {secret}"):
        raise HTTPException(status_code=401, detail="Unauthorized")


def raise_for_outcome(outcome: OperationOutcome):
    """Turn a failed outcome into the matching HTTPException."""
    if outcome.ok:
        return
    raise HTTPException(
        status_code=ERROR_STATUS_CODES.get(outcome.error_kind, 500),
        detail=outcome.error,
    )
