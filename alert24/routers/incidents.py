"""Incident API endpoints - create, acknowledge, resolve, inspect escalation."""
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..models import Incident, IncidentEscalation, NotificationLog
from ..models.incident import ESCALATION_ESCALATING
from ..pipeline import Pipeline
from ..schemas.incident import (
    IncidentAction,
    IncidentCreate,
    IncidentEscalationResponse,
    IncidentEscalations,
    IncidentResponse,
    NotificationLogResponse,
)
from .deps import get_pipeline, raise_for_outcome

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/incidents", tags=["incidents"])


async def _load_incident(db: AsyncSession, incident_id: int) -> Incident:
    incident = await db.get(Incident, incident_id)
    if not incident:
        raise HTTPException(status_code=404, detail="Incident not found")
    return incident


@router.post("", response_model=IncidentResponse, status_code=201)
async def create_incident(
    data: IncidentCreate,
    pipeline: Pipeline = Depends(get_pipeline),
    db: AsyncSession = Depends(get_db),
):
    """Create an incident and notify its first escalation step if due now."""
    outcome = await pipeline.incidents.create_incident(**data.model_dump())
    raise_for_outcome(outcome)

    if outcome.details.get("escalation_state") == ESCALATION_ESCALATING:
        # Step 0 usually has no delay; don't wait for the next tick
        step = await pipeline.walker.advance_incident(outcome.item_id)
        if not step.ok:
            logger.warning(f"Initial escalation for incident {outcome.item_id} failed: {step.error}")

    return await _load_incident(db, outcome.item_id)


@router.get("/{incident_id}", response_model=IncidentResponse)
async def get_incident(incident_id: int, db: AsyncSession = Depends(get_db)):
    return await _load_incident(db, incident_id)


@router.post("/{incident_id}/acknowledge", response_model=IncidentResponse)
async def acknowledge_incident(
    incident_id: int,
    data: IncidentAction,
    pipeline: Pipeline = Depends(get_pipeline),
    db: AsyncSession = Depends(get_db),
):
    """Acknowledge an incident, stopping further escalation."""
    raise_for_outcome(await pipeline.incidents.acknowledge_incident(incident_id, data.user))
    return await _load_incident(db, incident_id)


@router.post("/{incident_id}/resolve", response_model=IncidentResponse)
async def resolve_incident(
    incident_id: int,
    data: IncidentAction,
    pipeline: Pipeline = Depends(get_pipeline),
    db: AsyncSession = Depends(get_db),
):
    """Resolve an incident."""
    raise_for_outcome(await pipeline.incidents.resolve_incident(incident_id, data.user))
    return await _load_incident(db, incident_id)


@router.get("/{incident_id}/escalations", response_model=IncidentEscalations)
async def get_incident_escalations(incident_id: int, db: AsyncSession = Depends(get_db)):
    """Get the escalation steps and notification attempts for an incident."""
    incident = await _load_incident(db, incident_id)

    escalations = await db.execute(
        select(IncidentEscalation)
        .where(IncidentEscalation.incident_id == incident_id)
        .order_by(IncidentEscalation.step_index)
    )
    notifications = await db.execute(
        select(NotificationLog)
        .where(NotificationLog.incident_id == incident_id)
        .order_by(NotificationLog.id)
    )
    return IncidentEscalations(
        incident=IncidentResponse.model_validate(incident),
        escalations=[IncidentEscalationResponse.model_validate(e) for e in escalations.scalars().all()],
        notifications=[NotificationLogResponse.model_validate(n) for n in notifications.scalars().all()],
    )
