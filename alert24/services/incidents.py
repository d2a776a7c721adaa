"""Incident service - incident creation and its forward-only lifecycle."""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import case, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..models import EscalationPolicy, Incident, IncidentEscalation, Organization
from ..models.incident import (
    ESCALATION_ESCALATING,
    ESCALATION_STOPPED,
    ESCALATION_UNESCALATED,
    INCIDENT_ACKNOWLEDGED,
    INCIDENT_NEW,
    INCIDENT_RESOLVED,
    STEP_ACKNOWLEDGED,
    STEP_CANCELLED,
    STEP_NOTIFIED,
    STEP_PENDING,
)
from ..utils.db_utils import retry_on_lock, utcnow
from .policy import PolicyError, parse_steps
from .results import ERROR_CONFLICT, ERROR_INTEGRITY, OperationOutcome, guarded

logger = logging.getLogger(__name__)


class IncidentService:
    """Creates incidents and moves them new -> acknowledged -> resolved.

    Acknowledging or resolving stops escalation immediately: the incident's
    status no longer matches what the walker's conditional updates expect,
    and outstanding escalation rows are closed in the same transaction.
    """

    def __init__(self, session_factory: async_sessionmaker, timeout_seconds: float = 30):
        self.session_factory = session_factory
        self.timeout_seconds = timeout_seconds

    async def create_incident(
        self,
        organization_id: int,
        title: str,
        severity: str = "medium",
        description: Optional[str] = None,
        escalation_policy_id: Optional[int] = None,
        created_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OperationOutcome:
        """Create an incident and seed step 0 of its escalation.

        Incidents without a usable policy are still created, flagged
        ``unescalated`` so operators can see nobody is being paged.
        """
        now = now or utcnow()
        return await guarded(
            None,
            lambda: self._create(organization_id, title, severity, description, escalation_policy_id, created_by, now),
            self.timeout_seconds,
            "Incident creation",
        )

    async def _create(self, organization_id, title, severity, description, escalation_policy_id, created_by, now):
        async with self.session_factory() as session:
            if await session.get(Organization, organization_id) is None:
                return OperationOutcome.failure(
                    None, f"Organization {organization_id} not found", ERROR_INTEGRITY
                )

            problem = None
            if escalation_policy_id is None:
                problem = "no escalation policy"
            else:
                policy = await session.get(EscalationPolicy, escalation_policy_id)
                if policy is None or policy.organization_id != organization_id:
                    return OperationOutcome.failure(
                        None, f"Escalation policy {escalation_policy_id} not found", ERROR_INTEGRITY
                    )
                if not policy.is_active:
                    problem = f"escalation policy {policy.id} is inactive"
                else:
                    try:
                        parse_steps(policy.escalation_steps)
                    except PolicyError as e:
                        problem = f"escalation policy {policy.id}: {e}"

            incident = Incident(
                organization_id=organization_id,
                title=title,
                description=description,
                severity=severity,
                status=INCIDENT_NEW,
                escalation_policy_id=escalation_policy_id,
                current_step_index=0,
                escalation_state=ESCALATION_UNESCALATED if problem else ESCALATION_ESCALATING,
                created_by=created_by,
                created_at=now,
            )
            session.add(incident)
            await session.flush()  # Get the incident.id

            if not problem:
                session.add(IncidentEscalation(
                    incident_id=incident.id,
                    step_index=0,
                    status=STEP_PENDING,
                    created_at=now,
                ))
            await retry_on_lock(session.commit)

        if problem:
            logger.warning(f"Incident {incident.id} created unescalated: {problem}")
            return OperationOutcome.success(incident.id, "created", escalation_state=ESCALATION_UNESCALATED,
                                            reason=problem)
        logger.info(f"Incident {incident.id} created with escalation policy {escalation_policy_id}")
        return OperationOutcome.success(incident.id, "created", escalation_state=ESCALATION_ESCALATING)

    async def acknowledge_incident(
        self,
        incident_id: int,
        acknowledged_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OperationOutcome:
        """Acknowledge a new incident, halting its escalation."""
        now = now or utcnow()
        return await guarded(
            incident_id,
            lambda: self._acknowledge(incident_id, acknowledged_by, now),
            self.timeout_seconds,
            "Incident acknowledgement",
        )

    async def _acknowledge(self, incident_id: int, acknowledged_by: Optional[str], now: datetime) -> OperationOutcome:
        async with self.session_factory() as session:
            incident = await session.get(Incident, incident_id)
            if incident is None:
                return OperationOutcome.failure(incident_id, f"Incident {incident_id} not found", ERROR_INTEGRITY)
            # Read before the update; a rollback expires the instance
            current = incident.status

            swapped = await session.execute(
                update(Incident)
                .where(Incident.id == incident_id, Incident.status == INCIDENT_NEW)
                .values(
                    status=INCIDENT_ACKNOWLEDGED,
                    acknowledged_at=now,
                    acknowledged_by=acknowledged_by,
                    escalation_state=_stop_escalating(),
                )
                .execution_options(synchronize_session=False)
            )
            if swapped.rowcount != 1:
                await session.rollback()
                return OperationOutcome.failure(
                    incident_id,
                    f"Incident {incident_id} is {current}, only new incidents can be acknowledged",
                    ERROR_CONFLICT,
                )

            # One statement, so a step claimed meanwhile is still acknowledged
            await session.execute(
                update(IncidentEscalation)
                .where(
                    IncidentEscalation.incident_id == incident_id,
                    IncidentEscalation.status.in_((STEP_PENDING, STEP_NOTIFIED)),
                )
                .values(
                    status=case(
                        (IncidentEscalation.status == STEP_NOTIFIED, STEP_ACKNOWLEDGED),
                        else_=STEP_CANCELLED,
                    ),
                    notes=case(
                        (IncidentEscalation.status == STEP_NOTIFIED, IncidentEscalation.notes),
                        else_="Incident acknowledged",
                    ),
                    completed_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await retry_on_lock(session.commit)

        logger.info(f"Incident {incident_id} acknowledged by {acknowledged_by or 'unknown'}")
        return OperationOutcome.success(incident_id, "acknowledged")

    async def resolve_incident(
        self,
        incident_id: int,
        resolved_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OperationOutcome:
        """Resolve a new or acknowledged incident. Resolved incidents stay resolved."""
        now = now or utcnow()
        return await guarded(
            incident_id,
            lambda: self._resolve(incident_id, resolved_by, now),
            self.timeout_seconds,
            "Incident resolution",
        )


    async def _resolve(self, incident_id: int, resolved_by: Optional[str], now: datetime) -> OperationOutcome:
        async with self.session_factory() as session:
            incident = await session.get(Incident, incident_id)
            if incident is None:
                return OperationOutcome.failure(incident_id, f"Incident {incident_id} not found", ERROR_INTEGRITY)
            current = incident.status

            swapped = await session.execute(
                update(Incident)
                .where(
                    Incident.id == incident_id,
                    Incident.status.in_((INCIDENT_NEW, INCIDENT_ACKNOWLEDGED)),
                )
                .values(status=INCIDENT_RESOLVED, resolved_at=now, escalation_state=_stop_escalating())
                .execution_options(synchronize_session=False)
            )
            if swapped.rowcount != 1:
                await session.rollback()
                return OperationOutcome.failure(
                    incident_id, f"Incident {incident_id} is already {current}", ERROR_CONFLICT
                )

            await session.execute(
                update(IncidentEscalation)
                .where(
                    IncidentEscalation.incident_id == incident_id,
                    IncidentEscalation.status.in_((STEP_PENDING, STEP_NOTIFIED)),
                )
                .values(status=STEP_CANCELLED, completed_at=now, notes="Incident resolved")
                .execution_options(synchronize_session=False)
            )
            await retry_on_lock(session.commit)

        logger.info(f"Incident {incident_id} resolved by {resolved_by or 'unknown'}")
        return OperationOutcome.success(incident_id, "resolved")


def _stop_escalating():
    """``escalation_state`` after the incident leaves ``new``: escalating becomes stopped."""
    return case(
        (Incident.escalation_state == ESCALATION_ESCALATING, ESCALATION_STOPPED),
        else_=Incident.escalation_state,
    )
