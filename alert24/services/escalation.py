"""Escalation walker - advances unresolved incidents through their escalation policy.

Each IncidentEscalation row moves ``pending -> notified -> timed_out`` (or is
acknowledged/cancelled by the incident service). Every transition is a
conditional UPDATE checked by rowcount, so overlapping scheduler runs cannot
notify a step twice or create a step out of order:

- a pending row is claimed only while the incident is still ``new`` and its
  ``current_step_index`` still points at the row;
- a timed-out row advances ``current_step_index`` from k to k+1 and inserts
  step k+1 in the same transaction.

Transactions that write both tables update the incident row first, the same
order the incident service uses.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import (
    Contact,
    EscalationPolicy,
    Incident,
    IncidentEscalation,
    NotificationLog,
    OnCallSchedule,
    OnCallScheduleMember,
)
from ..models.incident import (
    ACTIVE_STEP_STATES,
    ESCALATION_FAILED,
    INCIDENT_NEW,
    STEP_CANCELLED,
    STEP_NOTIFIED,
    STEP_PENDING,
    STEP_TIMED_OUT,
)
from ..utils.db_utils import retry_on_lock, utcnow
from .dispatch_result import DispatchResult
from .dispatcher import CHANNEL_EMAIL, CHANNEL_SMS, CHANNEL_VOICE, CHANNEL_WEBHOOK, NotificationDispatcher
from .policy import (
    TARGET_SCHEDULE,
    TARGET_TEAM,
    EscalationStep,
    PolicyError,
    StepTarget,
    parse_steps,
    step_timeout,
)
from .results import ERROR_INTEGRITY, BatchReport, OperationOutcome, guarded

logger = logging.getLogger(__name__)

URGENT_SEVERITIES = ("critical", "high")

IDLE = "idle"


@dataclass
class Transition:
    """One state change applied to an incident's escalation."""
    action: str  # notified, timed_out, escalation_failed, cancelled
    step_index: int
    error: Optional[str] = None
    unresolved: List[str] = field(default_factory=list)


def select_channels(step: EscalationStep, incident: Incident, contact: Contact) -> List[str]:
    """Channels to use for a contact: the step's list, or severity-based defaults."""
    if step.channels:
        return list(step.channels)
    channels = [CHANNEL_EMAIL]
    if incident.severity in URGENT_SEVERITIES and contact.phone:
        channels += [CHANNEL_SMS, CHANNEL_VOICE]
    if contact.webhook_url:
        channels.append(CHANNEL_WEBHOOK)
    return channels


def channel_address(channel: str, contact: Contact) -> Optional[str]:
    if channel == CHANNEL_EMAIL:
        return contact.email
    if channel in (CHANNEL_SMS, CHANNEL_VOICE):
        return contact.phone
    if channel == CHANNEL_WEBHOOK:
        return contact.webhook_url
    return None


def on_call_index(member_count: int, rotation_hours: Optional[int], rotation_start: Optional[datetime], now: datetime) -> int:
    """Rotation slot on call at ``now``: one hand-off every ``rotation_hours``."""
    if member_count <= 0:
        raise ValueError("Schedule has no members")
    if rotation_start is None or not rotation_hours or now < rotation_start:
        return 0
    shifts = int((now - rotation_start) / timedelta(hours=rotation_hours))
    return shifts % member_count


class EscalationWalker:
    """Walks every incident with an active escalation step."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        dispatcher: NotificationDispatcher,
        default_timeout_minutes: int = 15,
        app_url: str = "http://localhost:3000",
        timeout_seconds: float = 30,
        max_concurrent: int = 10,
        send_timeout_seconds: float = 10,
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.default_timeout_minutes = default_timeout_minutes
        self.app_url = app_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.max_concurrent = max_concurrent
        # Sends must finish well inside a step's timeout so their logs get written
        self.send_timeout_seconds = min(send_timeout_seconds, timeout_seconds / 2)

    async def advance_escalations(self, now: Optional[datetime] = None) -> BatchReport:
        """Advance every incident that has a pending or notified step."""
        report = BatchReport(operation="advance_escalations")
        now = now or utcnow()

        async with self.session_factory() as session:
            result = await session.execute(
                select(IncidentEscalation.incident_id)
                .where(IncidentEscalation.status.in_(ACTIVE_STEP_STATES))
                .distinct()
                .order_by(IncidentEscalation.incident_id)
            )
            incident_ids = list(result.scalars().all())

        if not incident_ids:
            return report.finish()

        logger.debug(f"Advancing escalations for {len(incident_ids)} incidents")
        semaphore = asyncio.Semaphore(self.max_concurrent)

        async def advance_with_limit(incident_id: int) -> OperationOutcome:
            async with semaphore:
                return await self.advance_incident(incident_id, now)

        for outcome in await asyncio.gather(*[advance_with_limit(i) for i in incident_ids]):
            report.add(outcome)
        return report.finish()

    async def advance_incident(self, incident_id: int, now: Optional[datetime] = None) -> OperationOutcome:
        """Apply every transition currently due for one incident.

        Each transition runs under its own timeout, so a slow step cannot
        undo the bookkeeping of a step that already committed.
        """
        now = now or utcnow()
        transitions: List[str] = []
        last_action = IDLE
        unresolved: List[str] = []

        # Each step can be notified and timed out at most once per run
        while True:
            outcome = await guarded(
                incident_id,
                lambda: self._step_outcome(incident_id, now),
                self.timeout_seconds,
                "Escalation",
            )
            if not outcome.ok:
                outcome.details["transitions"] = transitions + outcome.details.pop("transition", [])
                return outcome
            if outcome.action == IDLE:
                break
            transitions += outcome.details["transition"]
            last_action = outcome.action
            unresolved += outcome.details.get("unresolved_targets", [])
            if outcome.action in (ESCALATION_FAILED, STEP_CANCELLED):
                break

        details: Dict[str, list] = {"transitions": transitions}
        if unresolved:
            details["unresolved_targets"] = unresolved
        return OperationOutcome.success(incident_id, last_action, **details)

    async def _step_outcome(self, incident_id: int, now: datetime) -> OperationOutcome:
        transition = await self._step_once(incident_id, now)
        if transition is None:
            return OperationOutcome.success(incident_id, IDLE)
        details = {"transition": [f"{transition.action}:{transition.step_index}"]}
        if transition.error:
            return OperationOutcome.failure(incident_id, transition.error, ERROR_INTEGRITY, **details)
        if transition.unresolved:
            details["unresolved_targets"] = transition.unresolved
        return OperationOutcome.success(incident_id, transition.action, **details)

    async def _step_once(self, incident_id: int, now: datetime) -> Optional[Transition]:
        async with self.session_factory() as session:
            incident = await session.get(Incident, incident_id)
            if incident is None:
                return None

            row = (await session.execute(
                select(IncidentEscalation)
                .where(
                    IncidentEscalation.incident_id == incident_id,
                    IncidentEscalation.status.in_(ACTIVE_STEP_STATES),
                )
                .order_by(IncidentEscalation.step_index)
                .limit(1)
            )).scalar_one_or_none()
            if row is None:
                return None

            # Acknowledged or resolved incidents never advance; clear stale rows
            if incident.status != INCIDENT_NEW:
                return await self._cancel_stale(session, incident, row, now)

            try:
                policy, steps = await self._load_policy(session, incident, row)
            except PolicyError as e:
                return await self._fail_integrity(session, incident, row, str(e), now)

            if row.status == STEP_PENDING:
                return await self._notify(session, incident, row, policy, steps, now)
            return await self._maybe_time_out(session, incident, row, policy, steps, now)

    async def _load_policy(
        self,
        session: AsyncSession,
        incident: Incident,
        row: IncidentEscalation,
    ) -> Tuple[EscalationPolicy, List[EscalationStep]]:
        policy = None
        if incident.escalation_policy_id is not None:
            policy = await session.get(EscalationPolicy, incident.escalation_policy_id)
        if policy is None:
            raise PolicyError(f"Escalation policy {incident.escalation_policy_id} no longer exists")
        steps = parse_steps(policy.escalation_steps)
        if row.step_index >= len(steps):
            raise PolicyError(f"Escalation policy {policy.id} has no step {row.step_index}")
        return policy, steps

    # A rollback expires every loaded instance, so the methods below read what
    # they need into locals before their conditional updates.

    async def _cancel_stale(
        self,
        session: AsyncSession,
        incident: Incident,
        row: IncidentEscalation,
        now: datetime,
    ) -> Optional[Transition]:
        incident_id, incident_status, step_index = incident.id, incident.status, row.step_index
        result = await session.execute(
            update(IncidentEscalation)
            .where(IncidentEscalation.id == row.id, IncidentEscalation.status == row.status)
            .values(status=STEP_CANCELLED, completed_at=now, notes=f"Incident {incident_status} before escalation")
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await session.rollback()
            return None
        await retry_on_lock(session.commit)
        logger.info(f"Cancelled stale escalation step {step_index} for {incident_status} incident {incident_id}")
        return Transition(STEP_CANCELLED, step_index)

    async def _fail_integrity(
        self,
        session: AsyncSession,
        incident: Incident,
        row: IncidentEscalation,
        error: str,
        now: datetime,
    ) -> Optional[Transition]:
        incident_id, row_id, row_status, step_index = incident.id, row.id, row.status, row.step_index
        failed = await session.execute(
            update(Incident)
            .where(Incident.id == incident_id, Incident.status == INCIDENT_NEW)
            .values(escalation_state=ESCALATION_FAILED)
            .execution_options(synchronize_session=False)
        )
        if failed.rowcount != 1:
            # Acknowledged or resolved meanwhile; the next run cancels the row
            await session.rollback()
            return None
        result = await session.execute(
            update(IncidentEscalation)
            .where(IncidentEscalation.id == row_id, IncidentEscalation.status == row_status)
            .values(status=STEP_TIMED_OUT, completed_at=now, notes=error)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await session.rollback()
            return None
        await retry_on_lock(session.commit)
        logger.error(f"Escalation failed for incident {incident_id} at step {step_index}: {error}")
        return Transition(ESCALATION_FAILED, step_index, error=error)

    async def _notify(
        self,
        session: AsyncSession,
        incident: Incident,
        row: IncidentEscalation,
        policy: EscalationPolicy,
        steps: List[EscalationStep],
        now: datetime,
    ) -> Optional[Transition]:
        incident_id, row_id, step_index = incident.id, row.id, row.step_index
        step = steps[step_index]
        due_at = incident.created_at + timedelta(minutes=step.delay_minutes)
        if now < due_at:
            logger.debug(f"Incident {incident_id} step {step_index} not due until {due_at}")
            return None

        contacts, unresolved = await self._resolve_targets(session, incident, step, now)
        if not contacts:
            targets = ", ".join(str(t) for t in step.targets)
            return await self._fail_integrity(
                session, incident, row, f"No active contacts to notify for step {step_index} ({targets})", now
            )

        timeout_at = now + step_timeout(steps, step_index, self._last_step_timeout(policy))
        incident_still_at_step = (
            select(Incident.id)
            .where(
                Incident.id == incident_id,
                Incident.status == INCIDENT_NEW,
                Incident.current_step_index == step_index,
            )
            .exists()
        )
        values = {"status": STEP_NOTIFIED, "notified_at": now, "timeout_at": timeout_at}
        if unresolved:
            values["notes"] = f"Unresolved targets: {', '.join(unresolved)}"
        claimed = await session.execute(
            update(IncidentEscalation)
            .where(
                IncidentEscalation.id == row_id,
                IncidentEscalation.status == STEP_PENDING,
                incident_still_at_step,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            await session.rollback()
            logger.debug(f"Incident {incident_id} step {step_index} already claimed or no longer current")
            return None
        await retry_on_lock(session.commit)

        if unresolved:
            logger.error(
                f"Incident {incident_id} step {step_index}: could not resolve {', '.join(unresolved)}"
            )

        # The claim is committed before sending: a crash here loses a notification
        # rather than sending it twice.
        logs = await self._dispatch_step(incident, row, step, contacts)
        session.add_all(logs)
        await retry_on_lock(session.commit)

        sent = sum(1 for log in logs if log.success)
        if not sent:
            logger.warning(f"All {len(logs)} notifications failed for incident {incident_id} step {step_index}")
        logger.info(
            f"Incident {incident_id}: notified step {step_index} "
            f"({sent}/{len(logs)} notifications sent), times out at {timeout_at}"
        )
        return Transition(STEP_NOTIFIED, step_index, unresolved=unresolved)

    async def _maybe_time_out(
        self,
        session: AsyncSession,
        incident: Incident,
        row: IncidentEscalation,
        policy: EscalationPolicy,
        steps: List[EscalationStep],
        now: datetime,
    ) -> Optional[Transition]:
        incident_id, incident_title, row_id, step_index = incident.id, incident.title, row.id, row.step_index
        timeout_at = row.timeout_at
        if timeout_at is None:
            timeout_at = (row.notified_at or now) + step_timeout(
                steps, step_index, self._last_step_timeout(policy)
            )
        if now < timeout_at:
            return None

        next_index = step_index + 1
        is_last = next_index >= len(steps)
        incident_values = {"escalation_state": ESCALATION_FAILED} if is_last else {"current_step_index": next_index}
        advanced = await session.execute(
            update(Incident)
            .where(
                Incident.id == incident_id,
                Incident.status == INCIDENT_NEW,
                Incident.current_step_index == step_index,
            )
            .values(**incident_values)
            .execution_options(synchronize_session=False)
        )
        if advanced.rowcount != 1:
            # Acknowledged, resolved or advanced by a concurrent run
            await session.rollback()
            return None

        timed_out = await session.execute(
            update(IncidentEscalation)
            .where(IncidentEscalation.id == row_id, IncidentEscalation.status == STEP_NOTIFIED)
            .values(status=STEP_TIMED_OUT, completed_at=now)
            .execution_options(synchronize_session=False)
        )
        if timed_out.rowcount != 1:
            await session.rollback()
            return None

        if is_last:
            await retry_on_lock(session.commit)
            logger.error(
                f"Escalation exhausted for incident {incident_id} ('{incident_title}'): "
                f"all {len(steps)} steps of policy {policy.id} timed out without acknowledgement"
            )
            return Transition(ESCALATION_FAILED, step_index)

        session.add(IncidentEscalation(
            incident_id=incident_id,
            step_index=next_index,
            status=STEP_PENDING,
            created_at=now,
        ))
        try:
            await retry_on_lock(session.commit)
        except IntegrityError:
            await session.rollback()
            logger.debug(f"Incident {incident_id} step {next_index} already created")
            return None

        logger.info(f"Incident {incident_id}: step {step_index} timed out, escalating to step {next_index}")
        return Transition(STEP_TIMED_OUT, step_index)

    def _last_step_timeout(self, policy: EscalationPolicy) -> int:
        if policy.escalation_timeout_minutes:
            return policy.escalation_timeout_minutes
        return self.default_timeout_minutes

    async def _dispatch_step(
        self,
        incident: Incident,
        row: IncidentEscalation,
        step: EscalationStep,
        contacts: List[Contact],
    ) -> List[NotificationLog]:
        subject = self._build_subject(incident, row.step_index)
        body = self._build_body(incident, row.step_index)
        sends: List[Tuple[str, str]] = []
        tasks = []
        for contact in contacts:
            for channel in select_channels(step, incident, contact):
                address = channel_address(channel, contact)
                sends.append((channel, address or contact.name))
                if not address:
                    tasks.append(_missing_address(channel, contact))
                    continue
                tasks.append(self._send(
                    channel,
                    address,
                    subject,
                    body,
                    idempotency_key=f"incident-{incident.id}-step-{row.step_index}-{channel}-{contact.id}",
                ))

        results: List[DispatchResult] = await asyncio.gather(*tasks)
        return [
            NotificationLog(
                incident_id=incident.id,
                incident_escalation_id=row.id,
                channel=channel,
                recipient=recipient,
                subject=subject,
                success=1 if result.success else 0,
                provider_message_id=result.provider_message_id,
                error=result.error,
            )
            for (channel, recipient), result in zip(sends, results)
        ]

    async def _send(self, channel: str, address: str, subject: str, body: str, idempotency_key: str) -> DispatchResult:
        try:
            return await asyncio.wait_for(
                self.dispatcher.send(channel, address, subject, body, idempotency_key=idempotency_key),
                timeout=self.send_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"{channel} notification to {address} timed out after {self.send_timeout_seconds}s")
            return DispatchResult(success=False, error=f"Timed out after {self.send_timeout_seconds}s")

    async def _resolve_targets(
        self,
        session: AsyncSession,
        incident: Incident,
        step: EscalationStep,
        now: datetime,
    ) -> Tuple[List[Contact], List[str]]:
        """Active contacts for every target of a step, plus the targets that resolved to nobody."""
        contacts: Dict[int, Contact] = {}
        unresolved: List[str] = []
        for target in step.targets:
            found = await self._resolve_target(session, incident.organization_id, target, now)
            if not found:
                unresolved.append(str(target))
            for contact in found:
                contacts.setdefault(contact.id, contact)
        return list(contacts.values()), unresolved

    async def _resolve_target(
        self,
        session: AsyncSession,
        organization_id: int,
        target: StepTarget,
        now: datetime,
    ) -> List[Contact]:
        active = select(Contact).where(
            Contact.organization_id == organization_id,
            Contact.is_active == 1,
        )
        if target.type == TARGET_TEAM:
            result = await session.execute(active.where(Contact.team_id == target.id).order_by(Contact.id))
            return list(result.scalars().all())
        if target.type == TARGET_SCHEDULE:
            return await self._on_call(session, organization_id, target.id, now)
        result = await session.execute(active.where(Contact.id == target.id))
        return list(result.scalars().all())

    async def _on_call(
        self,
        session: AsyncSession,
        organization_id: int,
        schedule_id: int,
        now: datetime,
    ) -> List[Contact]:
        """The contact on call for a schedule, skipping inactive members."""
        schedule = await session.get(OnCallSchedule, schedule_id)
        if schedule is None or schedule.organization_id != organization_id or not schedule.is_active:
            return []

        result = await session.execute(
            select(Contact)
            .join(OnCallScheduleMember, OnCallScheduleMember.contact_id == Contact.id)
            .where(OnCallScheduleMember.schedule_id == schedule_id)
            .order_by(OnCallScheduleMember.position, OnCallScheduleMember.id)
        )
        members = list(result.scalars().all())
        if not members:
            return []

        start = on_call_index(len(members), schedule.rotation_hours, schedule.rotation_start, now)
        for offset in range(len(members)):
            contact = members[(start + offset) % len(members)]
            if contact.is_active:
                return [contact]
        return []

    def _build_subject(self, incident: Incident, step_index: int) -> str:
        severity = (incident.severity or "").upper()
        if step_index == 0:
            return f"[{severity}] Incident: {incident.title}"
        return f"ESCALATED: {incident.title} - Level {step_index + 1}"

    def _build_body(self, incident: Incident, step_index: int) -> str:
        lines = []
        if step_index > 0:
            lines += [
                "ESCALATED INCIDENT",
                "",
                f"This incident has been escalated to level {step_index + 1} due to no acknowledgment.",
                "",
            ]
        lines += [
            f"Incident: {incident.title}",
            f"Severity: {(incident.severity or '').upper()}",
            f"Description: {incident.description or 'No description provided'}",
            "",
            f"Please acknowledge: {self.app_url}/incidents/{incident.id}",
        ]
        return "\n".join(lines)


async def _missing_address(channel: str, contact: Contact) -> DispatchResult:
    return DispatchResult(success=False, error=f"No {channel} address for {contact.name}")
