"""Pipeline - wires the core components together from settings.

The three public operations are ``process_check_result``,
``derive_service_statuses`` and ``advance_escalations``. Everything they need
(session factory, dispatcher, checker) is injected, so tests can build a
pipeline against a scratch database and a recording dispatcher.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from .config import Settings
from .models import Organization
from .services.checker import CheckerService
from .services.dispatcher import NotificationDispatcher, TwilioSender, WebhookSender
from .services.email_sender import EmailConfig, EmailSender
from .services.escalation import EscalationWalker
from .services.incidents import IncidentService
from .services.ingestor import CheckResultIn, CheckResultIngestor
from .services.publisher import StatusUpdatePublisher
from .services.results import BatchReport, OperationOutcome
from .services.status_engine import StatusDerivationEngine

logger = logging.getLogger(__name__)


@dataclass
class Pipeline:
    """Holds one instance of each component, sharing a session factory."""
    session_factory: async_sessionmaker
    checker: CheckerService
    ingestor: CheckResultIngestor
    status_engine: StatusDerivationEngine
    incidents: IncidentService
    walker: EscalationWalker

    async def process_check_result(self, result: CheckResultIn) -> OperationOutcome:
        return await self.ingestor.process_check_result(result)

    async def derive_service_statuses(self, organization_id: int, now: Optional[datetime] = None) -> BatchReport:
        return await self.status_engine.derive_service_statuses(organization_id, now=now)

    async def advance_escalations(self, now: Optional[datetime] = None) -> BatchReport:
        return await self.walker.advance_escalations(now=now)

    async def record_and_derive(self, result: CheckResultIn, now: Optional[datetime] = None):
        """Record a result, then re-derive the services that check feeds.

        Returns the ingestion outcome and the derivation report (``None`` when
        the result was not recorded).
        """
        outcome = await self.process_check_result(result)
        if not outcome.ok:
            return outcome, None
        report = await self.status_engine.derive_services(outcome.details.get("service_ids", []), now=now)
        return outcome, report

    async def derive_all_organizations(self, now: Optional[datetime] = None) -> BatchReport:
        """Re-derive every service of every organization into one report."""
        async with self.session_factory() as session:
            result = await session.execute(select(Organization.id).order_by(Organization.id))
            organization_ids: List[int] = list(result.scalars().all())

        combined = BatchReport(operation="derive_service_statuses")
        for organization_id in organization_ids:
            report = await self.derive_service_statuses(organization_id, now=now)
            combined.outcomes.extend(report.outcomes)
        return combined.finish()


def send_timeout(config: Settings) -> float:
    """Per-notification timeout. Sends finish inside the escalation step guard, so their logs are written."""
    return min(config.notification_timeout_seconds, config.operation_timeout_seconds / 2)


def build_dispatcher(config: Settings) -> NotificationDispatcher:
    """Create the notification dispatcher with every channel configured from settings."""
    timeout = send_timeout(config)
    email_sender = EmailSender(EmailConfig(
        host=config.smtp_host,
        port=config.smtp_port,
        username=config.smtp_username,
        password=config.smtp_password,
        use_tls=config.smtp_use_tls,
        from_address=config.alert_email_from,
        timeout_seconds=timeout,
    ))
    twilio_sender = TwilioSender(
        account_sid=config.twilio_account_sid,
        auth_token=config.twilio_auth_token,
        from_number=config.twilio_from_number,
        timeout_seconds=min(config.webhook_timeout_seconds, timeout),
    )
    webhook_sender = WebhookSender(timeout_seconds=min(config.webhook_timeout_seconds, timeout))
    return NotificationDispatcher(email_sender, twilio_sender, webhook_sender)


def build_pipeline(
    config: Settings,
    session_factory: async_sessionmaker,
    dispatcher: Optional[NotificationDispatcher] = None,
    checker: Optional[CheckerService] = None,
) -> Pipeline:
    """Build every component from settings. ``dispatcher`` and ``checker`` may be overridden."""
    timeout = config.operation_timeout_seconds
    dispatcher = dispatcher or build_dispatcher(config)

    return Pipeline(
        session_factory=session_factory,
        checker=checker or CheckerService(),
        ingestor=CheckResultIngestor(session_factory, timeout_seconds=timeout),
        status_engine=StatusDerivationEngine(
            session_factory,
            StatusUpdatePublisher(),
            timeout_seconds=timeout,
            max_concurrent=config.max_concurrent_tasks,
        ),
        incidents=IncidentService(session_factory, timeout_seconds=timeout),
        walker=EscalationWalker(
            session_factory,
            dispatcher,
            default_timeout_minutes=config.default_escalation_timeout_minutes,
            app_url=config.app_url,
            timeout_seconds=timeout,
            max_concurrent=config.max_concurrent_tasks,
            send_timeout_seconds=send_timeout(config),
        ),
    )
