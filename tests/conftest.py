from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

import pytest
from sqlalchemy import select

from alert24.database import create_engine, create_session_factory, init_db
from alert24.models import (
    Contact,
    EscalationPolicy,
    MonitoringCheck,
    OnCallSchedule,
    OnCallScheduleMember,
    Organization,
    Service,
    ServiceMonitoringAssociation,
    StatusPage,
)
from alert24.services.dispatch_result import DispatchResult
from alert24.services.escalation import EscalationWalker
from alert24.services.incidents import IncidentService
from alert24.services.ingestor import CheckResultIn, CheckResultIngestor
from alert24.services.publisher import StatusUpdatePublisher
from alert24.services.status_engine import StatusDerivationEngine

T0 = datetime(2026, 1, 5, 12, 0, 0)


def at(minutes: float) -> datetime:
    """Naive UTC timestamp ``minutes`` after T0."""
    return T0 + timedelta(minutes=minutes)


@dataclass
class SentNotification:
    channel: str
    target: str
    subject: str
    body: str
    idempotency_key: Optional[str]


class FakeDispatcher:
    """Records every send instead of contacting a provider."""

    def __init__(self) -> None:
        self.sent: List[SentNotification] = []
        self.failing_channels: set[str] = set()

    async def send(self, channel, target, subject, body, idempotency_key=None) -> DispatchResult:
        self.sent.append(SentNotification(channel, target, subject, body, idempotency_key))
        if channel in self.failing_channels:
            return DispatchResult(success=False, error=f"{channel} unavailable")
        return DispatchResult(success=True, provider_message_id=f"fake-{len(self.sent)}")


class Seeder:
    """Inserts fixture rows and returns their ids."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    async def _add(self, obj):
        async with self.session_factory() as session:
            session.add(obj)
            await session.commit()
            return obj.id

    async def organization(self, name: str = "Acme") -> int:
        return await self._add(Organization(name=name))

    async def status_page(self, organization_id: int, name: str = "Public") -> int:
        return await self._add(StatusPage(organization_id=organization_id, name=name))

    async def check(self, organization_id: int, name: str = "API", **kwargs) -> int:
        kwargs.setdefault("type", "http")
        kwargs.setdefault("target", "https://api.example.com/health")
        kwargs.setdefault("interval", 60)
        return await self._add(MonitoringCheck(organization_id=organization_id, name=name, **kwargs))

    async def service(self, status_page_id: int, name: str = "API", **kwargs) -> int:
        kwargs.setdefault("created_at", T0 - timedelta(days=1))
        return await self._add(Service(status_page_id=status_page_id, name=name, **kwargs))

    async def associate(
        self,
        service_id: int,
        check_id: int,
        threshold: int = 0,
        failure_status: str = "degraded",
        failure_message: Optional[str] = None,
    ) -> int:
        return await self._add(ServiceMonitoringAssociation(
            service_id=service_id,
            monitoring_check_id=check_id,
            failure_threshold_minutes=threshold,
            failure_status=failure_status,
            failure_message=failure_message,
        ))

    async def contact(self, organization_id: int, name: str = "Alice", **kwargs) -> int:
        kwargs.setdefault("email", f"{name.lower()}@example.com")
        return await self._add(Contact(organization_id=organization_id, name=name, **kwargs))

    async def policy(self, organization_id: int, steps: list, **kwargs) -> int:
        return await self._add(EscalationPolicy(
            organization_id=organization_id,
            name=kwargs.pop("name", "Default"),
            escalation_steps=steps,
            **kwargs,
        ))

    async def schedule(self, organization_id: int, contact_ids: list, name: str = "Primary", **kwargs) -> int:
        schedule_id = await self._add(OnCallSchedule(organization_id=organization_id, name=name, **kwargs))
        for position, contact_id in enumerate(contact_ids):
            await self._add(OnCallScheduleMember(schedule_id=schedule_id, contact_id=contact_id, position=position))
        return schedule_id

    async def get(self, model, id_):
        async with self.session_factory() as session:
            return await session.get(model, id_)

    async def all(self, model, *where, order_by=None):
        async with self.session_factory() as session:
            query = select(model).where(*where).order_by(order_by if order_by is not None else model.id)
            return list((await session.execute(query)).scalars().all())


@pytest.fixture
async def engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'alert24.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def seed(session_factory) -> Seeder:
    return Seeder(session_factory)


@pytest.fixture
def dispatcher() -> FakeDispatcher:
    return FakeDispatcher()


@pytest.fixture
def ingestor(session_factory) -> CheckResultIngestor:
    return CheckResultIngestor(session_factory, timeout_seconds=10)


@pytest.fixture
def status_engine(session_factory) -> StatusDerivationEngine:
    return StatusDerivationEngine(session_factory, StatusUpdatePublisher(), timeout_seconds=10)


@pytest.fixture
def incidents(session_factory) -> IncidentService:
    return IncidentService(session_factory, timeout_seconds=10)


@pytest.fixture
def walker(session_factory, dispatcher) -> EscalationWalker:
    return EscalationWalker(
        session_factory,
        dispatcher,
        default_timeout_minutes=15,
        app_url="https://alert24.test",
        timeout_seconds=10,
    )


def failure(check_id: int, minutes: float, error: str = "connection refused") -> CheckResultIn:
    return CheckResultIn(
        monitoring_check_id=check_id,
        is_successful=False,
        response_time=None,
        timestamp=at(minutes),
        error_message=error,
    )


def success(check_id: int, minutes: float, response_time: int = 120) -> CheckResultIn:
    return CheckResultIn(
        monitoring_check_id=check_id,
        is_successful=True,
        response_time=response_time,
        timestamp=at(minutes),
        status_code=200,
    )
