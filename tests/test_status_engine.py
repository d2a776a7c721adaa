from __future__ import annotations

import asyncio

import pytest

from alert24.models import (
    MonitoringCheck,
    Service,
    ServiceMonitoringAssociation,
    ServiceStatusHistory,
    StatusUpdate,
)
from alert24.services.status_engine import derive_status
from tests.conftest import at, failure, success


async def _statuses(seed, service_id):
    history = await seed.all(
        ServiceStatusHistory,
        ServiceStatusHistory.service_id == service_id,
        order_by=ServiceStatusHistory.started_at,
    )
    return history


def test_most_severe_wins_and_ties_go_to_lowest_association_id() -> None:
    down_check = MonitoringCheck(id=1, name="db", current_status="down", last_failure_at=at(0))
    other_check = MonitoringCheck(id=2, name="cache", current_status="down", last_failure_at=at(0))
    pairs = [
        (ServiceMonitoringAssociation(id=9, failure_status="degraded", failure_threshold_minutes=0), other_check),
        (ServiceMonitoringAssociation(id=4, failure_status="degraded", failure_threshold_minutes=0), down_check),
    ]
    derived = derive_status(pairs, at(1))
    assert derived.status == "degraded"
    assert derived.association.id == 4

    pairs.append(
        (ServiceMonitoringAssociation(id=12, failure_status="down", failure_threshold_minutes=0), other_check)
    )
    assert derive_status(pairs, at(1)).status == "down"


def test_maintenance_is_least_severe() -> None:
    check = MonitoringCheck(id=1, name="db", current_status="down", last_failure_at=at(0))
    pairs = [
        (ServiceMonitoringAssociation(id=1, failure_status="maintenance", failure_threshold_minutes=0), check),
        (ServiceMonitoringAssociation(id=2, failure_status="degraded", failure_threshold_minutes=0), check),
    ]
    assert derive_status(pairs, at(1)).status == "degraded"


def test_nothing_failing_is_operational() -> None:
    up = MonitoringCheck(id=1, name="db", current_status="up", last_failure_at=None)
    young = MonitoringCheck(id=2, name="web", current_status="down", last_failure_at=at(0))
    pairs = [
        (ServiceMonitoringAssociation(id=1, failure_status="down", failure_threshold_minutes=0), up),
        (ServiceMonitoringAssociation(id=2, failure_status="down", failure_threshold_minutes=5), young),
    ]
    derived = derive_status(pairs, at(4))
    assert derived.status == "operational"
    assert derived.association is None


@pytest.mark.asyncio
async def test_threshold_crossed_after_repeated_failures(seed, ingestor, status_engine) -> None:
    org = await seed.organization()
    page = await seed.status_page(org)
    check_id = await seed.check(org)
    service_id = await seed.service(page)
    await seed.associate(service_id, check_id, threshold=5, failure_status="degraded")

    for minute in (0, 3):
        await ingestor.process_check_result(failure(check_id, minute))
        report = await status_engine.derive_services([service_id], now=at(minute))
        assert report.count("unchanged") == 1

    await ingestor.process_check_result(failure(check_id, 6))
    report = await status_engine.derive_services([service_id], now=at(6))
    assert report.count("changed") == 1

    service = await seed.get(Service, service_id)
    assert service.status == "degraded"
    updates = await seed.all(StatusUpdate, StatusUpdate.service_id == service_id)
    assert len(updates) == 1
    assert updates[0].status == "degraded"
    assert updates[0].title == "API Status Update"
    assert "connection refused" in updates[0].message

    history = await _statuses(seed, service_id)
    assert [(h.status, h.ended_at) for h in history] == [("operational", at(6)), ("degraded", None)]
    assert history[1].started_at == at(6)
    assert history[1].status_update_id == updates[0].id


@pytest.mark.asyncio
async def test_rederiving_unchanged_state_writes_nothing(seed, ingestor, status_engine) -> None:
    org = await seed.organization()
    page = await seed.status_page(org)
    check_id = await seed.check(org)
    service_id = await seed.service(page)
    await seed.associate(service_id, check_id, failure_status="down")

    await ingestor.process_check_result(failure(check_id, 0))
    await status_engine.derive_service_statuses(org, now=at(1))
    report = await status_engine.derive_service_statuses(org, now=at(2))

    assert report.count("unchanged") == 1
    assert len(await seed.all(StatusUpdate)) == 1
    assert len(await seed.all(ServiceStatusHistory)) == 2


@pytest.mark.asyncio
async def test_escalating_and_recovering_keeps_history_contiguous(seed, ingestor, status_engine) -> None:
    org = await seed.organization()
    page = await seed.status_page(org)
    fast = await seed.check(org, "fast")
    slow = await seed.check(org, "slow")
    service_id = await seed.service(page)
    await seed.associate(service_id, fast, threshold=0, failure_status="degraded")
    await seed.associate(service_id, slow, threshold=10, failure_status="down")

    await ingestor.process_check_result(failure(fast, 0))
    await ingestor.process_check_result(failure(slow, 0))
    await status_engine.derive_services([service_id], now=at(1))
    assert (await seed.get(Service, service_id)).status == "degraded"

    await status_engine.derive_services([service_id], now=at(10))
    assert (await seed.get(Service, service_id)).status == "down"

    await ingestor.process_check_result(success(fast, 11))
    await ingestor.process_check_result(success(slow, 11))
    await status_engine.derive_services([service_id], now=at(11))
    assert (await seed.get(Service, service_id)).status == "operational"

    history = await _statuses(seed, service_id)
    assert [h.status for h in history] == ["operational", "degraded", "down", "operational"]
    assert [h.ended_at for h in history if h.ended_at is None] == [None]
    for earlier, later in zip(history, history[1:]):
        assert earlier.ended_at == later.started_at

    updates = await seed.all(StatusUpdate, order_by=StatusUpdate.id)
    assert [u.status for u in updates] == ["degraded", "down", "operational"]
    assert updates[-1].message == "API has recovered and is operational"


@pytest.mark.asyncio
async def test_custom_failure_message_from_lowest_association(seed, ingestor, status_engine) -> None:
    org = await seed.organization()
    page = await seed.status_page(org)
    first = await seed.check(org, "first")
    second = await seed.check(org, "second")
    service_id = await seed.service(page)
    await seed.associate(service_id, first, failure_status="degraded", failure_message="Payments are slow")
    await seed.associate(service_id, second, failure_status="degraded", failure_message="Search is slow")

    await ingestor.process_check_result(failure(second, 0))
    await ingestor.process_check_result(failure(first, 0))
    report = await status_engine.derive_services([service_id], now=at(1))

    assert report.outcomes[0].details["monitoring_check_id"] == first
    updates = await seed.all(StatusUpdate)
    assert updates[0].message == "Payments are slow"


@pytest.mark.asyncio
async def test_locked_services_are_left_alone(seed, ingestor, status_engine) -> None:
    org = await seed.organization()
    page = await seed.status_page(org)
    check_id = await seed.check(org)
    service_id = await seed.service(page, status="maintenance", status_locked=1)
    await seed.associate(service_id, check_id, failure_status="down")

    await ingestor.process_check_result(failure(check_id, 0))
    report = await status_engine.derive_service_statuses(org, now=at(5))

    assert report.count("locked") == 1
    assert (await seed.get(Service, service_id)).status == "maintenance"
    assert await seed.all(StatusUpdate) == []


@pytest.mark.asyncio
async def test_concurrent_derivations_publish_once(seed, ingestor, status_engine) -> None:
    org = await seed.organization()
    page = await seed.status_page(org)
    check_id = await seed.check(org)
    service_id = await seed.service(page)
    await seed.associate(service_id, check_id, failure_status="down")
    await ingestor.process_check_result(failure(check_id, 0))

    reports = await asyncio.gather(
        status_engine.derive_services([service_id], now=at(1)),
        status_engine.derive_services([service_id], now=at(1)),
    )

    assert sum(r.count("changed") for r in reports) == 1
    assert len(await seed.all(StatusUpdate)) == 1
    open_intervals = await seed.all(
        ServiceStatusHistory,
        ServiceStatusHistory.service_id == service_id,
        ServiceStatusHistory.ended_at.is_(None),
    )
    assert len(open_intervals) == 1


@pytest.mark.asyncio
async def test_only_the_organizations_services_are_derived(seed, ingestor, status_engine) -> None:
    org = await seed.organization("Acme")
    other = await seed.organization("Globex")
    page = await seed.status_page(org)
    other_page = await seed.status_page(other)
    check_id = await seed.check(org)
    mine = await seed.service(page)
    theirs = await seed.service(other_page)
    await seed.associate(mine, check_id, failure_status="down")
    await seed.associate(theirs, check_id, failure_status="down")
    await ingestor.process_check_result(failure(check_id, 0))

    report = await status_engine.derive_service_statuses(org, now=at(1))

    assert [o.item_id for o in report.outcomes] == [mine]
    assert (await seed.get(Service, theirs)).status == "operational"
