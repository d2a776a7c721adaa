from __future__ import annotations

import pytest

from alert24.models import CheckResult, MonitoringCheck
from alert24.services.ingestor import CheckResultIn
from alert24.services.results import ERROR_INTEGRITY
from tests.conftest import at, failure, success


@pytest.mark.asyncio
async def test_failures_count_up_and_keep_streak_start(seed, ingestor) -> None:
    org = await seed.organization()
    check_id = await seed.check(org)

    await ingestor.process_check_result(failure(check_id, 0))
    await ingestor.process_check_result(failure(check_id, 3))
    outcome = await ingestor.process_check_result(failure(check_id, 6, error="HTTP 503"))

    assert outcome.ok
    assert outcome.details["consecutive_failures"] == 3
    check = await seed.get(MonitoringCheck, check_id)
    assert check.current_status == "down"
    assert check.consecutive_failures == 3
    assert check.consecutive_successes == 0
    assert check.last_failure_at == at(0)
    assert check.last_check_at == at(6)
    assert check.failure_message == "HTTP 503"


@pytest.mark.asyncio
async def test_success_resets_failure_streak(seed, ingestor) -> None:
    org = await seed.organization()
    check_id = await seed.check(org)

    await ingestor.process_check_result(failure(check_id, 0))
    await ingestor.process_check_result(failure(check_id, 1))
    await ingestor.process_check_result(success(check_id, 2))

    check = await seed.get(MonitoringCheck, check_id)
    assert check.current_status == "up"
    assert check.consecutive_failures == 0
    assert check.consecutive_successes == 1
    assert check.last_failure_at is None
    assert check.last_success_at == at(2)
    assert check.failure_message is None

    # A new streak starts from the next failure
    await ingestor.process_check_result(failure(check_id, 5))
    check = await seed.get(MonitoringCheck, check_id)
    assert check.last_failure_at == at(5)
    assert check.consecutive_failures == 1


@pytest.mark.asyncio
async def test_every_result_is_appended(seed, ingestor) -> None:
    org = await seed.organization()
    check_id = await seed.check(org)

    await ingestor.process_check_result(success(check_id, 0, response_time=87))
    await ingestor.process_check_result(failure(check_id, 1, error="timeout"))

    results = await seed.all(CheckResult, CheckResult.monitoring_check_id == check_id)
    assert [r.is_successful for r in results] == [True, False]
    assert results[0].response_time == 87
    assert results[1].error_message == "timeout"


@pytest.mark.asyncio
async def test_out_of_order_result_does_not_move_last_check_back(seed, ingestor) -> None:
    org = await seed.organization()
    check_id = await seed.check(org)

    await ingestor.process_check_result(success(check_id, 10))
    await ingestor.process_check_result(success(check_id, 4))

    check = await seed.get(MonitoringCheck, check_id)
    assert check.last_check_at == at(10)


@pytest.mark.asyncio
async def test_unknown_check_is_integrity_error_and_writes_nothing(seed, ingestor) -> None:
    outcome = await ingestor.process_check_result(CheckResultIn(
        monitoring_check_id=999,
        is_successful=False,
        timestamp=at(0),
    ))

    assert not outcome.ok
    assert outcome.error_kind == ERROR_INTEGRITY
    assert await seed.all(CheckResult) == []


@pytest.mark.asyncio
async def test_outcome_lists_associated_services(seed, ingestor) -> None:
    org = await seed.organization()
    page = await seed.status_page(org)
    check_id = await seed.check(org)
    api = await seed.service(page, "API")
    web = await seed.service(page, "Web")
    await seed.associate(web, check_id)
    await seed.associate(api, check_id)

    outcome = await ingestor.process_check_result(failure(check_id, 0))

    assert outcome.details["service_ids"] == sorted([api, web])
