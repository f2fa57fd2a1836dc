# -*- coding: utf-8 -*-
"""Location: ./tests/unit/pmo_analytics/services/test_analytics_service.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Unit tests for the analytics orchestrator.
"""

# Standard
import asyncio
from datetime import date, timedelta
from unittest.mock import AsyncMock, patch

# Third-Party
import pytest

# First-Party
from pmo_analytics.models import CalculationMetadata, EvmResult, ParameterSet, ProjectData
from pmo_analytics.services import analytics_service
from pmo_analytics.services.analytics_service import AnalyticsService, portfolio_health
from pmo_analytics.services.cache_service import CacheService
from pmo_analytics.services.extractor_service import ExtractorError
from pmo_analytics.utils.retry_manager import RequestAbortedError

ALL_KINDS = ["evm", "criticalPath", "resourceUtilization"]


class BrokenCache(CacheService):
    """A cache whose reads and writes always fail."""

    def get(self, kind, scope=None):
        raise RuntimeError("cache backend unavailable")

    def set(self, kind, value, scope=None, ttl_override=None):
        raise RuntimeError("cache backend unavailable")


@pytest.fixture
def cache(test_settings, clock):
    return CacheService(config=test_settings, clock=clock)


@pytest.fixture
def service(cache, fake_extractor, fake_parameter_store, test_settings, datetime_clock):
    return AnalyticsService(cache, fake_extractor, fake_parameter_store, config=test_settings, clock=datetime_clock)


@pytest.fixture
def green_project(make_item, make_aggregate):
    """Half done, undated, nothing logged: CPI = SPI = 1."""

    def _make(project_id, **fields):
        return make_aggregate(project_id, work_items=[make_item("1", estimated_hours=10, percentage_done=50)], **fields)

    return _make


@pytest.fixture
def red_project(make_item, make_log, make_aggregate):
    """Past its due date at 10 % with heavy spend: CPI and SPI far below threshold."""

    def _make(project_id):
        item = make_item("1", estimated_hours=100, percentage_done=10, start_date=date(2025, 5, 1), due_date=date(2025, 6, 1))
        return make_aggregate(project_id, work_items=[item], time_logs=[make_log(60)])

    return _make


# --------------------------------------------------------------------------- #
# PROJECT DATA AND STALENESS
# --------------------------------------------------------------------------- #


@pytest.mark.asyncio
async def test_first_request_computes_everything(service, fake_extractor, green_project, cache):
    fake_extractor.aggregates["1"] = green_project("1")

    data = await service.get_project_data("1")

    assert isinstance(data, ProjectData)
    assert data.calculations.recomputed == ALL_KINDS
    assert data.calculations.evm.overall_health == "Green"
    assert data.calculations.ttl == 3600
    assert isinstance(cache.get("evm", "1"), EvmResult)
    metadata = cache.get("metadata_evm", "1")
    assert isinstance(metadata, CalculationMetadata)
    assert metadata.complexity == "low"
    assert metadata.input_size["work_items"] == 1
    assert metadata.dependencies == ["workItems", "timeLogs", "parameterSet"]


@pytest.mark.asyncio
async def test_fresh_results_are_reused(service, fake_extractor, green_project):
    fake_extractor.aggregates["1"] = green_project("1")
    first = await service.get_project_data("1")

    second = await service.get_project_data("1")

    assert second.calculations.recomputed == ["resourceUtilization"]
    assert second.calculations.evm == first.calculations.evm
    assert second.calculations.critical_path == first.calculations.critical_path
    assert fake_extractor.calls == ["1", "1"]


@pytest.mark.asyncio
async def test_aggregate_is_never_cached(service, fake_extractor, green_project, make_log):
    fake_extractor.aggregates["1"] = green_project("1")
    await service.get_project_data("1")
    fake_extractor.aggregates["1"] = green_project("1", time_logs=[make_log(3)])

    data = await service.get_project_data("1")

    assert len(data.aggregate.time_logs) == 1
    assert data.calculations.resource_utilization[0].total_worked_hours == 3.0


@pytest.mark.asyncio
async def test_cpm_goes_stale_after_twelve_hours(service, fake_extractor, green_project, datetime_clock):
    fake_extractor.aggregates["1"] = green_project("1")
    await service.get_project_data("1")

    datetime_clock.advance(hours=11)
    assert (await service.get_project_data("1")).calculations.recomputed == ["resourceUtilization"]

    datetime_clock.advance(hours=2)
    assert (await service.get_project_data("1")).calculations.recomputed == ["criticalPath", "resourceUtilization"]


@pytest.mark.asyncio
async def test_evm_goes_stale_after_a_day(service, fake_extractor, green_project, datetime_clock):
    fake_extractor.aggregates["1"] = green_project("1")
    first = await service.get_project_data("1")

    datetime_clock.advance(hours=23)
    assert "evm" not in (await service.get_project_data("1")).calculations.recomputed

    datetime_clock.advance(hours=2)
    data = await service.get_project_data("1")
    assert "evm" in data.calculations.recomputed
    assert data.calculations.evm.calculation_date == first.calculations.evm.calculation_date + timedelta(hours=25)


@pytest.mark.asyncio
async def test_evm_refreshes_sooner_near_completion(service, fake_extractor, make_item, make_aggregate, datetime_clock):
    fake_extractor.aggregates["1"] = make_aggregate("1", work_items=[make_item("1", estimated_hours=10, percentage_done=90)])
    await service.get_project_data("1")

    datetime_clock.advance(hours=11)
    assert "evm" not in (await service.get_project_data("1")).calculations.recomputed

    datetime_clock.advance(hours=2)
    assert "evm" in (await service.get_project_data("1")).calculations.recomputed


@pytest.mark.asyncio
async def test_force_refresh_recomputes_and_reloads_parameters(service, fake_extractor, fake_parameter_store, green_project):
    fake_extractor.aggregates["1"] = green_project("1")
    await service.get_project_data("1")

    data = await service.get_project_data("1", force_refresh=True)

    assert data.calculations.recomputed == ALL_KINDS
    assert fake_parameter_store.calls == ["1", "1"]


@pytest.mark.asyncio
async def test_parameters_are_session_cached(service, fake_extractor, fake_parameter_store, green_project, datetime_clock):
    fake_extractor.aggregates["1"] = green_project("1")
    fake_parameter_store.overrides["1"] = {"standard_labor_rate": 100}

    await service.get_project_data("1")
    datetime_clock.advance(days=30)
    data = await service.get_project_data("1")

    assert fake_parameter_store.calls == ["1"]
    assert data.parameters.standard_labor_rate == 100.0
    assert data.calculations.evm.budget_at_completion == 1000.0


@pytest.mark.asyncio
async def test_upstream_failure_caches_nothing(service, fake_extractor, cache):
    fake_extractor.failures["1"] = ExtractorError("Upstream returned 503", status=503)

    with pytest.raises(ExtractorError):
        await service.get_project_data("1")

    assert cache.get_entry("evm", "1") is None
    assert cache.get_entry("criticalPath", "1") is None


@pytest.mark.asyncio
async def test_failed_calculation_leaves_other_results_uncached(service, fake_extractor, green_project, cache, monkeypatch):
    fake_extractor.aggregates["1"] = green_project("1")

    def explode(aggregate, calculation_date=None):
        raise RuntimeError("graph exploded")

    monkeypatch.setattr(analytics_service, "calculate_critical_path", explode)

    with pytest.raises(RuntimeError):
        await service.get_project_data("1")

    assert cache.get_entry("evm", "1") is None
    assert cache.get_entry("resourceUtilization", "1") is None


@pytest.mark.asyncio
async def test_cache_failures_are_not_fatal(test_settings, clock, fake_extractor, fake_parameter_store, green_project, datetime_clock):
    service = AnalyticsService(BrokenCache(config=test_settings, clock=clock), fake_extractor, fake_parameter_store, config=test_settings, clock=datetime_clock)
    fake_extractor.aggregates["1"] = green_project("1")

    first = await service.get_project_data("1")
    second = await service.get_project_data("1")

    assert first.calculations.recomputed == ALL_KINDS
    assert second.calculations.recomputed == ALL_KINDS
    assert fake_parameter_store.calls == ["1", "1"]


@pytest.mark.asyncio
async def test_abort_propagates(service, fake_extractor):
    fake_extractor.failures["1"] = RequestAbortedError("aborted in flight")
    with pytest.raises(RequestAbortedError):
        await service.get_project_data("1", abort=asyncio.Event())


# --------------------------------------------------------------------------- #
# REAL-TIME STATUS
# --------------------------------------------------------------------------- #


@pytest.mark.asyncio
async def test_status_reports_overdue_items_and_deadlines(service, fake_extractor, make_item, make_log, make_aggregate, cache):
    today = date(2025, 6, 2)
    fake_extractor.aggregates["1"] = make_aggregate(
        "1",
        work_items=[
            make_item("A", subject="Fix login bug", percentage_done=30, due_date=today - timedelta(days=1)),
            make_item("B", subject="Write docs", percentage_done=60, due_date=today + timedelta(days=2)),
            make_item("C", closed=True, percentage_done=100, due_date=date(2025, 5, 1)),
            make_item("D", subject="Ship", percentage_done=0, due_date=today + timedelta(days=20)),
        ],
        time_logs=[make_log(2.5), make_log(4, spent_on=today - timedelta(days=1))],
    )

    status = await service.get_project_status("1")

    assert status.today_hours == 2.5
    assert status.overdue_items == 1
    assert [deadline.work_item_id for deadline in status.upcoming_deadlines] == ["B", "D"]
    assert status.upcoming_deadlines[0].days_remaining == 2
    assert status.issue_count == 1
    assert status.risk_level == "Medium"
    assert [alert.level for alert in status.alerts] == ["warning"]
    assert "Write docs" in status.alerts[0].message
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_status_flags_high_risk(service, fake_extractor, make_item, make_aggregate):
    fake_extractor.aggregates["1"] = make_aggregate("1", work_items=[make_item(str(i), subject=f"Problem {i}", percentage_done=10) for i in range(6)])

    status = await service.get_project_status("1")

    assert status.risk_level == "High"
    assert [alert.level for alert in status.alerts] == ["error", "warning", "info"]


@pytest.mark.asyncio
async def test_status_is_recomputed_every_time(service, fake_extractor, green_project):
    fake_extractor.aggregates["1"] = green_project("1")
    await service.get_project_status("1")
    await service.get_project_status("1")
    assert fake_extractor.calls == ["1", "1"]


# --------------------------------------------------------------------------- #
# PORTFOLIO
# --------------------------------------------------------------------------- #


@pytest.mark.parametrize("red,expected", [(30, "Green"), (31, "Red")])
def test_portfolio_red_boundary(red, expected):
    assert portfolio_health(["Red"] * red + ["Green"] * (100 - red)).value == expected


@pytest.mark.asyncio
async def test_portfolio_with_thirty_percent_red_is_not_red(service, fake_extractor, green_project, red_project):
    ids = [str(i) for i in range(10)]
    for project_id in ids[:3]:
        fake_extractor.aggregates[project_id] = red_project(project_id)
    for project_id in ids[3:]:
        fake_extractor.aggregates[project_id] = green_project(project_id)

    portfolio = await service.get_portfolio_analytics(ids)

    assert portfolio.red_projects == ["0", "1", "2"]
    assert portfolio.portfolio_health == "Green"


@pytest.mark.asyncio
async def test_portfolio_with_forty_percent_red_is_red(service, fake_extractor, green_project, red_project):
    ids = [str(i) for i in range(10)]
    for project_id in ids[:4]:
        fake_extractor.aggregates[project_id] = red_project(project_id)
    for project_id in ids[4:]:
        fake_extractor.aggregates[project_id] = green_project(project_id)

    portfolio = await service.get_portfolio_analytics(ids)

    assert portfolio.portfolio_health == "Red"
    assert portfolio.recommendations[0].startswith("4 projects are at high risk")


@pytest.mark.asyncio
async def test_portfolio_isolates_failures(service, fake_extractor, green_project):
    fake_extractor.aggregates["1"] = green_project("1")
    fake_extractor.aggregates["3"] = green_project("3")

    portfolio = await service.get_portfolio_analytics(["1", "2", "3"])

    assert portfolio.project_count == 3
    assert portfolio.analyzed_count == 2
    assert [summary.project_id for summary in portfolio.projects] == ["1", "3"]
    assert [(error.project_id, error.error_type) for error in portfolio.errors] == [("2", "ExtractorError")]
    assert portfolio.total_budget == 1500.0
    assert portfolio.average_progress == 50.0
    assert any("could not be analyzed" in rec for rec in portfolio.recommendations)


@pytest.mark.asyncio
async def test_portfolio_with_no_successes_is_yellow(service):
    portfolio = await service.get_portfolio_analytics(["x", "y"])

    assert portfolio.analyzed_count == 0
    assert portfolio.portfolio_health == "Yellow"
    assert len(portfolio.errors) == 2
    assert portfolio.average_progress == 0.0


@pytest.mark.asyncio
async def test_portfolio_deduplicates_ids_and_warms_parameters(service, fake_extractor, fake_parameter_store, green_project):
    fake_extractor.aggregates["1"] = green_project("1")

    portfolio = await service.get_portfolio_analytics(["1", "1"])

    assert portfolio.project_count == 1
    assert fake_parameter_store.calls == ["1"]


@pytest.mark.asyncio
async def test_portfolio_detects_cross_project_overallocation(service, fake_extractor, make_item, make_log, make_aggregate):
    for project_id in ("1", "2"):
        fake_extractor.aggregates[project_id] = make_aggregate(project_id, work_items=[make_item("1", estimated_hours=200, percentage_done=50)], time_logs=[make_log(100)])

    portfolio = await service.get_portfolio_analytics(["1", "2"])

    [conflict] = portfolio.resource_conflicts
    assert conflict.user_id == "u1"
    assert conflict.projects == ["1", "2"]
    assert conflict.total_utilization > 1.0
    assert conflict.max_allocation == 1.0


@pytest.mark.asyncio
async def test_portfolio_conflicts_use_strictest_project_allocation(service, fake_extractor, fake_parameter_store, make_item, make_log, make_aggregate):
    for project_id in ("1", "2"):
        fake_extractor.aggregates[project_id] = make_aggregate(project_id, work_items=[make_item("1", estimated_hours=200, percentage_done=50)], time_logs=[make_log(100)])
    fake_parameter_store.overrides["1"] = {"max_allocation": 1.5}
    fake_parameter_store.overrides["2"] = {"max_allocation": 1.2}

    assert (await service.get_portfolio_analytics(["1", "2"])).resource_conflicts == []

    service.invalidate_project_cache("1")
    service.invalidate_project_cache("2")
    fake_parameter_store.overrides["2"] = {"max_allocation": 0.9}

    [conflict] = (await service.get_portfolio_analytics(["1", "2"])).resource_conflicts
    assert conflict.max_allocation == 0.9


@pytest.mark.asyncio
async def test_portfolio_abort_raises(service, fake_extractor, green_project):
    fake_extractor.aggregates["1"] = green_project("1")
    abort = asyncio.Event()
    abort.set()

    with pytest.raises(RequestAbortedError):
        await service.get_portfolio_analytics(["1"], abort=abort)


# --------------------------------------------------------------------------- #
# CACHE PASSTHROUGHS
# --------------------------------------------------------------------------- #


@pytest.mark.asyncio
async def test_invalidate_project_cache(service, fake_extractor, green_project, cache):
    fake_extractor.aggregates["1"] = green_project("1")
    fake_extractor.aggregates["2"] = green_project("2")
    await service.get_project_data("1")
    await service.get_project_data("2")
    cache.set("portfolioAnalytics", {"stale": True})
    before = len(cache)

    removed = service.invalidate_project_cache("1")

    assert cache.get_entry("evm", "1") is None
    assert cache.get_entry("evm", "2") is not None
    assert cache.get_entry("portfolioAnalytics") is None
    assert removed == before - len(cache)


@pytest.mark.asyncio
async def test_cache_performance(service, fake_extractor, green_project):
    fake_extractor.aggregates["1"] = green_project("1")
    await service.get_project_data("1")

    performance = service.get_cache_performance()

    assert performance.statistics.total_entries > 0
    assert performance.health.status == "healthy"


@pytest.mark.asyncio
async def test_service_lifecycle(service, cache):
    async with service:
        assert cache._sweeper_task is not None
    assert cache._sweeper_task is None


@pytest.mark.asyncio
async def test_recomputations_are_instrumented(cache, fake_extractor, green_project, test_settings, datetime_clock):
    store = AsyncMock()
    store.get_parameters.return_value = ParameterSet(standard_labor_rate=80)
    service = AnalyticsService(cache, fake_extractor, store, config=test_settings, clock=datetime_clock)
    fake_extractor.aggregates["1"] = green_project("1")

    with patch.object(analytics_service.metrics, "record_calculation") as record:
        data = await service.get_project_data("1")

    assert sorted(call.args[0] for call in record.call_args_list) == sorted(ALL_KINDS)
    store.get_parameters.assert_awaited_once_with("1", None)
    assert data.calculations.evm.budget_at_completion == 800.0
