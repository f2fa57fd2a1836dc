# -*- coding: utf-8 -*-
"""Location: ./pmo_analytics/services/analytics_service.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Analytics Service.

The orchestrator of the analytics engine. For every request it fetches a
fresh project aggregate, resolves the project's parameters (session cached),
decides per calculation whether the cached result is still fresh, and
recomputes the stale ones in parallel:

- EVM is stale when missing, older than ``EVM_MAX_AGE_HOURS`` (24), or older
  than ``EVM_NEAR_COMPLETION_MAX_AGE_HOURS`` (12) once the project is more
  than ``EVM_NEAR_COMPLETION_PERCENT`` (80) complete
- CPM is stale when missing or older than ``CPM_MAX_AGE_HOURS`` (12)
- Resource utilization is always recomputed

Recomputed results are written back with a ``metadata_<kind>`` record only
after every calculation for the project succeeded. Portfolio views run the
per-project analysis concurrently and turn individual failures into error
markers instead of failing the whole call. Cache failures are logged and
never fatal.

Usage:
    async with AnalyticsService(CacheService(), extractor, UpstreamParameterStore(extractor)) as service:
        data = await service.get_project_data("42")
"""

# Standard
import asyncio
from datetime import datetime, timedelta
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

# First-Party
from pmo_analytics.calculations import calculate_critical_path, calculate_evm, calculate_resource_utilization
from pmo_analytics.config import Settings, settings
from pmo_analytics.models import (
    AlertLevel,
    CachePerformance,
    CalculationMetadata,
    CalculationSet,
    Complexity,
    CriticalPathResult,
    Deadline,
    EvmResult,
    HealthStatus,
    ParameterSet,
    PortfolioAnalytics,
    PortfolioProjectError,
    PortfolioProjectSummary,
    ProjectAggregate,
    ProjectData,
    ProjectStatus,
    ResourceConflict,
    ResourceUtilization,
    RiskLevel,
    StatusAlert,
    utc_now,
)
from pmo_analytics.services import metrics
from pmo_analytics.services.cache_service import CacheService, PARAMETER_KIND
from pmo_analytics.services.extractor_service import MetricsExtractor
from pmo_analytics.services.logging_service import LoggingService
from pmo_analytics.services.parameter_service import ParameterStore, resolve_parameters
from pmo_analytics.utils.retry_manager import RequestAbortedError

logging_service = LoggingService()
logger = logging_service.get_logger(__name__)

EVM_KIND = "evm"
CPM_KIND = "criticalPath"
UTILIZATION_KIND = "resourceUtilization"
PORTFOLIO_PATTERN = "portfolio"

CALCULATION_DEPENDENCIES: Dict[str, List[str]] = {
    EVM_KIND: ["workItems", "timeLogs", "parameterSet"],
    CPM_KIND: ["workItems", "relations"],
    UTILIZATION_KIND: ["timeLogs", "parameterSet"],
}
ISSUE_KEYWORDS = ("issue", "bug", "problem")
UPCOMING_DEADLINES = 5
DEADLINE_ALERT_DAYS = 3


def classify_complexity(work_items: int, time_logs: int) -> Complexity:
    """Coarse size class of a calculation input.

    Args:
        work_items: Number of work items
        time_logs: Number of time log entries

    Returns:
        Complexity: low, medium or high

    Examples:
        >>> classify_complexity(10, 50).value
        'low'
        >>> classify_complexity(20, 50).value
        'medium'
        >>> classify_complexity(150, 50).value
        'high'
    """
    if work_items < 20 and time_logs < 100:
        return Complexity.LOW
    if work_items < 100 and time_logs < 500:
        return Complexity.MEDIUM
    return Complexity.HIGH


def portfolio_health(healths: Sequence[str]) -> HealthStatus:
    """Portfolio health from the health of its analyzed projects.

    Args:
        healths: Health value of each successfully analyzed project

    Returns:
        HealthStatus: Red above 30 % Red projects, Yellow below 50 % Green ones, else Green

    Examples:
        >>> portfolio_health(["Red"] * 3 + ["Green"] * 7).value
        'Green'
        >>> portfolio_health(["Red"] * 31 + ["Green"] * 69).value
        'Red'
        >>> portfolio_health(["Yellow", "Yellow", "Green"]).value
        'Yellow'
        >>> portfolio_health([]).value
        'Yellow'
    """
    if not healths:
        return HealthStatus.YELLOW
    red_ratio = sum(1 for health in healths if health == HealthStatus.RED.value) / len(healths)
    green_ratio = sum(1 for health in healths if health == HealthStatus.GREEN.value) / len(healths)
    if red_ratio > 0.3:
        return HealthStatus.RED
    if green_ratio < 0.5:
        return HealthStatus.YELLOW
    return HealthStatus.GREEN


class AnalyticsService:
    """Serve project, status and portfolio analytics over a tiered cache."""

    def __init__(
        self,
        cache: CacheService,
        extractor: MetricsExtractor,
        parameter_store: ParameterStore,
        config: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the service.

        Args:
            cache: Cache owned by the hosting process
            extractor: Source of fresh project aggregates
            parameter_store: Source of resolved parameter sets
            config: Settings with staleness thresholds
            clock: Source of the current UTC time (injectable for tests)
        """
        self.cache = cache
        self.extractor = extractor
        self.parameter_store = parameter_store
        self._settings = config or settings
        self._clock = clock

    async def start(self) -> None:
        """Start the cache sweeper."""
        await self.cache.start()

    async def shutdown(self) -> None:
        """Stop the cache sweeper."""
        await self.cache.shutdown()

    async def __aenter__(self) -> "AnalyticsService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    # ------------------------------------------------------------------
    # Cache access (never fatal)
    # ------------------------------------------------------------------

    def _cache_get(self, kind: str, scope: Optional[str]) -> Any:
        try:
            return self.cache.get(kind, scope)
        except Exception as e:
            logger.warning(f"Cache read failed for {kind}:{scope}, recomputing: {e}")
            return None

    def _cache_set(self, kind: str, value: Any, scope: Optional[str]) -> None:
        try:
            self.cache.set(kind, value, scope)
        except Exception as e:
            logger.warning(f"Cache write failed for {kind}:{scope}: {e}")

    # ------------------------------------------------------------------
    # Single project
    # ------------------------------------------------------------------

    async def get_parameters(self, project_id: str, abort: Optional[asyncio.Event] = None) -> ParameterSet:
        """Session-cached parameter set of a project.

        Args:
            project_id: Project id
            abort: Optional abort event

        Returns:
            ParameterSet: Resolved parameters
        """
        cached = self._cache_get(PARAMETER_KIND, project_id)
        if isinstance(cached, ParameterSet):
            return cached
        parameters = await self.parameter_store.get_parameters(project_id, abort)
        self._cache_set(PARAMETER_KIND, parameters, project_id)
        return parameters

    async def _is_evm_stale(self, project_id: str, aggregate: ProjectAggregate, now: datetime) -> Tuple[bool, Optional[EvmResult]]:
        cached = self._cache_get(EVM_KIND, project_id)
        if not isinstance(cached, EvmResult):
            return True, None
        age = now - cached.calculation_date
        if age > timedelta(hours=self._settings.evm_max_age_hours):
            return True, cached
        near_completion = aggregate.overall_percent_complete > self._settings.evm_near_completion_percent
        if near_completion and age > timedelta(hours=self._settings.evm_near_completion_max_age_hours):
            return True, cached
        return False, cached

    async def _is_cpm_stale(self, project_id: str, now: datetime) -> Tuple[bool, Optional[CriticalPathResult]]:
        cached = self._cache_get(CPM_KIND, project_id)
        if not isinstance(cached, CriticalPathResult):
            return True, None
        if now - cached.calculation_date > timedelta(hours=self._settings.cpm_max_age_hours):
            return True, cached
        return False, cached

    async def _recompute(self, kind: str, aggregate: ProjectAggregate, func: Callable[[], Any]) -> Tuple[str, Any, CalculationMetadata]:
        started = time.perf_counter()
        result = await asyncio.to_thread(func)
        elapsed = time.perf_counter() - started
        metrics.record_calculation(kind, elapsed)
        relation_count = sum(len(item.predecessors) for item in aggregate.work_items)
        metadata = CalculationMetadata(
            calculation_type=kind,
            execution_ms=round(elapsed * 1000, 3),
            input_size={"work_items": len(aggregate.work_items), "time_logs": len(aggregate.time_logs), "relations": relation_count},
            complexity=classify_complexity(len(aggregate.work_items), len(aggregate.time_logs)),
            dependencies=list(CALCULATION_DEPENDENCIES[kind]),
            recorded_at=self._clock(),
        )
        logger.debug(f"Recomputed {kind} for project {aggregate.id} in {metadata.execution_ms}ms")
        return kind, result, metadata

    async def get_project_data(self, project_id: str, force_refresh: bool = False, abort: Optional[asyncio.Event] = None) -> ProjectData:
        """Fresh aggregate, parameters and up-to-date calculations for a project.

        Args:
            project_id: Project id
            force_refresh: Drop every cached value of the project first
            abort: Optional abort event propagated to upstream requests

        Returns:
            ProjectData: Aggregate, parameters and calculation set

        Raises:
            ExtractorError: If the project cannot be read; nothing is cached
            RequestAbortedError: If ``abort`` is set
        """
        if force_refresh:
            try:
                self.cache.clear_scope(project_id)
            except Exception as e:
                logger.warning(f"Cache clear failed for project {project_id}: {e}")

        aggregate, parameters = await asyncio.gather(
            self.extractor.get_project_aggregate(project_id, abort=abort),
            self.get_parameters(project_id, abort),
        )
        now = self._clock()

        (evm_stale, evm), (cpm_stale, critical_path) = await asyncio.gather(
            self._is_evm_stale(project_id, aggregate, now),
            self._is_cpm_stale(project_id, now),
        )

        window_end = now.date()
        # Inclusive window of utilization_window_days days ending today
        window_start = window_end - timedelta(days=self._settings.utilization_window_days - 1)
        jobs = []
        if evm_stale:
            jobs.append(self._recompute(EVM_KIND, aggregate, lambda: calculate_evm(aggregate, parameters, now.date(), now)))
        if cpm_stale:
            jobs.append(self._recompute(CPM_KIND, aggregate, lambda: calculate_critical_path(aggregate, now)))
        jobs.append(
            self._recompute(UTILIZATION_KIND, aggregate, lambda: calculate_resource_utilization([aggregate], parameters, window_start, window_end, now)),
        )
        recomputed = await asyncio.gather(*jobs)

        results: Dict[str, Any] = {}
        for kind, result, metadata in recomputed:
            results[kind] = result
            self._cache_set(kind, result, project_id)
            self._cache_set(f"metadata_{kind}", metadata, project_id)

        utilization: List[ResourceUtilization] = results[UTILIZATION_KIND]
        calculations = CalculationSet(
            evm=results.get(EVM_KIND, evm),
            critical_path=results.get(CPM_KIND, critical_path),
            resource_utilization=utilization,
            recomputed=[kind for kind, _, _ in recomputed],
            last_updated=now,
            ttl=self._settings.calculation_result_ttl,
        )
        logger.info(f"Project {project_id} analytics ready (recomputed: {', '.join(calculations.recomputed)})")
        return ProjectData(project_id=project_id, aggregate=aggregate, parameters=parameters, calculations=calculations)

    async def get_project_status(self, project_id: str, abort: Optional[asyncio.Event] = None) -> ProjectStatus:
        """Real-time status of a project. Recomputed on every call and never cached.

        Args:
            project_id: Project id
            abort: Optional abort event

        Returns:
            ProjectStatus: Today's hours, upcoming deadlines, risk level and alerts
        """
        aggregate = await self.extractor.get_project_aggregate(project_id, abort=abort)
        now = self._clock()
        today = now.date()

        today_hours = sum(log.hours for log in aggregate.time_logs if log.spent_on == today)
        overdue = [item for item in aggregate.work_items if item.due_date is not None and item.due_date < today and not item.status.is_closed]
        upcoming = sorted((item for item in aggregate.work_items if item.due_date is not None and item.due_date > today), key=lambda item: item.due_date)
        deadlines = [
            Deadline(work_item_id=item.id, subject=item.subject, due_date=item.due_date, days_remaining=(item.due_date - today).days, percentage_done=item.percentage_done)
            for item in upcoming[:UPCOMING_DEADLINES]
        ]
        issue_count = sum(1 for item in aggregate.work_items if any(keyword in item.subject.lower() for keyword in ISSUE_KEYWORDS))

        progress = aggregate.overall_percent_complete
        risk = RiskLevel.LOW
        if overdue or progress < 50:
            risk = RiskLevel.MEDIUM
        if issue_count > 5 or progress < 25:
            risk = RiskLevel.HIGH

        alerts: List[StatusAlert] = []
        if risk == RiskLevel.HIGH:
            alerts.append(StatusAlert(level=AlertLevel.ERROR, message=f"Project risk level is High ({progress:.0f}% complete, {issue_count} open issues)"))
        if issue_count > 3:
            alerts.append(StatusAlert(level=AlertLevel.WARNING, message=f"{issue_count} work items mention issues, bugs or problems"))
        soon = [deadline for deadline in deadlines if deadline.days_remaining <= DEADLINE_ALERT_DAYS]
        if soon:
            alerts.append(StatusAlert(level=AlertLevel.WARNING, message=f"Deadline within {DEADLINE_ALERT_DAYS} days: {soon[0].subject or soon[0].work_item_id} due {soon[0].due_date.isoformat()}"))
        if today_hours == 0:
            alerts.append(StatusAlert(level=AlertLevel.INFO, message="No hours logged today"))

        return ProjectStatus(
            project_id=project_id,
            project_name=aggregate.name,
            today_hours=round(today_hours, 2),
            current_progress=progress,
            active_work_items=aggregate.active_work_items,
            overdue_items=len(overdue),
            upcoming_deadlines=deadlines,
            issue_count=issue_count,
            risk_level=risk,
            alerts=alerts,
            calculation_date=now,
        )

    # ------------------------------------------------------------------
    # Portfolio
    # ------------------------------------------------------------------

    async def get_portfolio_analytics(self, project_ids: Sequence[str], abort: Optional[asyncio.Event] = None) -> PortfolioAnalytics:
        """Portfolio view over many projects.

        Args:
            project_ids: Projects to include
            abort: Optional abort event

        Returns:
            PortfolioAnalytics: Totals, health, conflicts, recommendations and per-project errors

        Raises:
            RequestAbortedError: If ``abort`` was set during the run
        """
        ids = list(dict.fromkeys(str(project_id) for project_id in project_ids))
        try:
            await self.cache.warm(ids, loader=lambda project_id: self.parameter_store.get_parameters(project_id, abort))
        except Exception as e:
            logger.warning(f"Cache warming failed, continuing cold: {e}")

        outcomes = await asyncio.gather(*(self.get_project_data(project_id, abort=abort) for project_id in ids), return_exceptions=True)
        if abort is not None and abort.is_set():
            raise RequestAbortedError("Portfolio analysis aborted")

        analyzed: List[ProjectData] = []
        errors: List[PortfolioProjectError] = []
        for project_id, outcome in zip(ids, outcomes):
            if isinstance(outcome, ProjectData):
                analyzed.append(outcome)
            elif isinstance(outcome, Exception):
                logger.warning(f"Portfolio analysis failed for project {project_id}: {outcome}")
                errors.append(PortfolioProjectError(project_id=project_id, error=str(outcome) or type(outcome).__name__, error_type=type(outcome).__name__))
            else:
                raise outcome

        summaries = [
            PortfolioProjectSummary(
                project_id=data.project_id,
                project_name=data.aggregate.name,
                budget=data.calculations.evm.budget_at_completion,
                actual_cost=data.calculations.evm.actual_cost,
                percent_complete=data.aggregate.overall_percent_complete,
                health=data.calculations.evm.overall_health,
                schedule_risk=data.calculations.critical_path.schedule_risk,
                project_duration=data.calculations.critical_path.project_duration,
            )
            for data in analyzed
        ]
        red_projects = [summary.project_id for summary in summaries if summary.health == HealthStatus.RED.value]
        average_progress = sum(summary.percent_complete for summary in summaries) / len(summaries) if summaries else 0.0
        # Strictest allocation ceiling among the analyzed projects' parameter sets
        allocations = [data.parameters.max_allocation for data in analyzed]
        max_allocation = min(allocations) if allocations else resolve_parameters(self._settings.organizational_defaults())[0].max_allocation
        conflicts = self.detect_resource_conflicts(analyzed, max_allocation)

        recommendations: List[str] = []
        if red_projects:
            recommendations.append(f"{len(red_projects)} projects are at high risk; review their cost and schedule performance")
        if conflicts:
            recommendations.append(f"Resolve {len(conflicts)} resource conflicts where people are allocated above {max_allocation:.0%}")
        if summaries and average_progress < 50:
            recommendations.append(f"Average portfolio progress is {average_progress:.1f}%; review scope and milestone plans")
        if errors:
            recommendations.append(f"{len(errors)} projects could not be analyzed; check upstream availability and access")

        health = portfolio_health([summary.health for summary in summaries])
        logger.info(f"Portfolio of {len(ids)} projects analyzed: health={health.value}, failures={len(errors)}, conflicts={len(conflicts)}")
        return PortfolioAnalytics(
            project_count=len(ids),
            analyzed_count=len(analyzed),
            total_budget=round(sum(summary.budget for summary in summaries), 2),
            total_spent=round(sum(summary.actual_cost for summary in summaries), 2),
            average_progress=round(average_progress, 2),
            red_projects=red_projects,
            portfolio_health=health,
            resource_conflicts=conflicts,
            recommendations=recommendations,
            projects=summaries,
            errors=errors,
            calculation_date=self._clock(),
        )

    @staticmethod
    def detect_resource_conflicts(analyzed: Sequence[ProjectData], max_allocation: float) -> List[ResourceConflict]:
        """Users whose utilization summed across projects exceeds ``max_allocation``.

        Args:
            analyzed: Successfully analyzed projects
            max_allocation: Allowed allocation fraction

        Returns:
            List[ResourceConflict]: Conflicts, most overallocated first
        """
        totals: Dict[str, float] = {}
        names: Dict[str, str] = {}
        projects: Dict[str, List[str]] = {}
        for data in analyzed:
            for record in data.calculations.resource_utilization:
                totals[record.user_id] = totals.get(record.user_id, 0.0) + record.utilization_rate
                names.setdefault(record.user_id, record.user_name)
                projects.setdefault(record.user_id, []).append(data.project_id)
        conflicts = [
            ResourceConflict(user_id=user_id, user_name=names[user_id], total_utilization=round(total, 3), max_allocation=max_allocation, projects=projects[user_id])
            for user_id, total in totals.items()
            if total > max_allocation
        ]
        conflicts.sort(key=lambda conflict: conflict.total_utilization, reverse=True)
        return conflicts

    # ------------------------------------------------------------------
    # Cache passthroughs
    # ------------------------------------------------------------------

    def invalidate_project_cache(self, project_id: str) -> int:
        """Drop everything cached for a project plus any portfolio entries.

        Args:
            project_id: Project id

        Returns:
            int: Number of entries removed
        """
        removed = self.cache.clear_scope(project_id) + self.cache.invalidate(PORTFOLIO_PATTERN)
        logger.info(f"Invalidated {removed} cache entries for project {project_id}")
        return removed

    def get_cache_performance(self) -> CachePerformance:
        """Cache statistics and health.

        Returns:
            CachePerformance: Statistics and health verdict
        """
        return CachePerformance(statistics=self.cache.stats(), health=self.cache.health())
