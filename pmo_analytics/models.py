# -*- coding: utf-8 -*-
"""Location: ./pmo_analytics/models.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

PMO Analytics data model.

This module contains the pydantic models shared by the extractor, the
calculation engine, the cache and the orchestrator:

- Normalized upstream records: work items, time logs, budgets and the
  per-project aggregate snapshot built from them
- The typed parameter set consumed by the calculation engine
- Derived results: EVM, critical path and resource utilization
- Orchestrator views: project data, real-time status, portfolio analytics
- Cache introspection records

All models serialize with camelCase aliases (see
:class:`~pmo_analytics.utils.base_models.AnalyticsBaseModel`).

Examples:
    >>> item = WorkItem(id="7", subject="Design", percentage_done=140)
    >>> item.percentage_done
    100.0
    >>> ParameterSet().forecast_method == "CPI"
    True
"""

# Standard
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

# Third-Party
from pydantic import Field, field_validator

# First-Party
from pmo_analytics.utils.base_models import AnalyticsBaseModel


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime.

    Returns:
        datetime: Current UTC time
    """
    return datetime.now(timezone.utc)


class ForecastMethod(str, Enum):
    """Selector for the authoritative estimate-at-completion variant."""

    CPI = "CPI"
    SPI_CPI = "SPI_CPI"
    BUDGET_RATE = "BUDGET_RATE"
    AC_PLUS_REMAINING_OVER_CPI = "AC_PLUS_REMAINING_OVER_CPI"
    CUSTOM_REGRESSION = "custom_regression"


class HealthStatus(str, Enum):
    """Traffic-light health tier."""

    GREEN = "Green"
    YELLOW = "Yellow"
    RED = "Red"


class CostStatus(str, Enum):
    """Qualitative cost position derived from CPI."""

    UNDER_BUDGET = "Under Budget"
    OVER_BUDGET = "Over Budget"
    SERIOUSLY_OVER_BUDGET = "Seriously Over Budget"


class ScheduleStatus(str, Enum):
    """Qualitative schedule position derived from SPI."""

    AHEAD = "Ahead"
    ON_TRACK = "On Track"
    BEHIND = "Behind"
    SERIOUSLY_BEHIND = "Seriously Behind"


class RiskLevel(str, Enum):
    """Low / Medium / High risk tier."""

    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class Complexity(str, Enum):
    """Coarse size classification recorded with every recomputation."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AlertLevel(str, Enum):
    """Severity of a real-time status alert."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class CacheHealthStatus(str, Enum):
    """Tri-state cache health."""

    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


# --------------------------------------------------------------------------
# Normalized upstream records
# --------------------------------------------------------------------------


class UserRef(AnalyticsBaseModel):
    """Reference to an upstream user."""

    id: str
    name: str = "Unknown"


class ActivityRef(AnalyticsBaseModel):
    """Reference to a time-log activity."""

    id: str
    name: str = ""


class WorkItemStatus(AnalyticsBaseModel):
    """Work item status with its closed flag."""

    id: Optional[str] = None
    name: str = "Unknown"
    is_closed: bool = False


class WorkItem(AnalyticsBaseModel):
    """One schedulable unit of work, normalized from an upstream work package."""

    id: str
    subject: str = ""
    percentage_done: float = 0.0
    estimated_hours: float = Field(default=0.0, ge=0)
    spent_hours: float = Field(default=0.0, ge=0)
    start_date: Optional[date] = None
    due_date: Optional[date] = None
    status: WorkItemStatus = Field(default_factory=WorkItemStatus)
    type_name: str = ""
    assignee: Optional[UserRef] = None
    predecessors: List[str] = Field(default_factory=list)
    successors: List[str] = Field(default_factory=list)

    @field_validator("percentage_done", mode="before")
    @classmethod
    def _clamp_percentage(cls, v: Any) -> float:
        """Clamp completion into 0..100; absent values count as 0.

        Args:
            v: Raw completion value

        Returns:
            float: Completion percentage within bounds

        Examples:
            >>> WorkItem._clamp_percentage(-5)
            0.0
            >>> WorkItem._clamp_percentage(None)
            0.0
            >>> WorkItem._clamp_percentage("55")
            55.0
        """
        try:
            value = float(v) if v is not None else 0.0
        except (TypeError, ValueError):
            return 0.0
        return min(max(value, 0.0), 100.0)


class TimeLogEntry(AnalyticsBaseModel):
    """Hours logged by a user on a date."""

    id: str
    hours: float = Field(default=0.0, ge=0)
    spent_on: Optional[date] = None
    user: UserRef
    work_item_id: Optional[str] = None
    activity: Optional[ActivityRef] = None
    comment: str = ""


class BudgetRecord(AnalyticsBaseModel):
    """Budget record attached to a project."""

    id: str
    subject: str = ""


class ProjectAggregate(AnalyticsBaseModel):
    """Per-project snapshot of normalized upstream data. Rebuilt on every fetch."""

    id: str
    name: str = ""
    identifier: str = ""
    status: Optional[str] = None
    work_items: List[WorkItem] = Field(default_factory=list)
    time_logs: List[TimeLogEntry] = Field(default_factory=list)
    budgets: List[BudgetRecord] = Field(default_factory=list)
    total_estimated_hours: float = 0.0
    total_spent_hours: float = 0.0
    overall_percent_complete: float = 0.0
    active_work_items: int = 0
    completed_work_items: int = 0
    total_work_items: int = 0
    fetched_at: datetime = Field(default_factory=utc_now)
    data_issues: List[str] = Field(default_factory=list)


# --------------------------------------------------------------------------
# Parameters
# --------------------------------------------------------------------------


class ParameterSet(AnalyticsBaseModel):
    """Typed PMO parameters consumed by the calculation engine.

    Built from defaults, organizational settings and project overrides by the
    parameter store; the calculation engine only ever sees this struct.
    """

    standard_labor_rate: float = Field(default=75.0, gt=0)
    overtime_multiplier: float = Field(default=1.5, ge=1)
    contingency_percentage: float = Field(default=0.10, ge=0, le=1)
    management_reserve_percentage: float = Field(default=0.05, ge=0, le=1)
    cost_performance_threshold: float = Field(default=0.95, gt=0)
    schedule_performance_threshold: float = Field(default=0.95, gt=0)
    quality_threshold: float = Field(default=0.90, ge=0, le=1)
    default_utilization_rate: float = Field(default=0.85, gt=0)
    max_allocation: float = Field(default=1.0, gt=0)
    working_hours_per_day: float = Field(default=8.0, gt=0, le=24)
    working_days_per_week: int = Field(default=5, ge=1, le=7)
    risk_tolerance: str = "medium"
    risk_appetite: str = "moderate"
    evm_method: str = "traditional"
    forecast_method: ForecastMethod = ForecastMethod.CPI
    industry_type: str = "software"
    complexity_factor: float = Field(default=1.0, gt=0)
    technology_risk_factor: float = Field(default=1.0, gt=0)
    approval_threshold: float = Field(default=10000.0, ge=0)
    change_control_threshold: float = Field(default=5000.0, ge=0)
    escalation_threshold: float = Field(default=25000.0, ge=0)
    regression_upper_threshold: float = 1.1
    regression_lower_threshold: float = 0.8
    regression_optimism_factor: float = Field(default=1.05, gt=0)
    regression_pessimism_factor: float = Field(default=0.9, gt=0)
    user_rates: Dict[str, float] = Field(default_factory=dict)

    def rate_for(self, user_id: Optional[str]) -> float:
        """Hourly cost rate for a user.

        Args:
            user_id: Upstream user id, or ``None``

        Returns:
            float: The user's override rate, else the standard labor rate

        Examples:
            >>> ParameterSet(user_rates={"4": 120.0}).rate_for("4")
            120.0
            >>> ParameterSet().rate_for("4")
            75.0
        """
        if user_id is not None and user_id in self.user_rates:
            return self.user_rates[user_id]
        return self.standard_labor_rate


# --------------------------------------------------------------------------
# Derived results
# --------------------------------------------------------------------------


class ForecastVariants(AnalyticsBaseModel):
    """All estimate-at-completion variants, exposed for transparency."""

    cpi_based: float
    budget_rate: float
    spi_cpi_combined: float
    ac_plus_remaining_over_cpi: float
    custom_regression: float


class EvmResult(AnalyticsBaseModel):
    """Earned value analysis for one project at a report date."""

    project_id: str
    budget_at_completion: float
    planned_value: float
    earned_value: float
    actual_cost: float
    cost_performance_index: float
    schedule_performance_index: float
    cost_variance: float
    schedule_variance: float
    estimate_at_completion: float
    estimate_to_complete: float
    variance_at_completion: float
    to_complete_performance_index: float
    forecast_variants: ForecastVariants
    forecast_method_applied: ForecastMethod
    cost_status: CostStatus
    schedule_status: ScheduleStatus
    overall_health: HealthStatus
    method: str = "traditional"
    percent_complete: float = 0.0
    confidence: float = Field(ge=0, le=1)
    report_date: date
    calculation_date: datetime
    data_incomplete: bool = False
    warnings: List[str] = Field(default_factory=list)


class CriticalPathNode(AnalyticsBaseModel):
    """One task in the dependency network with its CPM times."""

    id: str
    subject: str = ""
    duration: int = Field(ge=1)
    earliest_start: int = 0
    earliest_finish: int = 0
    latest_start: int = 0
    latest_finish: int = 0
    total_float: int = 0
    free_float: int = 0
    is_critical: bool = False
    completion: float = 0.0
    predecessors: List[str] = Field(default_factory=list)
    successors: List[str] = Field(default_factory=list)


class CriticalPathResult(AnalyticsBaseModel):
    """Critical path analysis of a project's dependency network."""

    project_id: str
    nodes: Dict[str, CriticalPathNode] = Field(default_factory=dict)
    critical_path: List[str] = Field(default_factory=list)
    project_duration: int = 0
    critical_path_length: int = 0
    minimum_float: int = 0
    schedule_risk: RiskLevel = RiskLevel.LOW
    recommendations: List[str] = Field(default_factory=list)
    has_cycle: bool = False
    cycle_members: List[str] = Field(default_factory=list)
    data_incomplete: bool = False
    warnings: List[str] = Field(default_factory=list)
    calculation_date: datetime


class ProjectUtilization(AnalyticsBaseModel):
    """A user's share of work in one project."""

    project_id: str
    project_name: str = ""
    allocated_hours: float = 0.0
    worked_hours: float = 0.0
    utilization_rate: float = 0.0


class ResourceUtilization(AnalyticsBaseModel):
    """Allocated versus worked hours for one user over a reporting window."""

    user_id: str
    user_name: str = "Unknown"
    total_allocated_hours: float = 0.0
    total_worked_hours: float = 0.0
    utilization_rate: float = 0.0
    overallocation: bool = False
    available_capacity: float = 0.0
    projects: List[ProjectUtilization] = Field(default_factory=list)
    period_start: date
    period_end: date
    calculation_date: datetime


class CalculationMetadata(AnalyticsBaseModel):
    """Bookkeeping written next to every recomputed result."""

    calculation_type: str
    execution_ms: float
    input_size: Dict[str, int] = Field(default_factory=dict)
    complexity: Complexity
    dependencies: List[str] = Field(default_factory=list)
    recorded_at: datetime = Field(default_factory=utc_now)


class CalculationSet(AnalyticsBaseModel):
    """The three calculations served for a project."""

    evm: EvmResult
    critical_path: CriticalPathResult
    resource_utilization: List[ResourceUtilization] = Field(default_factory=list)
    recomputed: List[str] = Field(default_factory=list)
    last_updated: datetime
    ttl: int


class ProjectData(AnalyticsBaseModel):
    """Fresh aggregate, parameters and calculations for a project."""

    project_id: str
    aggregate: ProjectAggregate
    parameters: ParameterSet
    calculations: CalculationSet


class Deadline(AnalyticsBaseModel):
    """An upcoming work-item due date."""

    work_item_id: str
    subject: str = ""
    due_date: date
    days_remaining: int
    percentage_done: float = 0.0


class StatusAlert(AnalyticsBaseModel):
    """A qualitative real-time alert."""

    level: AlertLevel
    message: str


class ProjectStatus(AnalyticsBaseModel):
    """Real-time project status. Never cached."""

    project_id: str
    project_name: str = ""
    today_hours: float = 0.0
    current_progress: float = 0.0
    active_work_items: int = 0
    overdue_items: int = 0
    upcoming_deadlines: List[Deadline] = Field(default_factory=list)
    issue_count: int = 0
    risk_level: RiskLevel = RiskLevel.LOW
    alerts: List[StatusAlert] = Field(default_factory=list)
    calculation_date: datetime


class ResourceConflict(AnalyticsBaseModel):
    """A user whose combined utilization across projects exceeds the allowed allocation."""

    user_id: str
    user_name: str = "Unknown"
    total_utilization: float
    max_allocation: float
    projects: List[str] = Field(default_factory=list)


class PortfolioProjectError(AnalyticsBaseModel):
    """Marker for a project that could not be analyzed."""

    project_id: str
    error: str
    error_type: str = ""


class PortfolioProjectSummary(AnalyticsBaseModel):
    """Headline numbers of one successfully analyzed project."""

    project_id: str
    project_name: str = ""
    budget: float = 0.0
    actual_cost: float = 0.0
    percent_complete: float = 0.0
    health: HealthStatus
    schedule_risk: RiskLevel
    project_duration: int = 0


class PortfolioAnalytics(AnalyticsBaseModel):
    """Portfolio-level view over many projects."""

    project_count: int
    analyzed_count: int
    total_budget: float = 0.0
    total_spent: float = 0.0
    average_progress: float = 0.0
    red_projects: List[str] = Field(default_factory=list)
    portfolio_health: HealthStatus
    resource_conflicts: List[ResourceConflict] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    projects: List[PortfolioProjectSummary] = Field(default_factory=list)
    errors: List[PortfolioProjectError] = Field(default_factory=list)
    calculation_date: datetime


# --------------------------------------------------------------------------
# Cache introspection
# --------------------------------------------------------------------------


class KindCount(AnalyticsBaseModel):
    """Entry count for one calculation kind."""

    kind: str
    count: int


class CacheStatistics(AnalyticsBaseModel):
    """Point-in-time cache statistics."""

    total_entries: int
    expired_entries: int
    memory_bytes: int
    memory_usage: str
    hit_rate: float
    total_lookups: int
    top_kinds: List[KindCount] = Field(default_factory=list)


class CacheHealth(AnalyticsBaseModel):
    """Cache health verdict with its reasons."""

    status: CacheHealthStatus
    issues: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    checked_at: datetime


class CachePerformance(AnalyticsBaseModel):
    """Statistics and health together."""

    statistics: CacheStatistics
    health: CacheHealth
