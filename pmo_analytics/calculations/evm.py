# -*- coding: utf-8 -*-
"""Location: ./pmo_analytics/calculations/evm.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Earned Value Management.

Computes PMBOK earned value figures for one project as of a report date:

- BAC: estimated hours times the standard labor rate, summed over work items
- PV: each dated item's budget, linearly interpolated over its start/due window
- EV: each item's share of BAC (by estimate) times its completion
- AC: logged hours times the user's rate (override or standard rate)

Indices fall back to identity values (CPI = SPI = 1) when their denominator
is zero. All estimate-at-completion variants are returned; the parameter
set's forecast method selects the authoritative one. Rounding happens only
when the result record is built.
"""

# Standard
from datetime import date, datetime
from typing import List, Optional

# First-Party
from pmo_analytics.models import (
    CostStatus,
    EvmResult,
    ForecastMethod,
    ForecastVariants,
    HealthStatus,
    ParameterSet,
    ProjectAggregate,
    ScheduleStatus,
    utc_now,
    WorkItem,
)

MIN_INDEX = 0.01
MIN_REGRESSION_DIVISOR = 0.1
RED_HEALTH_FACTOR = 0.85
AHEAD_OF_SCHEDULE_SPI = 1.05
BEHIND_SCHEDULE_FACTOR = 0.9


def _money(value: float) -> float:
    return round(value, 2)


def _index(value: float) -> float:
    return round(value, 3)


def planned_value_share(item: WorkItem, budget: float, report_date: date) -> float:
    """Planned value of one work item as of ``report_date``.

    Args:
        item: Work item
        budget: The item's budget (estimated hours times labor rate)
        report_date: Status date

    Returns:
        float: Interpolated budget share; 0 for items without both dates

    Examples:
        >>> item = WorkItem(id="1", start_date=date(2025, 1, 1), due_date=date(2025, 1, 11))
        >>> planned_value_share(item, 1000.0, date(2025, 1, 6))
        500.0
        >>> planned_value_share(item, 1000.0, date(2024, 12, 1))
        0.0
        >>> planned_value_share(item, 1000.0, date(2025, 2, 1))
        1000.0
        >>> planned_value_share(WorkItem(id="2"), 1000.0, date(2025, 1, 6))
        0.0
    """
    if item.start_date is None or item.due_date is None:
        return 0.0
    window = (item.due_date - item.start_date).days
    elapsed = (report_date - item.start_date).days
    if window <= 0:
        return budget if elapsed >= 0 else 0.0
    return budget * min(max(elapsed / window, 0.0), 1.0)


def regression_adjustment(performance: float, parameters: ParameterSet) -> float:
    """Risk adjustment applied to the averaged performance index.

    Args:
        performance: Average of CPI and SPI
        parameters: Parameter set carrying the regression thresholds and factors

    Returns:
        float: Multiplier for the performance index

    Examples:
        >>> regression_adjustment(1.2, ParameterSet())
        1.05
        >>> regression_adjustment(0.7, ParameterSet())
        0.9
        >>> regression_adjustment(1.0, ParameterSet())
        1.0
    """
    if performance > parameters.regression_upper_threshold:
        return parameters.regression_optimism_factor
    if performance < parameters.regression_lower_threshold:
        return parameters.regression_pessimism_factor
    return 1.0


def forecast_variants(bac: float, ev: float, ac: float, cpi: float, spi: float, parameters: ParameterSet) -> ForecastVariants:
    """Compute every estimate-at-completion variant at full precision.

    Args:
        bac: Budget at completion
        ev: Earned value
        ac: Actual cost
        cpi: Cost performance index
        spi: Schedule performance index
        parameters: Parameter set with the regression settings

    Returns:
        ForecastVariants: Unrounded EAC variants
    """
    remaining = bac - ev
    safe_cpi = max(cpi, MIN_INDEX)
    safe_spi = max(spi, MIN_INDEX)
    combined = max(cpi * spi, MIN_INDEX)
    performance = (safe_cpi + safe_spi) / 2
    adjusted = max(performance * regression_adjustment(performance, parameters), MIN_REGRESSION_DIVISOR)
    return ForecastVariants(
        cpi_based=bac / safe_cpi,
        budget_rate=ac + remaining,
        spi_cpi_combined=ac + remaining / combined,
        ac_plus_remaining_over_cpi=ac + remaining / safe_cpi,
        custom_regression=bac / adjusted,
    )


def select_forecast(variants: ForecastVariants, method: str) -> float:
    """Pick the authoritative EAC for a forecast method.

    Args:
        variants: All forecast variants
        method: Forecast method value

    Returns:
        float: Selected estimate at completion
    """
    return {
        ForecastMethod.CPI.value: variants.cpi_based,
        ForecastMethod.SPI_CPI.value: variants.spi_cpi_combined,
        ForecastMethod.BUDGET_RATE.value: variants.budget_rate,
        ForecastMethod.AC_PLUS_REMAINING_OVER_CPI.value: variants.ac_plus_remaining_over_cpi,
        ForecastMethod.CUSTOM_REGRESSION.value: variants.custom_regression,
    }.get(method, variants.cpi_based)


def cost_status(cpi: float, threshold: float) -> CostStatus:
    """Classify the cost position.

    Examples:
        >>> cost_status(1.0, 0.95).value
        'Under Budget'
        >>> cost_status(0.95, 0.95).value
        'Over Budget'
        >>> cost_status(0.5, 0.95).value
        'Seriously Over Budget'
    """
    if cpi >= 1.0:
        return CostStatus.UNDER_BUDGET
    if cpi >= threshold:
        return CostStatus.OVER_BUDGET
    return CostStatus.SERIOUSLY_OVER_BUDGET


def schedule_status(spi: float, threshold: float) -> ScheduleStatus:
    """Classify the schedule position.

    Examples:
        >>> schedule_status(1.1, 0.95).value
        'Ahead'
        >>> schedule_status(1.0, 0.95).value
        'On Track'
        >>> schedule_status(0.9, 0.95).value
        'Behind'
        >>> schedule_status(0.5, 0.95).value
        'Seriously Behind'
    """
    if spi >= AHEAD_OF_SCHEDULE_SPI:
        return ScheduleStatus.AHEAD
    if spi >= threshold:
        return ScheduleStatus.ON_TRACK
    if spi >= threshold * BEHIND_SCHEDULE_FACTOR:
        return ScheduleStatus.BEHIND
    return ScheduleStatus.SERIOUSLY_BEHIND


def overall_health(cpi: float, spi: float, parameters: ParameterSet) -> HealthStatus:
    """Combine both indices into a traffic-light tier.

    Examples:
        >>> overall_health(1.0, 1.0, ParameterSet()).value
        'Green'
        >>> overall_health(0.5, 1.0, ParameterSet()).value
        'Yellow'
        >>> overall_health(0.5, 0.5, ParameterSet()).value
        'Red'
    """
    cost_threshold = parameters.cost_performance_threshold
    schedule_threshold = parameters.schedule_performance_threshold
    if cpi >= cost_threshold and spi >= schedule_threshold:
        return HealthStatus.GREEN
    if cpi < cost_threshold * RED_HEALTH_FACTOR and spi < schedule_threshold * RED_HEALTH_FACTOR:
        return HealthStatus.RED
    return HealthStatus.YELLOW


def confidence_score(aggregate: ProjectAggregate) -> float:
    """Score how much the figures can be trusted, from 0.5 up to 1.0.

    Args:
        aggregate: Project snapshot

    Returns:
        float: Confidence score
    """
    confidence = 0.5
    if aggregate.work_items:
        confidence += 0.1
    if len(aggregate.time_logs) > 10:
        confidence += 0.1
    if aggregate.total_estimated_hours > 0:
        confidence += 0.1
    if aggregate.overall_percent_complete > 25:
        confidence += 0.1
    if aggregate.overall_percent_complete > 50:
        confidence += 0.1
    return round(min(confidence, 1.0), 2)


def calculate_evm(
    aggregate: ProjectAggregate,
    parameters: ParameterSet,
    report_date: Optional[date] = None,
    calculation_date: Optional[datetime] = None,
) -> EvmResult:
    """Compute earned value figures for a project.

    Args:
        aggregate: Fresh project snapshot
        parameters: Resolved parameter set
        report_date: Status date (defaults to today, UTC)
        calculation_date: Timestamp recorded on the result (defaults to now, UTC)

    Returns:
        EvmResult: Rounded EVM figures with every forecast variant
    """
    calculated_at = calculation_date or utc_now()
    status_date = report_date or calculated_at.date()
    rate = parameters.standard_labor_rate
    warnings: List[str] = []

    bac = sum(item.estimated_hours * rate for item in aggregate.work_items)
    pv = sum(planned_value_share(item, item.estimated_hours * rate, status_date) for item in aggregate.work_items)

    total_estimate = sum(item.estimated_hours for item in aggregate.work_items)
    if total_estimate > 0:
        ev = sum(item.estimated_hours / total_estimate * bac * item.percentage_done / 100 for item in aggregate.work_items)
    else:
        ev = 0.0
        warnings.append("No estimated effort recorded; earned value is 0 and indices use identity values")

    ac = sum(log.hours * parameters.rate_for(log.user.id) for log in aggregate.time_logs)

    cpi = ev / ac if ac > 0 else 1.0
    spi = ev / pv if pv > 0 else 1.0

    undated = sum(1 for item in aggregate.work_items if item.start_date is None or item.due_date is None)
    if undated:
        warnings.append(f"{undated} work items lack start or due dates and contribute no planned value")

    variants = forecast_variants(bac, ev, ac, cpi, spi, parameters)
    method = parameters.forecast_method.value if isinstance(parameters.forecast_method, ForecastMethod) else str(parameters.forecast_method)
    eac = select_forecast(variants, method)
    etc = max(eac - ac, 0.0)
    vac = bac - eac
    remaining_budget = bac - ac
    tcpi = (bac - ev) / remaining_budget if remaining_budget > 0 else 1.0

    return EvmResult(
        project_id=aggregate.id,
        budget_at_completion=_money(bac),
        planned_value=_money(pv),
        earned_value=_money(ev),
        actual_cost=_money(ac),
        cost_performance_index=_index(cpi),
        schedule_performance_index=_index(spi),
        cost_variance=_money(ev - ac),
        schedule_variance=_money(ev - pv),
        estimate_at_completion=_money(eac),
        estimate_to_complete=_money(etc),
        variance_at_completion=_money(vac),
        to_complete_performance_index=_index(tcpi),
        forecast_variants=ForecastVariants(**{name: _money(value) for name, value in variants.model_dump().items()}),
        forecast_method_applied=method,
        cost_status=cost_status(cpi, parameters.cost_performance_threshold),
        schedule_status=schedule_status(spi, parameters.schedule_performance_threshold),
        overall_health=overall_health(cpi, spi, parameters),
        method=parameters.evm_method,
        percent_complete=round(aggregate.overall_percent_complete, 2),
        confidence=confidence_score(aggregate),
        report_date=status_date,
        calculation_date=calculated_at,
        data_incomplete=bool(aggregate.data_issues),
        warnings=warnings,
    )
