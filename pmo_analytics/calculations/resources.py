# -*- coding: utf-8 -*-
"""Location: ./pmo_analytics/calculations/resources.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Resource utilization.

Compares hours logged by each user inside a reporting window against the
working capacity of that window, across one or more projects.
"""

# Standard
from datetime import date, datetime
from typing import Dict, List, Optional, Sequence

# First-Party
from pmo_analytics.models import ParameterSet, ProjectAggregate, ProjectUtilization, ResourceUtilization, utc_now


def working_days(start: date, end: date, days_per_week: int) -> int:
    """Approximate working days in the inclusive window ``[start, end]``.

    Args:
        start: First day of the window
        end: Last day of the window
        days_per_week: Working days in a week

    Returns:
        int: Full weeks times ``days_per_week`` plus the remaining days, capped at ``days_per_week``

    Examples:
        >>> working_days(date(2025, 1, 1), date(2025, 1, 31), 5)
        23
        >>> working_days(date(2025, 1, 6), date(2025, 1, 10), 5)
        5
        >>> working_days(date(2025, 1, 1), date(2025, 1, 1), 5)
        1
        >>> working_days(date(2025, 1, 10), date(2025, 1, 1), 5)
        0
    """
    if end < start:
        return 0
    full_weeks, rest = divmod((end - start).days + 1, 7)
    return full_weeks * days_per_week + min(rest, days_per_week)


def calculate_resource_utilization(
    aggregates: Sequence[ProjectAggregate],
    parameters: ParameterSet,
    start: date,
    end: date,
    calculation_date: Optional[datetime] = None,
) -> List[ResourceUtilization]:
    """Per-user utilization across projects for the window ``[start, end]``.

    Args:
        aggregates: Project snapshots to include
        parameters: Parameter set providing the working calendar and max allocation
        start: First day of the window
        end: Last day of the window
        calculation_date: Timestamp recorded on each record (defaults to now, UTC)

    Returns:
        List[ResourceUtilization]: One record per user, highest utilization first
    """
    calculated_at = calculation_date or utc_now()
    capacity = working_days(start, end, parameters.working_days_per_week) * parameters.working_hours_per_day

    names: Dict[str, str] = {}
    worked: Dict[str, Dict[str, float]] = {}
    project_names = {aggregate.id: aggregate.name for aggregate in aggregates}
    for aggregate in aggregates:
        for log in aggregate.time_logs:
            if log.spent_on is None or not start <= log.spent_on <= end:
                continue
            names.setdefault(log.user.id, log.user.name)
            per_project = worked.setdefault(log.user.id, {})
            per_project[aggregate.id] = per_project.get(aggregate.id, 0.0) + log.hours

    results: List[ResourceUtilization] = []
    for user_id, per_project in worked.items():
        total = sum(per_project.values())
        rate = total / capacity if capacity > 0 else 0.0
        projects = [
            ProjectUtilization(
                project_id=project_id,
                project_name=project_names.get(project_id, ""),
                allocated_hours=round(capacity * hours / total, 2) if total > 0 else 0.0,
                worked_hours=round(hours, 2),
                utilization_rate=round(hours / capacity, 3) if capacity > 0 else 0.0,
            )
            for project_id, hours in per_project.items()
        ]
        results.append(
            ResourceUtilization(
                user_id=user_id,
                user_name=names[user_id],
                total_allocated_hours=round(capacity, 2),
                total_worked_hours=round(total, 2),
                utilization_rate=round(rate, 3),
                overallocation=rate > parameters.max_allocation,
                available_capacity=round(max(capacity - total, 0.0), 2),
                projects=projects,
                period_start=start,
                period_end=end,
                calculation_date=calculated_at,
            )
        )
    results.sort(key=lambda record: record.utilization_rate, reverse=True)
    return results
