# -*- coding: utf-8 -*-
"""Location: ./pmo_analytics/calculations/cpm.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Critical Path Method.

Builds one node per work item and wires predecessor/successor edges from the
items' dependency lists. Durations are whole days: the calendar days between
start and due date when both exist, else the estimate divided by eight hours
and rounded up, else one day.

Cycles are detected up front with Kahn's algorithm and reported through
``has_cycle``/``cycle_members`` and a warning. The forward and backward
passes are memoized depth-first traversals written iteratively; a node met
again while still being resolved is taken at its provisional value, which in
a cyclic graph under-estimates rather than loops.

Examples:
    >>> from pmo_analytics.models import ProjectAggregate, WorkItem
    >>> aggregate = ProjectAggregate(id="1", work_items=[
    ...     WorkItem(id="A", estimated_hours=24),
    ...     WorkItem(id="B", estimated_hours=40, predecessors=["A"]),
    ... ])
    >>> result = calculate_critical_path(aggregate)
    >>> result.critical_path, result.project_duration
    (['A', 'B'], 8)
"""

# Standard
from collections import deque
from datetime import datetime
import math
from typing import Dict, Iterable, List, Optional, Set

# First-Party
from pmo_analytics.models import CriticalPathNode, CriticalPathResult, ProjectAggregate, RiskLevel, utc_now, WorkItem
from pmo_analytics.utils.durations import HOURS_PER_DAY

BEHIND_COMPLETION = 50.0
HIGH_FLOAT_DAYS = 10


def work_item_duration(item: WorkItem) -> int:
    """Duration of a work item in whole days (never less than one).

    Args:
        item: Work item

    Returns:
        int: Duration in days

    Examples:
        >>> from datetime import date
        >>> work_item_duration(WorkItem(id="1", start_date=date(2025, 1, 1), due_date=date(2025, 1, 4)))
        3
        >>> work_item_duration(WorkItem(id="1", start_date=date(2025, 1, 1), due_date=date(2025, 1, 1)))
        1
        >>> work_item_duration(WorkItem(id="1", estimated_hours=12))
        2
        >>> work_item_duration(WorkItem(id="1"))
        1
    """
    if item.start_date is not None and item.due_date is not None:
        return max(1, (item.due_date - item.start_date).days)
    if item.estimated_hours > 0:
        return max(1, math.ceil(item.estimated_hours / HOURS_PER_DAY))
    return 1


def find_cycle_members(order: List[str], successors: Dict[str, List[str]], predecessors: Dict[str, List[str]]) -> List[str]:
    """Return the nodes that sit on a dependency cycle.

    Kahn's algorithm removes every node that can be scheduled; what remains
    is cycles plus their downstream tails. Trimming nodes without remaining
    successors strips the tails.

    Args:
        order: Node ids in input order
        successors: Adjacency list of successors
        predecessors: Adjacency list of predecessors

    Returns:
        List[str]: Cycle members in input order; empty for an acyclic graph

    Examples:
        >>> find_cycle_members(["a", "b", "c"], {"a": ["b"], "b": ["a", "c"], "c": []}, {"a": ["b"], "b": ["a"], "c": ["b"]})
        ['a', 'b']
        >>> find_cycle_members(["a", "b"], {"a": ["b"], "b": []}, {"a": [], "b": ["a"]})
        []
    """
    indegree = {node: len(predecessors[node]) for node in order}
    queue = deque(node for node in order if indegree[node] == 0)
    while queue:
        node = queue.popleft()
        for succ in successors[node]:
            indegree[succ] -= 1
            if indegree[succ] == 0:
                queue.append(succ)
    remaining: Set[str] = {node for node in order if indegree[node] > 0}
    if not remaining:
        return []

    outdegree = {node: sum(1 for succ in successors[node] if succ in remaining) for node in remaining}
    queue = deque(node for node in order if node in remaining and outdegree[node] == 0)
    while queue:
        node = queue.popleft()
        remaining.discard(node)
        for pred in predecessors[node]:
            if pred in remaining:
                outdegree[pred] -= 1
                if outdegree[pred] == 0:
                    queue.append(pred)
    return [node for node in order if node in remaining]


def dependency_order(order: Iterable[str], dependencies: Dict[str, List[str]]) -> List[str]:
    """Post-order of a memoized depth-first traversal.

    Each node appears after all of its dependencies, except dependencies that
    were still in progress when revisited (only possible on a cycle).

    Args:
        order: Roots, visited in this order
        dependencies: Node id to the ids it depends on

    Returns:
        List[str]: Every node exactly once

    Examples:
        >>> dependency_order(["c", "b", "a"], {"a": [], "b": ["a"], "c": ["b"]})
        ['a', 'b', 'c']
        >>> dependency_order(["x", "y"], {"x": ["y"], "y": ["x"]})
        ['y', 'x']
    """
    visited: Set[str] = set()
    result: List[str] = []
    for root in order:
        if root in visited:
            continue
        visited.add(root)
        stack = [(root, iter(dependencies[root]))]
        while stack:
            node, pending = stack[-1]
            for dep in pending:
                if dep not in visited:
                    visited.add(dep)
                    stack.append((dep, iter(dependencies[dep])))
                    break
            else:
                stack.pop()
                result.append(node)
    return result


def _assess_risk(critical: List[CriticalPathNode]) -> RiskLevel:
    if not critical:
        return RiskLevel.LOW
    behind = sum(1 for node in critical if node.completion < BEHIND_COMPLETION)
    average = sum(node.completion for node in critical) / len(critical)
    if behind == 0 and average > 75:
        return RiskLevel.LOW
    if behind > 2 or average <= 50:
        return RiskLevel.HIGH
    return RiskLevel.MEDIUM


def calculate_critical_path(aggregate: ProjectAggregate, calculation_date: Optional[datetime] = None) -> CriticalPathResult:
    """Run CPM over a project's work items.

    Args:
        aggregate: Fresh project snapshot with dependency lists on its work items
        calculation_date: Timestamp recorded on the result (defaults to now, UTC)

    Returns:
        CriticalPathResult: Node times, critical path, risk and warnings
    """
    calculated_at = calculation_date or utc_now()
    warnings: List[str] = []
    skipped_edges = 0

    items: Dict[str, WorkItem] = {}
    for item in aggregate.work_items:
        if item.id in items:
            warnings.append(f"Duplicate work item {item.id} ignored")
            continue
        items[item.id] = item
    order = list(items)
    if not order:
        return CriticalPathResult(project_id=aggregate.id, calculation_date=calculated_at, data_incomplete=bool(aggregate.data_issues))

    position = {node: index for index, node in enumerate(order)}
    duration = {node: work_item_duration(item) for node, item in items.items()}
    predecessors: Dict[str, List[str]] = {node: [] for node in order}
    successors: Dict[str, List[str]] = {node: [] for node in order}

    def add_edge(source: str, target: str) -> None:
        nonlocal skipped_edges
        if source == target:
            warnings.append(f"Work item {source} depends on itself; dependency ignored")
            skipped_edges += 1
            return
        missing = [ref for ref in (source, target) if ref not in items]
        if missing:
            warnings.append(f"Dependency {source} -> {target} references unknown work item {missing[0]}; dependency ignored")
            skipped_edges += 1
            return
        if target not in successors[source]:
            successors[source].append(target)
            predecessors[target].append(source)

    for node, item in items.items():
        for pred in item.predecessors:
            add_edge(pred, node)
        for succ in item.successors:
            add_edge(node, succ)

    cycle_members = find_cycle_members(order, successors, predecessors)
    if cycle_members:
        warnings.append(f"Cyclic dependency between work items {', '.join(cycle_members)}; schedule times are under-estimated")

    earliest_start: Dict[str, int] = {}
    earliest_finish: Dict[str, int] = {}
    for node in dependency_order(order, predecessors):
        start = max((earliest_finish.get(pred, duration[pred]) for pred in predecessors[node]), default=0)
        earliest_start[node] = start
        earliest_finish[node] = start + duration[node]

    project_finish = max(earliest_finish.values())
    latest_start: Dict[str, int] = {}
    latest_finish: Dict[str, int] = {}
    for node in dependency_order(order, successors):
        if successors[node]:
            finish = min(latest_start.get(succ, project_finish - duration[succ]) for succ in successors[node])
        else:
            finish = project_finish
        latest_finish[node] = finish
        latest_start[node] = finish - duration[node]

    nodes: Dict[str, CriticalPathNode] = {}
    for node in order:
        if successors[node]:
            free_float = min(earliest_start[succ] for succ in successors[node]) - earliest_finish[node]
        else:
            free_float = project_finish - earliest_finish[node]
        total_float = latest_start[node] - earliest_start[node]
        nodes[node] = CriticalPathNode(
            id=node,
            subject=items[node].subject,
            duration=duration[node],
            earliest_start=earliest_start[node],
            earliest_finish=earliest_finish[node],
            latest_start=latest_start[node],
            latest_finish=latest_finish[node],
            total_float=total_float,
            free_float=free_float,
            is_critical=total_float == 0,
            completion=items[node].percentage_done,
            predecessors=list(predecessors[node]),
            successors=list(successors[node]),
        )

    critical_path = sorted((node for node in order if nodes[node].is_critical), key=lambda n: (earliest_start[n], earliest_finish[n], position[n]))
    critical_nodes = [nodes[node] for node in critical_path]

    recommendations: List[str] = []
    behind = sum(1 for node in critical_nodes if node.completion < BEHIND_COMPLETION)
    if behind:
        recommendations.append(f"Focus on {behind} critical path tasks that are behind schedule")
    high_float = sum(1 for node in nodes.values() if node.total_float > HIGH_FLOAT_DAYS)
    if high_float:
        recommendations.append(f"Consider reallocating resources from {high_float} tasks with more than {HIGH_FLOAT_DAYS} days of float")
    if cycle_members:
        recommendations.append(f"Break the dependency cycle between {len(cycle_members)} work items to get a reliable schedule")

    return CriticalPathResult(
        project_id=aggregate.id,
        nodes=nodes,
        critical_path=critical_path,
        project_duration=project_finish,
        critical_path_length=len(critical_path),
        minimum_float=min(node.total_float for node in nodes.values()),
        schedule_risk=_assess_risk(critical_nodes),
        recommendations=recommendations,
        has_cycle=bool(cycle_members),
        cycle_members=cycle_members,
        data_incomplete=skipped_edges > 0 or bool(aggregate.data_issues),
        warnings=warnings,
        calculation_date=calculated_at,
    )
