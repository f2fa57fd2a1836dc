# -*- coding: utf-8 -*-
"""Location: ./tests/unit/pmo_analytics/calculations/test_cpm.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Unit tests for the critical path calculations.
"""

# Standard
from datetime import date, datetime, timezone

# Third-Party
import pytest

# First-Party
from pmo_analytics.calculations.cpm import calculate_critical_path, dependency_order, find_cycle_members

NOW = datetime(2025, 6, 2, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def diamond(make_item, make_aggregate):
    """A feeds B and C, both feed D; the B branch is the long one."""
    return make_aggregate(
        work_items=[
            make_item("A", estimated_hours=16),
            make_item("B", estimated_hours=24, predecessors=["A"]),
            make_item("C", estimated_hours=8, predecessors=["A"]),
            make_item("D", estimated_hours=16, predecessors=["B", "C"]),
        ]
    )


def test_two_dated_items_in_sequence(make_item, make_aggregate):
    aggregate = make_aggregate(
        work_items=[
            make_item("A", start_date=date(2025, 6, 1), due_date=date(2025, 6, 4)),
            make_item("B", start_date=date(2025, 6, 4), due_date=date(2025, 6, 9), predecessors=["A"]),
        ]
    )

    result = calculate_critical_path(aggregate, calculation_date=NOW)

    assert result.critical_path == ["A", "B"]
    assert result.project_duration == 8
    assert result.nodes["A"].duration == 3
    assert result.nodes["B"].duration == 5
    assert result.nodes["B"].earliest_start == 3
    assert all(node.total_float == 0 for node in result.nodes.values())
    assert not result.has_cycle
    assert not result.data_incomplete


def test_diamond_times_and_floats(diamond):
    result = calculate_critical_path(diamond, calculation_date=NOW)
    nodes = result.nodes

    assert result.critical_path == ["A", "B", "D"]
    assert result.project_duration == 7
    assert result.critical_path_length == 3
    assert (nodes["C"].earliest_start, nodes["C"].earliest_finish) == (2, 3)
    assert (nodes["C"].latest_start, nodes["C"].latest_finish) == (4, 5)
    assert nodes["C"].total_float == 2
    assert nodes["C"].free_float == 2
    assert not nodes["C"].is_critical
    assert nodes["A"].successors == ["B", "C"]
    assert nodes["D"].predecessors == ["B", "C"]
    assert result.minimum_float == 0


def test_floats_are_never_negative_without_cycles(diamond):
    result = calculate_critical_path(diamond, calculation_date=NOW)
    for node in result.nodes.values():
        assert node.total_float >= 0
        assert node.free_float >= 0
        assert node.earliest_finish == node.earliest_start + node.duration
        assert node.latest_finish == node.latest_start + node.duration


def test_result_is_deterministic(diamond):
    first = calculate_critical_path(diamond, calculation_date=NOW)
    second = calculate_critical_path(diamond, calculation_date=NOW)
    assert first.model_dump() == second.model_dump()


def test_parallel_critical_tasks_keep_input_order(make_item, make_aggregate):
    aggregate = make_aggregate(work_items=[make_item("Y", estimated_hours=16), make_item("X", estimated_hours=16)])
    assert calculate_critical_path(aggregate, calculation_date=NOW).critical_path == ["Y", "X"]


def test_successor_lists_are_merged_with_predecessor_lists(make_item, make_aggregate):
    aggregate = make_aggregate(work_items=[make_item("A", successors=["B"]), make_item("B", predecessors=["A"])])

    result = calculate_critical_path(aggregate, calculation_date=NOW)

    assert result.nodes["A"].successors == ["B"]
    assert result.nodes["B"].predecessors == ["A"]
    assert result.project_duration == 2


def test_cycle_is_reported_and_computation_terminates(make_item, make_aggregate):
    aggregate = make_aggregate(
        work_items=[
            make_item("A", predecessors=["B"]),
            make_item("B", predecessors=["A"]),
            make_item("C", predecessors=["B"]),
        ]
    )

    result = calculate_critical_path(aggregate, calculation_date=NOW)

    assert result.has_cycle
    assert result.cycle_members == ["A", "B"]
    assert any("Cyclic dependency" in warning for warning in result.warnings)
    assert any("Break the dependency cycle" in rec for rec in result.recommendations)
    assert set(result.nodes) == {"A", "B", "C"}


def test_unknown_and_self_references_are_skipped(make_item, make_aggregate):
    aggregate = make_aggregate(work_items=[make_item("A", predecessors=["A"]), make_item("B", predecessors=["Z"])])

    result = calculate_critical_path(aggregate, calculation_date=NOW)

    assert result.data_incomplete
    assert len(result.warnings) == 2
    assert result.nodes["B"].predecessors == []
    assert not result.has_cycle


def test_duplicate_work_items_are_ignored(make_item, make_aggregate):
    aggregate = make_aggregate(work_items=[make_item("A", estimated_hours=8), make_item("A", estimated_hours=80)])

    result = calculate_critical_path(aggregate, calculation_date=NOW)

    assert list(result.nodes) == ["A"]
    assert result.nodes["A"].duration == 1
    assert "Duplicate work item A ignored" in result.warnings


def test_empty_project_yields_empty_result(make_aggregate):
    result = calculate_critical_path(make_aggregate(), calculation_date=NOW)

    assert result.nodes == {}
    assert result.critical_path == []
    assert result.project_duration == 0
    assert result.schedule_risk == "Low"


@pytest.mark.parametrize("done,risk", [(0, "High"), (60, "Medium"), (100, "Low")])
def test_schedule_risk_tracks_critical_completion(make_item, make_aggregate, done, risk):
    aggregate = make_aggregate(work_items=[make_item("A", percentage_done=done), make_item("B", percentage_done=done, predecessors=["A"])])
    assert calculate_critical_path(aggregate, calculation_date=NOW).schedule_risk == risk


def test_recommendations(make_item, make_aggregate):
    aggregate = make_aggregate(work_items=[make_item("Long", estimated_hours=96, percentage_done=20), make_item("Short", estimated_hours=8, percentage_done=90)])

    result = calculate_critical_path(aggregate, calculation_date=NOW)

    assert result.recommendations == [
        "Focus on 1 critical path tasks that are behind schedule",
        "Consider reallocating resources from 1 tasks with more than 10 days of float",
    ]


def test_find_cycle_members_trims_upstream_and_downstream_tails():
    order = ["in", "a", "b", "out"]
    successors = {"in": ["a"], "a": ["b"], "b": ["a", "out"], "out": []}
    predecessors = {"in": [], "a": ["in", "b"], "b": ["a"], "out": ["b"]}
    assert find_cycle_members(order, successors, predecessors) == ["a", "b"]


def test_dependency_order_handles_deep_chains():
    size = 5000
    dependencies = {str(i): [str(i - 1)] if i else [] for i in range(size)}
    assert dependency_order([str(size - 1)], dependencies) == [str(i) for i in range(size)]
