# -*- coding: utf-8 -*-
"""Location: ./tests/unit/pmo_analytics/conftest.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Shared fixtures for the analytics engine unit tests.
"""

# Standard
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

# Third-Party
import httpx
import pytest

# First-Party
from pmo_analytics.config import Settings
from pmo_analytics.models import ParameterSet, ProjectAggregate, TimeLogEntry, UserRef, WorkItem, WorkItemStatus
from pmo_analytics.services.extractor_service import ExtractorError

NOW = datetime(2025, 6, 2, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable clock returning seconds, usable as a ``CacheService`` clock."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDateTimeClock:
    """Controllable UTC datetime clock for the orchestrator."""

    def __init__(self, start: datetime = NOW):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


class FakeExtractor:
    """In-memory stand-in for ``MetricsExtractor``."""

    def __init__(self):
        self.aggregates: Dict[str, ProjectAggregate] = {}
        self.failures: Dict[str, Exception] = {}
        self.calls: List[str] = []

    async def get_project_aggregate(self, project_id, since=None, until=None, abort=None):
        self.calls.append(project_id)
        if project_id in self.failures:
            raise self.failures[project_id]
        if project_id not in self.aggregates:
            raise ExtractorError(f"Upstream returned 404 for /api/v3/projects/{project_id}", status=404)
        return self.aggregates[project_id].model_copy(deep=True)


class FakeParameterStore:
    """In-memory parameter store returning configured overrides."""

    def __init__(self):
        self.overrides: Dict[str, Dict[str, Any]] = {}
        self.calls: List[str] = []

    async def get_parameters(self, project_id, abort=None):
        self.calls.append(project_id)
        return ParameterSet(**self.overrides.get(project_id, {}))


@pytest.fixture
def test_settings() -> Settings:
    """Settings isolated from the environment, with instant retries."""
    return Settings(
        _env_file=None,
        upstream_base_url="https://op.test",
        upstream_max_retries=2,
        upstream_base_backoff=0.0,
        upstream_max_delay=0.0,
        upstream_jitter_max=0.0,
        upstream_page_size=2,
        upstream_max_pages=5,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def datetime_clock() -> FakeDateTimeClock:
    return FakeDateTimeClock()


@pytest.fixture
def fake_extractor() -> FakeExtractor:
    return FakeExtractor()


@pytest.fixture
def fake_parameter_store() -> FakeParameterStore:
    return FakeParameterStore()


@pytest.fixture
def make_item() -> Callable[..., WorkItem]:
    """Factory for work items with sensible defaults."""

    def _make(item_id: str, closed: bool = False, **fields: Any) -> WorkItem:
        return WorkItem(id=item_id, subject=fields.pop("subject", f"Task {item_id}"), status=WorkItemStatus(name="Closed" if closed else "In progress", is_closed=closed), **fields)

    return _make


@pytest.fixture
def make_log() -> Callable[..., TimeLogEntry]:
    """Factory for time log entries."""
    counter = {"next": 1}

    def _make(hours: float, spent_on: Optional[date] = None, user_id: str = "u1", user_name: str = "Ada", **fields: Any) -> TimeLogEntry:
        entry = TimeLogEntry(id=str(counter["next"]), hours=hours, spent_on=spent_on or NOW.date(), user=UserRef(id=user_id, name=user_name), **fields)
        counter["next"] += 1
        return entry

    return _make


@pytest.fixture
def make_aggregate() -> Callable[..., ProjectAggregate]:
    """Factory building an aggregate with totals derived the way the extractor derives them."""

    def _make(project_id: str = "1", work_items: Optional[List[WorkItem]] = None, time_logs: Optional[List[TimeLogEntry]] = None, **fields: Any) -> ProjectAggregate:
        items = work_items or []
        logs = time_logs or []
        weights = [(item.estimated_hours or 1.0, item.percentage_done) for item in items]
        total_weight = sum(weight for weight, _ in weights)
        completed = sum(1 for item in items if item.status.is_closed)
        defaults: Dict[str, Any] = {
            "name": f"Project {project_id}",
            "total_estimated_hours": sum(item.estimated_hours for item in items),
            "total_spent_hours": sum(log.hours for log in logs),
            "overall_percent_complete": round(sum(w * p for w, p in weights) / total_weight, 2) if total_weight else 0.0,
            "active_work_items": len(items) - completed,
            "completed_work_items": completed,
            "total_work_items": len(items),
        }
        defaults.update(fields)
        return ProjectAggregate(id=project_id, work_items=items, time_logs=logs, **defaults)

    return _make


@pytest.fixture
def mock_upstream() -> Callable[[Callable[[httpx.Request], httpx.Response]], Dict[str, Any]]:
    """Build ``client_args`` routing every request to a handler."""

    def _build(handler: Callable[[httpx.Request], httpx.Response]) -> Dict[str, Any]:
        return {"transport": httpx.MockTransport(handler), "base_url": "https://op.test"}

    return _build
