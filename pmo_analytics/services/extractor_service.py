# -*- coding: utf-8 -*-
"""Location: ./pmo_analytics/services/extractor_service.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Metrics Extractor Service.

Reads projects, work packages, relations, time entries and budgets from an
OpenProject-compatible API v3 (HAL+JSON, Basic auth ``apikey:<token>``) and
reduces them into a :class:`~pmo_analytics.models.ProjectAggregate`.

Upstream records are untrusted. Missing values fall back to documented
defaults (no completion is 0 %, no estimate is 0 hours, no status is an open
"Unknown" status) and anything that had to be dropped or guessed is listed in
``ProjectAggregate.data_issues``. Aggregates are rebuilt on every call and
never cached.

Every request goes through :class:`~pmo_analytics.utils.retry_manager.ResilientHttpClient`
and accepts an ``abort`` event that cancels in-flight requests.
"""

# Standard
import asyncio
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Tuple

# Third-Party
import httpx
import orjson

# First-Party
from pmo_analytics.config import Settings, settings
from pmo_analytics.models import ActivityRef, BudgetRecord, ProjectAggregate, TimeLogEntry, UserRef, utc_now, WorkItem, WorkItemStatus
from pmo_analytics.services.logging_service import LoggingService
from pmo_analytics.utils.durations import href_id, parse_date, parse_duration_hours
from pmo_analytics.utils.retry_manager import ResilientHttpClient

logging_service = LoggingService()
logger = logging_service.get_logger(__name__)

API_PREFIX = "/api/v3"
RELATION_CHUNK_SIZE = 100
# relation type -> True when the "from" side is the predecessor
DEPENDENCY_RELATIONS = {"precedes": True, "blocks": True, "follows": False, "blocked": False}


class ExtractorError(Exception):
    """Raised when the project-data source cannot be read.

    Examples:
        >>> error = ExtractorError("Project not found", status=404)
        >>> error.status
        404
        >>> str(error)
        'Project not found'
    """

    def __init__(self, message: str, status: Optional[int] = None):
        """Initialize the error.

        Args:
            message: Human-readable description
            status: HTTP status of the failing response, if any
        """
        super().__init__(message)
        self.status = status


def _links(record: Dict[str, Any]) -> Dict[str, Any]:
    links = record.get("_links")
    return links if isinstance(links, dict) else {}


def _embedded(record: Dict[str, Any]) -> Dict[str, Any]:
    embedded = record.get("_embedded")
    return embedded if isinstance(embedded, dict) else {}


def _link(record: Dict[str, Any], name: str) -> Dict[str, Any]:
    link = _links(record).get(name)
    return link if isinstance(link, dict) else {}


def _text(value: Any) -> str:
    """Plain text of a scalar or formattable (``{"raw": ...}``) value.

    Examples:
        >>> _text({"format": "markdown", "raw": "hello"})
        'hello'
        >>> _text(None)
        ''
        >>> _text(12)
        '12'
    """
    if isinstance(value, dict):
        value = value.get("raw")
    return "" if value is None else str(value)


def _elements(payload: Any) -> List[Dict[str, Any]]:
    if not isinstance(payload, dict):
        return []
    elements = _embedded(payload).get("elements")
    return [element for element in elements if isinstance(element, dict)] if isinstance(elements, list) else []


def _filters(*clauses: Dict[str, Any]) -> str:
    return orjson.dumps(list(clauses)).decode()


class MetricsExtractor:
    """Read and normalize project data from the upstream API."""

    def __init__(self, config: Optional[Settings] = None, client: Optional[ResilientHttpClient] = None):
        """Initialize the extractor.

        Args:
            config: Settings with upstream URL, credentials, paging and retry policy
            client: Pre-built HTTP client (tests inject one with a mock transport)

        Raises:
            ValueError: If no client is given and the base URL is missing or not HTTPS
        """
        self._settings = config or settings
        self._owns_client = client is None
        self.client = client or self._build_client()

    def _build_client(self) -> ResilientHttpClient:
        base_url = self._settings.upstream_base_url
        if not base_url:
            raise ValueError("UPSTREAM_BASE_URL is not configured")
        if not base_url.startswith("https://") and not (self._settings.allow_insecure_http and base_url.startswith("http://")):
            raise ValueError(f"Refusing non-HTTPS upstream URL {base_url}; set ALLOW_INSECURE_HTTP to override")
        return ResilientHttpClient(
            max_retries=self._settings.upstream_max_retries,
            base_backoff=self._settings.upstream_base_backoff,
            max_delay=self._settings.upstream_max_delay,
            jitter_max=self._settings.upstream_jitter_max,
            retry_on_status=self._settings.upstream_retry_on_status,
            client_args={
                "base_url": base_url,
                "auth": httpx.BasicAuth("apikey", self._settings.upstream_api_token.get_secret_value()),
                "timeout": self._settings.upstream_timeout,
                "headers": {"Accept": "application/hal+json"},
            },
        )

    async def __aenter__(self) -> "MetricsExtractor":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the HTTP client if this extractor created it."""
        if self._owns_client:
            await self.client.aclose()

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None, abort: Optional[asyncio.Event] = None) -> Dict[str, Any]:
        try:
            response = await self.client.get(path, abort=abort, params=params)
        except httpx.HTTPError as e:
            raise ExtractorError(f"Upstream request to {path} failed: {e}") from e
        if response.status_code >= 400:
            raise ExtractorError(f"Upstream returned {response.status_code} for {path}", status=response.status_code)
        try:
            payload = orjson.loads(response.content)
        except orjson.JSONDecodeError as e:
            raise ExtractorError(f"Upstream returned invalid JSON for {path}", status=response.status_code) from e
        if not isinstance(payload, dict):
            raise ExtractorError(f"Upstream returned an unexpected payload for {path}", status=response.status_code)
        return payload

    async def _paginate(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        abort: Optional[asyncio.Event] = None,
        issues: Optional[List[str]] = None,
    ) -> List[Dict[str, Any]]:
        page_size = self._settings.upstream_page_size
        collected: List[Dict[str, Any]] = []
        for page in range(1, self._settings.upstream_max_pages + 1):
            payload = await self._get_json(path, {**(params or {}), "offset": page, "pageSize": page_size}, abort)
            elements = _elements(payload)
            collected.extend(elements)
            total = payload.get("total")
            if len(elements) < page_size or (isinstance(total, int) and len(collected) >= total):
                return collected
        message = f"{path} truncated after {self._settings.upstream_max_pages} pages ({len(collected)} records)"
        logger.warning(message)
        if issues is not None:
            issues.append(message)
        return collected

    # ------------------------------------------------------------------
    # Raw reads
    # ------------------------------------------------------------------

    async def fetch_project(self, project_id: str, abort: Optional[asyncio.Event] = None) -> Dict[str, Any]:
        """Fetch the raw project resource.

        Args:
            project_id: Project id or identifier
            abort: Optional abort event

        Returns:
            Dict[str, Any]: HAL project resource
        """
        return await self._get_json(f"{API_PREFIX}/projects/{project_id}", abort=abort)

    async def fetch_project_schema(self, project_id: str, abort: Optional[asyncio.Event] = None) -> Dict[str, Any]:
        """Fetch the project schema, which names the project's custom fields.

        Args:
            project_id: Project id or identifier
            abort: Optional abort event

        Returns:
            Dict[str, Any]: HAL schema resource
        """
        return await self._get_json(f"{API_PREFIX}/projects/{project_id}/schema", abort=abort)

    async def list_work_items(self, project_id: str, abort: Optional[asyncio.Event] = None, issues: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        """List the raw work packages of a project, sorted by id.

        Args:
            project_id: Project id or identifier
            abort: Optional abort event
            issues: Collector for truncation notices

        Returns:
            List[Dict[str, Any]]: HAL work package resources
        """
        params = {"sortBy": orjson.dumps([["id", "asc"]]).decode()}
        return await self._paginate(f"{API_PREFIX}/projects/{project_id}/work_packages", params, abort, issues)

    async def list_relations(self, work_item_ids: Iterable[str], abort: Optional[asyncio.Event] = None, issues: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        """List raw relations involving the given work packages.

        Ids are queried in chunks so that the filter stays a reasonable size.

        Args:
            work_item_ids: Work package ids
            abort: Optional abort event
            issues: Collector for truncation notices

        Returns:
            List[Dict[str, Any]]: HAL relation resources, de-duplicated by id
        """
        ids = list(dict.fromkeys(work_item_ids))
        chunks = [ids[i : i + RELATION_CHUNK_SIZE] for i in range(0, len(ids), RELATION_CHUNK_SIZE)]
        pages = await asyncio.gather(
            *(self._paginate(f"{API_PREFIX}/relations", {"filters": _filters({"involved": {"operator": "=", "values": chunk}})}, abort, issues) for chunk in chunks)
        )
        seen: Dict[str, Dict[str, Any]] = {}
        for page in pages:
            for relation in page:
                seen.setdefault(str(relation.get("id", len(seen))), relation)
        return list(seen.values())

    async def list_time_logs(
        self,
        project_id: str,
        since: Optional[date] = None,
        until: Optional[date] = None,
        abort: Optional[asyncio.Event] = None,
        issues: Optional[List[str]] = None,
    ) -> List[Dict[str, Any]]:
        """List raw time entries of a project, optionally within a date range.

        Args:
            project_id: Project id
            since: First day to include
            until: Last day to include
            abort: Optional abort event
            issues: Collector for truncation notices

        Returns:
            List[Dict[str, Any]]: HAL time entry resources
        """
        clauses: List[Dict[str, Any]] = [{"project": {"operator": "=", "values": [str(project_id)]}}]
        if since or until:
            clauses.append({"spent_on": {"operator": "<>d", "values": [since.isoformat() if since else "", until.isoformat() if until else ""]}})
        params = {"filters": _filters(*clauses), "sortBy": orjson.dumps([["spent_on", "desc"]]).decode()}
        return await self._paginate(f"{API_PREFIX}/time_entries", params, abort, issues)

    async def list_budgets(self, project_id: str, abort: Optional[asyncio.Event] = None) -> List[Dict[str, Any]]:
        """List raw budgets. The budgets module is optional, so failures yield an empty list.

        Args:
            project_id: Project id or identifier
            abort: Optional abort event

        Returns:
            List[Dict[str, Any]]: HAL budget resources
        """
        try:
            return _elements(await self._get_json(f"{API_PREFIX}/projects/{project_id}/budgets", abort=abort))
        except ExtractorError as e:
            logger.warning(f"No budget data available for project {project_id}: {e}")
            return []

    # ------------------------------------------------------------------
    # Aggregate
    # ------------------------------------------------------------------

    async def get_project_aggregate(
        self,
        project_id: str,
        since: Optional[date] = None,
        until: Optional[date] = None,
        abort: Optional[asyncio.Event] = None,
    ) -> ProjectAggregate:
        """Fetch and normalize everything known about a project.

        The project, its work packages, time entries and budgets are fetched
        concurrently; relations follow once the work package ids are known.

        Args:
            project_id: Project id or identifier
            since: First day of time entries to include
            until: Last day of time entries to include
            abort: Optional abort event propagated to every request

        Returns:
            ProjectAggregate: Fresh normalized snapshot

        Raises:
            ExtractorError: If a required read fails after retries
            RequestAbortedError: If ``abort`` is set
        """
        issues: List[str] = []
        project, work_packages, time_entries, budgets = await asyncio.gather(
            self.fetch_project(project_id, abort),
            self.list_work_items(project_id, abort, issues),
            self.list_time_logs(project_id, since, until, abort, issues),
            self.list_budgets(project_id, abort),
        )
        ids = [str(wp["id"]) for wp in work_packages if wp.get("id") is not None]
        relations = await self.list_relations(ids, abort, issues) if ids else []
        aggregate = self.build_aggregate(project, work_packages, relations, time_entries, budgets, issues)
        logger.info(f"Extracted project {aggregate.id}: {aggregate.total_work_items} work items, {len(aggregate.time_logs)} time logs, {len(aggregate.data_issues)} data issues")
        return aggregate

    @classmethod
    def build_aggregate(
        cls,
        project: Dict[str, Any],
        work_packages: List[Dict[str, Any]],
        relations: List[Dict[str, Any]],
        time_entries: List[Dict[str, Any]],
        budgets: List[Dict[str, Any]],
        issues: Optional[List[str]] = None,
    ) -> ProjectAggregate:
        """Normalize raw upstream records into an aggregate. Performs no I/O.

        Args:
            project: HAL project resource
            work_packages: HAL work package resources
            relations: HAL relation resources
            time_entries: HAL time entry resources
            budgets: HAL budget resources
            issues: Data issues already collected while fetching

        Returns:
            ProjectAggregate: Normalized snapshot with derived totals
        """
        data_issues = list(issues or [])
        items: List[WorkItem] = []
        for raw in work_packages:
            item = cls.normalize_work_item(raw, data_issues)
            if item is not None:
                items.append(item)

        cls._apply_relations(items, relations, data_issues)

        logs: List[TimeLogEntry] = []
        for raw in time_entries:
            log = cls.normalize_time_log(raw, data_issues)
            if log is not None:
                logs.append(log)

        budget_records = [BudgetRecord(id=str(raw.get("id", "")), subject=_text(raw.get("subject"))) for raw in budgets]

        total_estimated = sum(item.estimated_hours for item in items)
        weights = [(item.estimated_hours or 1.0, item.percentage_done) for item in items]
        total_weight = sum(weight for weight, _ in weights)
        overall = sum(weight * pct for weight, pct in weights) / total_weight if total_weight > 0 else 0.0
        completed = sum(1 for item in items if item.status.is_closed)

        status = project.get("status")
        if not isinstance(status, str):
            status = _link(project, "status").get("title") or None

        return ProjectAggregate(
            id=str(project.get("id", "")),
            name=_text(project.get("name")),
            identifier=_text(project.get("identifier")),
            status=status,
            work_items=items,
            time_logs=logs,
            budgets=budget_records,
            total_estimated_hours=round(total_estimated, 2),
            total_spent_hours=round(sum(log.hours for log in logs), 2),
            overall_percent_complete=round(overall, 2),
            active_work_items=len(items) - completed,
            completed_work_items=completed,
            total_work_items=len(items),
            fetched_at=utc_now(),
            data_issues=data_issues,
        )

    @staticmethod
    def normalize_work_item(raw: Dict[str, Any], issues: List[str]) -> Optional[WorkItem]:
        """Normalize one HAL work package.

        Args:
            raw: HAL work package resource
            issues: Collector for data issues

        Returns:
            Optional[WorkItem]: The work item, or ``None`` when it has no id

        Examples:
            >>> issues = []
            >>> item = MetricsExtractor.normalize_work_item({"id": 5, "subject": "Build", "estimatedTime": "PT16H", "dueDate": "soon"}, issues)
            >>> item.estimated_hours, item.due_date, item.status.name
            (16.0, None, 'Unknown')
            >>> issues
            ["Work item 5 has malformed dueDate 'soon'"]
        """
        if raw.get("id") is None:
            issues.append(f"Skipped work item without id (subject {_text(raw.get('subject'))!r})")
            return None
        item_id = str(raw["id"])

        def hours(field: str) -> float:
            value = raw.get(field)
            parsed = parse_duration_hours(value)
            if parsed is None:
                if value is not None:
                    issues.append(f"Work item {item_id} has malformed {field} {value!r}")
                return 0.0
            return parsed

        def day(field: str) -> Optional[date]:
            value = raw.get(field)
            parsed = parse_date(value)
            if parsed is None and value not in (None, ""):
                issues.append(f"Work item {item_id} has malformed {field} {value!r}")
            return parsed

        start, due = day("startDate"), day("dueDate")
        if start is None and due is None and raw.get("date"):
            start = due = day("date")

        status_embedded = _embedded(raw).get("status")
        status_embedded = status_embedded if isinstance(status_embedded, dict) else {}
        status_link = _link(raw, "status")
        status = WorkItemStatus(
            id=href_id(status_link.get("href")) or (str(status_embedded["id"]) if status_embedded.get("id") is not None else None),
            name=status_embedded.get("name") or status_link.get("title") or "Unknown",
            is_closed=bool(status_embedded.get("isClosed", False)),
        )

        type_link = _link(raw, "type")
        type_embedded = _embedded(raw).get("type")
        type_name = type_link.get("title") or (type_embedded.get("name") if isinstance(type_embedded, dict) else None) or ""

        assignee_link = _link(raw, "assignee")
        assignee_id = href_id(assignee_link.get("href"))
        assignee = UserRef(id=assignee_id, name=assignee_link.get("title") or "Unknown") if assignee_id else None

        return WorkItem(
            id=item_id,
            subject=_text(raw.get("subject")),
            percentage_done=raw.get("percentageDone"),
            estimated_hours=hours("estimatedTime"),
            spent_hours=hours("spentTime"),
            start_date=start,
            due_date=due,
            status=status,
            type_name=type_name,
            assignee=assignee,
        )

    @staticmethod
    def normalize_time_log(raw: Dict[str, Any], issues: List[str]) -> Optional[TimeLogEntry]:
        """Normalize one HAL time entry.

        Args:
            raw: HAL time entry resource
            issues: Collector for data issues

        Returns:
            Optional[TimeLogEntry]: The entry, or ``None`` when its hours are unusable
        """
        entry_id = str(raw.get("id", ""))
        hours = parse_duration_hours(raw.get("hours"))
        if hours is None:
            issues.append(f"Skipped time entry {entry_id} with malformed hours {raw.get('hours')!r}")
            return None
        spent_on = parse_date(raw.get("spentOn"))
        if spent_on is None:
            issues.append(f"Time entry {entry_id} has malformed spentOn {raw.get('spentOn')!r}")

        user_link = _link(raw, "user")
        user = UserRef(id=href_id(user_link.get("href")) or "unknown", name=user_link.get("title") or "Unknown")
        activity_link = _link(raw, "activity")
        activity_id = href_id(activity_link.get("href"))
        return TimeLogEntry(
            id=entry_id,
            hours=hours,
            spent_on=spent_on,
            user=user,
            work_item_id=href_id(_link(raw, "workPackage").get("href")),
            activity=ActivityRef(id=activity_id, name=activity_link.get("title") or "") if activity_id else None,
            comment=_text(raw.get("comment")),
        )

    @staticmethod
    def relation_edge(raw: Dict[str, Any]) -> Optional[Tuple[str, str]]:
        """Translate a relation into a ``(predecessor, successor)`` pair.

        Args:
            raw: HAL relation resource

        Returns:
            Optional[Tuple[str, str]]: The dependency edge, or ``None`` for non-scheduling relations

        Examples:
            >>> rel = {"type": "follows", "_links": {"from": {"href": "/api/v3/work_packages/2"}, "to": {"href": "/api/v3/work_packages/1"}}}
            >>> MetricsExtractor.relation_edge(rel)
            ('1', '2')
            >>> MetricsExtractor.relation_edge({**rel, "type": "relates"}) is None
            True
        """
        from_is_predecessor = DEPENDENCY_RELATIONS.get(str(raw.get("type", "")).lower())
        if from_is_predecessor is None:
            return None
        source = href_id(_link(raw, "from").get("href"))
        target = href_id(_link(raw, "to").get("href"))
        if source is None or target is None:
            return None
        return (source, target) if from_is_predecessor else (target, source)

    @classmethod
    def _apply_relations(cls, items: List[WorkItem], relations: List[Dict[str, Any]], issues: List[str]) -> None:
        by_id = {item.id: item for item in items}
        for raw in relations:
            edge = cls.relation_edge(raw)
            if edge is None:
                continue
            predecessor, successor = edge
            if predecessor not in by_id and successor not in by_id:
                continue
            if predecessor not in by_id or successor not in by_id:
                issues.append(f"Relation {raw.get('id')} links work items {predecessor} and {successor} across projects")
            if predecessor in by_id and successor not in by_id[predecessor].successors:
                by_id[predecessor].successors.append(successor)
            if successor in by_id and predecessor not in by_id[successor].predecessors:
                by_id[successor].predecessors.append(predecessor)
