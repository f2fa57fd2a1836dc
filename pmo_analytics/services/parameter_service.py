# -*- coding: utf-8 -*-
"""Location: ./pmo_analytics/services/parameter_service.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Parameter Store Service.

Resolves the :class:`~pmo_analytics.models.ParameterSet` for a project from
three layers, later layers winning per field:

1. Built-in defaults (the ``ParameterSet`` field defaults)
2. Organizational defaults from settings (``PMO_DEFAULT_*``)
3. Project overrides stored upstream as project custom fields named
   ``<prefix><field>`` (``pmo_standard_labor_rate``, ...)

:class:`ParameterFieldAdapter` is the only code that deals with string-keyed
custom fields. Values that fail validation are dropped with a warning, so the
calculation engine only ever receives a fully typed parameter set.
"""

# Standard
import asyncio
from typing import Any, Dict, List, Optional, Protocol, Tuple

# Third-Party
import orjson
from pydantic import ValidationError

# First-Party
from pmo_analytics.config import Settings, settings
from pmo_analytics.models import ParameterSet
from pmo_analytics.services.extractor_service import ExtractorError, MetricsExtractor
from pmo_analytics.services.logging_service import LoggingService
from pmo_analytics.utils.base_models import AnalyticsBaseModel

logging_service = LoggingService()
logger = logging_service.get_logger(__name__)

PARAMETER_FIELDS = tuple(ParameterSet.model_fields)


class ParameterStoreError(Exception):
    """Raised when project parameters cannot be loaded."""


class ParameterStore(Protocol):
    """Source of resolved parameter sets."""

    async def get_parameters(self, project_id: str, abort: Optional[asyncio.Event] = None) -> ParameterSet:
        """Return the resolved parameters of a project."""
        ...  # pragma: no cover


class ParameterViolation(AnalyticsBaseModel):
    """One policy violation found in proposed parameter changes."""

    field: str
    value: Any = None
    violation: str
    severity: str


class ParameterValidation(AnalyticsBaseModel):
    """Outcome of checking proposed parameter changes against policy."""

    is_valid: bool
    violations: List[ParameterViolation]
    warnings: List[str]


def validate_field(field: str, value: Any) -> Any:
    """Validate a single parameter value in isolation.

    Args:
        field: ``ParameterSet`` field name
        value: Candidate value

    Returns:
        Any: The coerced value

    Raises:
        ValueError: If the field is unknown or the value invalid

    Examples:
        >>> validate_field("standard_labor_rate", "90")
        90.0
        >>> validate_field("forecast_method", "SPI_CPI")
        'SPI_CPI'
        >>> validate_field("max_allocation", -1)
        Traceback (most recent call last):
        ...
        ValueError: Invalid value -1 for max_allocation
    """
    if field not in ParameterSet.model_fields:
        raise ValueError(f"Unknown parameter {field}")
    try:
        return getattr(ParameterSet.model_validate({field: value}), field)
    except ValidationError as e:
        raise ValueError(f"Invalid value {value!r} for {field}") from e


def resolve_parameters(*layers: Dict[str, Any]) -> Tuple[ParameterSet, List[str]]:
    """Merge override layers over the built-in defaults.

    Args:
        *layers: Field-name dictionaries, lowest precedence first

    Returns:
        Tuple[ParameterSet, List[str]]: The resolved set and warnings for dropped values

    Examples:
        >>> params, warnings = resolve_parameters({"standard_labor_rate": 90}, {"standard_labor_rate": 110, "max_allocation": "x"})
        >>> params.standard_labor_rate, params.max_allocation
        (110.0, 1.0)
        >>> warnings
        ["Dropped invalid parameter max_allocation='x'"]
    """
    merged: Dict[str, Any] = {}
    warnings: List[str] = []
    for layer in layers:
        for field, value in layer.items():
            try:
                merged[field] = validate_field(field, value)
            except ValueError:
                warnings.append(f"Dropped invalid parameter {field}={value!r}")
    return ParameterSet.model_validate(merged), warnings


class ParameterFieldAdapter:
    """Map typed parameters to and from upstream custom fields.

    Examples:
        >>> adapter = ParameterFieldAdapter()
        >>> adapter.field_name("standard_labor_rate")
        'pmo_standard_labor_rate'
        >>> adapter.from_custom_fields({"pmo_standard_labor_rate": "95", "unrelated": 1})
        {'standard_labor_rate': '95'}
    """

    def __init__(self, prefix: str = "pmo_"):
        """Initialize the adapter.

        Args:
            prefix: Custom field name prefix
        """
        self.prefix = prefix

    def field_name(self, field: str) -> str:
        """Custom field name for a parameter."""
        return f"{self.prefix}{field}"

    def from_custom_fields(self, values: Dict[str, Any]) -> Dict[str, Any]:
        """Pick parameter overrides out of named custom field values.

        Empty values are ignored; JSON strings are decoded for ``user_rates``.

        Args:
            values: Custom field name to raw value

        Returns:
            Dict[str, Any]: ``ParameterSet`` field name to raw value
        """
        overrides: Dict[str, Any] = {}
        for field in PARAMETER_FIELDS:
            value = values.get(self.field_name(field))
            if isinstance(value, dict) and "raw" in value:
                value = value["raw"]
            if value is None or value == "":
                continue
            if field == "user_rates" and isinstance(value, str):
                try:
                    value = orjson.loads(value)
                except orjson.JSONDecodeError:
                    logger.warning(f"Ignoring malformed {self.field_name(field)} value")
                    continue
            overrides[field] = value
        return overrides

    def to_custom_fields(self, parameters: ParameterSet, fields: Optional[List[str]] = None) -> Dict[str, Any]:
        """Serialize parameters as named custom field values.

        Args:
            parameters: Parameter set to serialize
            fields: Fields to include (all when omitted)

        Returns:
            Dict[str, Any]: Custom field name to JSON-compatible value
        """
        data = parameters.to_dict(use_alias=False)
        names = fields or list(PARAMETER_FIELDS)
        result: Dict[str, Any] = {}
        for field in names:
            value = data[field]
            result[self.field_name(field)] = orjson.dumps(value).decode() if isinstance(value, dict) else value
        return result

    def extract(self, project: Dict[str, Any], schema: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Read overrides from a HAL project and its schema.

        Custom fields appear on the project as ``customFieldN`` keys whose
        human names live in the schema; values keyed directly by their
        prefixed name are accepted as well.

        Args:
            project: HAL project resource
            schema: HAL project schema resource

        Returns:
            Dict[str, Any]: ``ParameterSet`` field name to raw value
        """
        named: Dict[str, Any] = {key: value for key, value in project.items() if key.startswith(self.prefix)}
        for key, definition in (schema or {}).items():
            if key.startswith("customField") and isinstance(definition, dict) and key in project:
                name = definition.get("name")
                if isinstance(name, str) and name.startswith(self.prefix):
                    named[name] = project[key]
        return self.from_custom_fields(named)


class UpstreamParameterStore:
    """Parameter store backed by project custom fields upstream."""

    def __init__(self, extractor: MetricsExtractor, config: Optional[Settings] = None, adapter: Optional[ParameterFieldAdapter] = None):
        """Initialize the store.

        Args:
            extractor: Extractor used to read projects and schemas
            config: Settings with organizational defaults
            adapter: Custom field adapter (built from ``parameter_field_prefix`` by default)
        """
        self._extractor = extractor
        self._settings = config or settings
        self.adapter = adapter or ParameterFieldAdapter(self._settings.parameter_field_prefix)

    async def get_parameters(self, project_id: str, abort: Optional[asyncio.Event] = None) -> ParameterSet:
        """Resolve the parameter set of a project.

        Args:
            project_id: Project id
            abort: Optional abort event

        Returns:
            ParameterSet: Defaults, organizational defaults and project overrides merged

        Raises:
            ParameterStoreError: If the project cannot be read
        """
        project_task = self._extractor.fetch_project(project_id, abort)
        schema_task = self._extractor.fetch_project_schema(project_id, abort)
        project, schema = await asyncio.gather(project_task, schema_task, return_exceptions=True)
        if isinstance(project, BaseException):
            if not isinstance(project, ExtractorError):
                raise project
            raise ParameterStoreError(f"Could not load parameters for project {project_id}: {project}") from project
        if isinstance(schema, BaseException):
            if not isinstance(schema, ExtractorError):
                raise schema
            logger.warning(f"Project schema unavailable for {project_id}, custom field names unresolved: {schema}")
            schema = {}

        overrides = self.adapter.extract(project, schema)
        parameters, warnings = resolve_parameters(self._settings.organizational_defaults(), overrides)
        for warning in warnings:
            logger.warning(f"Project {project_id}: {warning}")
        if overrides:
            logger.debug(f"Project {project_id} overrides parameters {sorted(overrides)}")
        return parameters


def validate_overrides(changes: Dict[str, Any], organizational_defaults: Optional[Dict[str, Any]] = None) -> ParameterValidation:
    """Check proposed parameter changes against organizational policy.

    Args:
        changes: Field name to proposed value
        organizational_defaults: Baseline used for the deviation check

    Returns:
        ParameterValidation: Violations (errors block, warnings advise) and notes

    Examples:
        >>> result = validate_overrides({"standard_labor_rate": 15})
        >>> result.is_valid, result.violations[0].severity
        (False, 'error')
        >>> validate_overrides({"standard_labor_rate": 250}).warnings
        ['High labor rate (250/hour) - consider approval']
        >>> validate_overrides({"max_allocation": 1.2}).is_valid
        True
    """
    violations: List[ParameterViolation] = []
    warnings: List[str] = []
    for field, value in changes.items():
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            continue
        if field == "standard_labor_rate":
            if value < 20:
                violations.append(ParameterViolation(field=field, value=value, violation="Labor rate below minimum threshold (20/hour)", severity="error"))
            elif value > 200:
                warnings.append(f"High labor rate ({value}/hour) - consider approval")
        elif field == "cost_performance_threshold" and value < 0.8:
            violations.append(ParameterViolation(field=field, value=value, violation="Cost performance threshold too low (minimum 0.8)", severity="error"))
        elif field == "max_allocation" and value > 1.5:
            violations.append(ParameterViolation(field=field, value=value, violation="Maximum allocation exceeds 150% - requires approval", severity="warning"))
        elif field == "working_hours_per_day" and value > 10:
            violations.append(ParameterViolation(field=field, value=value, violation="Working hours per day exceeds 10 hours", severity="warning"))

    for field, value in changes.items():
        baseline = (organizational_defaults or {}).get(field)
        if isinstance(baseline, (int, float)) and isinstance(value, (int, float)) and baseline:
            if abs((value - baseline) / baseline) > 0.5:
                warnings.append(f"{field} deviates significantly from organizational default")

    return ParameterValidation(
        is_valid=not any(violation.severity == "error" for violation in violations),
        violations=violations,
        warnings=warnings,
    )
