# -*- coding: utf-8 -*-
"""Location: ./pmo_analytics/config.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

PMO Analytics Configuration settings.
This module defines configuration settings for the analytics engine using Pydantic.
It loads configuration from environment variables (or a ``.env`` file) with sensible defaults.

Examples:
    >>> from pmo_analytics.config import Settings
    >>> s = Settings(upstream_base_url="https://op.example.com/")
    >>> s.upstream_base_url
    'https://op.example.com'
    >>> s.cache_default_ttl
    1800
"""

# Standard
from functools import lru_cache
from typing import Any, Dict, List, Optional

# Third-Party
from pydantic import Field, field_validator, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# PMO_DEFAULT_* names that differ from the parameter-set field they configure
ORGANIZATIONAL_FIELD_NAMES = {"utilization_rate": "default_utilization_rate"}


class Settings(BaseSettings):
    """Runtime settings for the PMO analytics engine."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "pmo-analytics"

    # Logging
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # Upstream project-data source (OpenProject API v3 compatible)
    upstream_base_url: str = ""
    upstream_api_token: SecretStr = SecretStr("")
    allow_insecure_http: bool = False
    upstream_timeout: float = 30.0
    upstream_page_size: int = Field(default=1000, gt=0)
    upstream_max_pages: int = Field(default=20, gt=0)

    # Retry policy (ResilientHttpClient)
    upstream_max_retries: int = Field(default=3, ge=0)
    upstream_base_backoff: float = Field(default=1.0, ge=0)
    upstream_max_delay: float = Field(default=5.0, ge=0)
    upstream_jitter_max: float = Field(default=0.25, ge=0)
    upstream_retry_on_status: List[int] = Field(default_factory=lambda: [429, 500, 502, 503, 504])

    # Tiered cache
    cache_default_ttl: int = 1800  # 30 minutes
    cache_sweep_interval: int = 300  # 5 minutes
    cache_max_entries: int = 1000
    cache_hit_rate_window: int = 1000
    cache_hit_rate_min_samples: int = 10
    cache_warming_marker_ttl: int = 60

    # Staleness policy
    evm_max_age_hours: float = 24.0
    evm_near_completion_percent: float = 80.0
    evm_near_completion_max_age_hours: float = 12.0
    cpm_max_age_hours: float = 12.0
    calculation_result_ttl: int = 3600
    utilization_window_days: int = Field(default=30, gt=0)

    # Organizational parameter defaults (PMO_DEFAULT_*)
    pmo_default_standard_labor_rate: Optional[float] = None
    pmo_default_working_hours_per_day: Optional[float] = None
    pmo_default_utilization_rate: Optional[float] = None
    pmo_default_max_allocation: Optional[float] = None
    pmo_default_risk_tolerance: Optional[str] = None
    pmo_default_industry_type: Optional[str] = None
    pmo_default_forecast_method: Optional[str] = None

    # Custom field names for project-level parameter overrides are "<prefix><field>"
    parameter_field_prefix: str = "pmo_"

    # Observability
    metrics_enabled: bool = True

    @field_validator("upstream_base_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        """Normalize the upstream base URL.

        Args:
            v: Raw base URL

        Returns:
            str: URL without surrounding whitespace or trailing slashes

        Examples:
            >>> Settings._strip_trailing_slash(" https://x.io// ")
            'https://x.io'
        """
        return v.strip().rstrip("/")

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, v: str) -> str:
        """Upper-case the log level name.

        Args:
            v: Level name in any case

        Returns:
            str: Upper-cased level name

        Raises:
            ValueError: If the level is not a standard logging level

        Examples:
            >>> Settings._upper_log_level("debug")
            'DEBUG'
        """
        level = v.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {v}")
        return level

    def organizational_defaults(self) -> Dict[str, Any]:
        """Collect the organizational parameter defaults that are set.

        Returns:
            Dict[str, Any]: Parameter-set field name to value, for configured fields only

        Examples:
            >>> Settings(pmo_default_standard_labor_rate=90).organizational_defaults()
            {'standard_labor_rate': 90.0}
            >>> Settings(pmo_default_utilization_rate=0.7).organizational_defaults()
            {'default_utilization_rate': 0.7}
            >>> Settings().organizational_defaults()
            {}
        """
        prefix = "pmo_default_"
        defaults: Dict[str, Any] = {}
        for name, value in self.model_dump().items():
            if name.startswith(prefix) and value is not None:
                field = name[len(prefix) :]
                defaults[ORGANIZATIONAL_FIELD_NAMES.get(field, field)] = value
        return defaults


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings: A cached instance of the Settings class.

    Examples:
        >>> settings = get_settings()
        >>> isinstance(settings, Settings)
        True
        >>> # Second call returns the same cached instance
        >>> settings2 = get_settings()
        >>> settings is settings2
        True
    """
    return Settings()


# Create settings instance
settings = get_settings()
