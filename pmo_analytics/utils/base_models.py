# -*- coding: utf-8 -*-
"""Location: ./pmo_analytics/utils/base_models.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Base model utilities for the PMO analytics engine.

Every record the engine hands back to a caller derives from
:class:`AnalyticsBaseModel`, which serializes field names in camelCase
(``calculationDate``, ``estimateAtCompletion``) while still accepting
snake_case input.
"""

# Standard
from typing import Any, Dict

# Third-Party
from pydantic import BaseModel, ConfigDict


def to_camel_case(s: str) -> str:
    """Convert a string from snake_case to camelCase.

    Args:
        s (str): The string to be converted, which is assumed to be in snake_case.

    Returns:
        str: The string converted to camelCase.

    Examples:
        >>> to_camel_case("estimate_at_completion")
        'estimateAtCompletion'
        >>> to_camel_case("alreadyCamel")
        'alreadyCamel'
        >>> to_camel_case("")
        ''
        >>> to_camel_case("bac")
        'bac'
        >>> to_camel_case("cpi_based")
        'cpiBased'
    """
    return "".join(word.capitalize() if i else word for i, word in enumerate(s.split("_")))


class AnalyticsBaseModel(BaseModel):
    """Base model with camelCase aliases for analytics records.

    Examples:
        >>> class Sample(AnalyticsBaseModel):
        ...     calculation_date: str = "2025-01-01"
        >>> Sample().model_dump(by_alias=True)
        {'calculationDate': '2025-01-01'}
        >>> Sample(calculationDate="2025-02-02").calculation_date
        '2025-02-02'
    """

    model_config = ConfigDict(
        from_attributes=True,
        alias_generator=to_camel_case,
        populate_by_name=True,
        use_enum_values=True,
        extra="ignore",
    )

    def to_dict(self, use_alias: bool = True) -> Dict[str, Any]:
        """Convert the model instance into a JSON-compatible dictionary.

        Args:
            use_alias (bool): Whether to emit camelCase field names (default True).

        Returns:
            Dict[str, Any]: Field names mapped to JSON-compatible values, nested models included.
        """
        return self.model_dump(mode="json", by_alias=use_alias)
