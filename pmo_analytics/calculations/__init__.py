# -*- coding: utf-8 -*-
"""Location: ./pmo_analytics/calculations/__init__.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Calculation engine.

Pure functions over a :class:`~pmo_analytics.models.ProjectAggregate` and a
:class:`~pmo_analytics.models.ParameterSet`. Nothing in this package performs
I/O or touches the cache.
"""

# First-Party
from pmo_analytics.calculations.cpm import calculate_critical_path
from pmo_analytics.calculations.evm import calculate_evm
from pmo_analytics.calculations.resources import calculate_resource_utilization

__all__ = ["calculate_critical_path", "calculate_evm", "calculate_resource_utilization"]
