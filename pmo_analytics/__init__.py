# -*- coding: utf-8 -*-
"""Location: ./pmo_analytics/__init__.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

PMO Analytics Engine.

Earned Value Management, Critical Path Method and resource utilization
analytics computed from a live project-data source, served through a tiered
read-through cache.
"""

__author__ = "PMO Analytics Contributors"
__copyright__ = "Copyright 2025"
__license__ = "Apache 2.0"
__version__ = "0.4.0"
__description__ = "PMO analytics engine: EVM, CPM and resource utilization over project data"
__packages__ = ("pmo_analytics",)
