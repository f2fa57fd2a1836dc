# -*- coding: utf-8 -*-
"""Location: ./pmo_analytics/utils/__init__.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Shared utilities for the PMO analytics engine.
"""
