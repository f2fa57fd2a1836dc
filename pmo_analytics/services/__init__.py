# -*- coding: utf-8 -*-
"""Location: ./pmo_analytics/services/__init__.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Services: cache, extractor, parameter store and the analytics orchestrator.
"""
