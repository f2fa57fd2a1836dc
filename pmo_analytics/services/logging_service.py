# -*- coding: utf-8 -*-
"""Location: ./pmo_analytics/services/logging_service.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Logging Service Implementation.
Configures the standard library logging tree for the analytics engine and
hands out named loggers. Output goes to stderr so that a stdio transport in
front of the engine keeps a clean stdout.

Usage:
    from pmo_analytics.services.logging_service import LoggingService

    logging_service = LoggingService()
    logger = logging_service.get_logger(__name__)
"""

# Standard
import logging
import sys
from typing import Optional

# First-Party
from pmo_analytics.config import Settings, settings

_ROOT_LOGGER_NAME = "pmo_analytics"


class LoggingService:
    """Configure and hand out loggers for the ``pmo_analytics`` logger tree.

    Configuration is applied once per process; later instances reuse the
    handler installed by the first one.

    Examples:
        >>> service = LoggingService()
        >>> service.get_logger("pmo_analytics.test").name
        'pmo_analytics.test'
    """

    _configured = False

    def __init__(self, config: Optional[Settings] = None) -> None:
        """Initialize the logging service.

        Args:
            config: Settings to read level and format from (defaults to the global settings)
        """
        self._settings = config or settings
        if not LoggingService._configured:
            self.configure()

    def configure(self, level: Optional[str] = None) -> None:
        """Install a stderr handler on the package root logger.

        Args:
            level: Optional level name overriding ``Settings.log_level``
        """
        root = logging.getLogger(_ROOT_LOGGER_NAME)
        if not any(getattr(handler, "_pmo_analytics", False) for handler in root.handlers):
            handler = logging.StreamHandler(sys.stderr)
            handler.setFormatter(logging.Formatter(self._settings.log_format))
            handler._pmo_analytics = True  # type: ignore[attr-defined]
            root.addHandler(handler)
        root.setLevel(getattr(logging, (level or self._settings.log_level).upper(), logging.INFO))
        LoggingService._configured = True

    def get_logger(self, name: str) -> logging.Logger:
        """Return a named logger.

        Args:
            name: Logger name, normally the calling module's ``__name__``

        Returns:
            logging.Logger: The configured logger
        """
        return logging.getLogger(name)

    def set_level(self, level: str) -> None:
        """Change the level of the package root logger at runtime.

        Args:
            level: Level name such as ``DEBUG``
        """
        logging.getLogger(_ROOT_LOGGER_NAME).setLevel(getattr(logging, level.upper(), logging.INFO))
