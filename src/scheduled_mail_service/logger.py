# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging utilities for the scheduled mail service.

Handlers, level and format are configured once by the entry point with
``logging.basicConfig()``; modules only ask for a named logger.

Example:
    Typical usage in a module::

        from scheduled_mail_service.logger import get_logger

        logger = get_logger("Dispatcher")
        logger.info("Resource %s throttled", resource)
"""

import logging

DEFAULT_LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"


def get_logger(name: str = "ScheduledMailService") -> logging.Logger:
    """Retrieve a logger instance.

    Args:
        name: The logger name. Defaults to "ScheduledMailService".

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    return logging.getLogger(name)


def configure_logging(level: str | int = "INFO") -> None:
    """Install the root handler used by the CLI and the ASGI entry point.

    Unknown level names fall back to ``INFO``.
    """
    if isinstance(level, str):
        resolved = logging.getLevelName(level.strip().upper())
        level = resolved if isinstance(resolved, int) else logging.INFO
    logging.basicConfig(level=level, format=DEFAULT_LOG_FORMAT, force=True)
