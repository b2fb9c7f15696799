"""Logging utilities for the mail scheduler.

This module provides a centralized logging helper. The actual logging setup
(level, handlers, format) is configured via ``logging.basicConfig()`` in the
entry points (``main.py`` and ``mail-scheduler serve``) to avoid duplicate
handlers.

Example:
    Typical usage in a module::

        from mail_scheduler.logger import get_logger

        logger = get_logger("Worker")
        logger.info("Attempt finished")
"""

import logging

ROOT_LOGGER_NAME = "mail_scheduler"


def get_logger(name: str | None = None) -> logging.Logger:
    """Retrieve a logger below the ``mail_scheduler`` namespace.

    Args:
        name: Component name appended to the package logger, e.g. ``"Queue"``
            gives ``mail_scheduler.Queue``. When omitted the package logger
            itself is returned.

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    if not name:
        return logging.getLogger(ROOT_LOGGER_NAME)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
