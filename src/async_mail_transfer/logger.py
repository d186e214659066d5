# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging utilities for the mail transfer service.

This module provides a centralized logging helper. The actual logging setup
(level, handlers, format) is configured via ``logging.basicConfig()`` in the
entry points (``main.py`` and ``mail-transfer serve``) to avoid duplicate
handlers.

Example:
    Typical usage in a module::

        from async_mail_transfer.logger import get_logger

        logger = get_logger("Inbound")
        logger.info("Session opened")
"""

import logging

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "AsyncMailTransfer") -> logging.Logger:
    """Retrieve a logger instance without configuring handlers.

    Args:
        name: The logger name. Defaults to "AsyncMailTransfer".

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    return logging.getLogger(name)


def configure_logging(level: str | None = "INFO") -> None:
    """Configure the root logger for a service process.

    Called once by the process entry point. Unknown level names fall back to
    ``INFO``.
    """
    logging.basicConfig(
        level=getattr(logging, str(level or "INFO").upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        force=True,
    )
