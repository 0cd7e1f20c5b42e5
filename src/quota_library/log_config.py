# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""Console logging for applications that embed the library."""

import logging
import os
from typing import Optional, Union

from rich.console import Console
from rich.logging import RichHandler

LOGGER_NAME = "quota_library"


def configure_logging(
    level: Optional[Union[int, str]] = None, console: Optional[Console] = None
) -> logging.Logger:
    """
    Attach a RichHandler to the library logger.

    Args:
        level: Log level; defaults to QUOTA_LOG_LEVEL, then INFO
        console: Console to render into (stderr by default)

    Returns:
        The configured library logger
    """
    if level is None:
        level = os.environ.get("QUOTA_LOG_LEVEL", "INFO").strip().upper() or "INFO"
    if isinstance(level, str):
        level = logging.getLevelName(level)
        if not isinstance(level, int):
            level = logging.INFO

    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        markup=False,
        rich_tracebacks=True,
    )
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False
    return logger
