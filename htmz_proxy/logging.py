"""
Centralized logging configuration using loguru.
"""
from __future__ import annotations

import os
import re
import sys
from typing import Any

from loguru import logger

# Keys whose values must never reach the logs in clear text
SENSITIVE_KEY_PATTERN = re.compile(
    r"(key|secret|token|password|pass|auth|private|credential|jwt|bearer|oauth)$",
    re.IGNORECASE,
)


def configure_logging(level: str | None = None) -> None:
    """(Re)install the stderr sink at the given level."""
    logger.remove()
    logger.add(
        sys.stderr,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
            "<level>{message}</level>"
        ),
        level=(level or os.getenv("HTMZ_LOG_LEVEL", "INFO")).upper(),
        colorize=True,
    )


configure_logging()


def get_logger(name: str = __name__) -> Any:
    """
    Get a logger bound to a specific module name.

    Usage:
        from htmz_proxy.logging import get_logger
        logger = get_logger(__name__)
        logger.info("Hello from this module")
    """
    return logger.bind(name=name)


def is_sensitive_key(key: str) -> bool:
    return bool(SENSITIVE_KEY_PATTERN.search(key))


def mask_value(key: str, value: Any) -> str:
    """Render a config value for logging, hiding anything that looks like a credential."""
    if is_sensitive_key(key):
        return "*** (hidden)"
    return str(value)
