"""
Logging helpers for the market core.

All modules log through children of the ``runic_market`` logger, so a single
``configure_logging`` call controls the whole package. Nothing is configured
on import; libraries embedding the core keep control of their own handlers.
"""

from __future__ import annotations

import logging
from typing import Any

_ROOT_NAME = "runic_market"
_root_logger = logging.getLogger(_ROOT_NAME)

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _coerce_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).strip().upper())
    if not isinstance(value, int):
        raise ValueError(f"unknown log level: {level!r}")
    return value


def configure_logging(
    level: int | str = logging.INFO,
    handler: logging.Handler | None = None,
    format_string: str | None = None,
) -> logging.Logger:
    """
    Attach a handler to the package logger and set its level.

    Args:
        level: Level for all ``runic_market.*`` loggers (int or name such as "DEBUG").
        handler: Handler to attach (default: StreamHandler to stderr).
        format_string: Custom format (default includes timestamp, logger name and level).

    Returns:
        The configured package logger.
    """
    resolved = _coerce_level(level)
    if handler is None:
        handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(format_string or DEFAULT_FORMAT))

    # Re-configuring replaces the previous handler instead of stacking duplicates.
    for existing in list(_root_logger.handlers):
        if getattr(existing, "_runic_market_handler", False):
            _root_logger.removeHandler(existing)
    handler._runic_market_handler = True  # type: ignore[attr-defined]

    _root_logger.addHandler(handler)
    _root_logger.setLevel(resolved)
    return _root_logger


def get_logger(name: str | None = None) -> logging.Logger:
    """Return the package logger, or a child such as ``runic_market.auction``."""
    if name is None:
        return _root_logger
    if name.startswith(_ROOT_NAME):
        return logging.getLogger(name)
    return logging.getLogger(f"{_ROOT_NAME}.{name}")


def fmt_fields(**fields: Any) -> str:
    """Render context as ``key=value`` pairs for log messages."""
    return " ".join(f"{k}={v}" for k, v in fields.items() if v is not None)
