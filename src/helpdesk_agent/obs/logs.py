"""Process-wide logging setup."""

from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str | int = "INFO") -> None:
    """Install the service log format on the root logger.

    Safe to call more than once; only the level changes after the first call.
    """
    root = logging.getLogger()
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    if not any(getattr(h, "_helpdesk_agent", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._helpdesk_agent = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(level)
