"""Logging for the volume tools.

Log records go to stderr so that command output on stdout (the JSON summary
of a rebalance pass, the updated volume list) stays machine readable.
"""

from __future__ import annotations

import logging
import os
import sys

# Shared application logger used across modules.
log = logging.getLogger("tablet_volumes")

# Storage client libraries log every request at DEBUG.
_QUIET_LOGGERS = ("botocore", "boto3", "urllib3", "httpx")


def configure_logging(level: str | int | None = None) -> logging.Logger:
    """Attach a stderr handler and set the level of the volume tools.

    Args:
        level: ``--log-level`` value such as ``"DEBUG"``; ``LOG_LEVEL`` from
            the environment when omitted, ``INFO`` when neither is usable.

    Returns:
        logging.Logger: The ``tablet_volumes`` logger.
    """
    resolved_level = _coerce_level(level)

    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s"))
        root.addHandler(handler)
    root.setLevel(resolved_level)

    # Per-tablet DEBUG output stays ours; client chatter is capped at WARNING.
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(resolved_level, logging.WARNING))

    log.setLevel(resolved_level)
    log.debug("Logging configured at level %s", logging.getLevelName(resolved_level))
    return log


def _coerce_level(level: str | int | None) -> int:
    candidate = level if level is not None else os.getenv("LOG_LEVEL", "INFO")
    if isinstance(candidate, int):
        return candidate
    numeric = logging.getLevelName(str(candidate).strip().upper())
    return numeric if isinstance(numeric, int) else logging.INFO
