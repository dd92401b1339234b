"""agentflow.logging

structlog setup for the engine.

Call sites log an event name plus keyword context:

    logger.info("Node completed", node_id="triage", label="out")

`configure_logging` is optional; without it structlog's defaults apply.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any, Optional

import structlog


def get_logger(name: str) -> Any:
    return structlog.get_logger(name)


def configure_logging(level: Optional[str] = None, *, json_output: bool = False) -> None:
    """Route engine logs to stderr, filtered at `level`.

    The level defaults to `AGENTFLOW_LOG_LEVEL` or INFO. `json_output=True` swaps the
    console renderer for one JSON object per line.
    """
    resolved = (level or os.getenv("AGENTFLOW_LOG_LEVEL") or "INFO").upper()
    threshold = getattr(logging, resolved, None)
    if not isinstance(threshold, int):
        raise ValueError(f"Unknown log level {resolved!r}")

    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer(colors=False)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(threshold),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )
