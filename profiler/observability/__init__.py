"""In-process request telemetry.

Instruments live in an owned :class:`~profiler.observability.metrics.Meter`,
are mutated by the middleware stages, and are flushed to append-only JSONL
files by the export driver. Logging goes through structlog, configured here.
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog


_CONFIGURED = False


def _resolve_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(level: int | str = logging.INFO) -> None:
    """Route profiler events (exports, skipped ticks, stage failures, access
    lines) to stdout as one JSON object per line.

    ``level`` may be a number or a name such as ``"DEBUG"`` (``LOG_LEVEL``).
    Only the first call per process takes effect, so app factories may call it
    freely.
    """

    global _CONFIGURED
    if _CONFIGURED:
        return

    level = _resolve_level(level)

    pre_chain: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    structlog.configure(
        processors=[
            *pre_chain,
            # Stdlib records (uvicorn, asyncio) go through the same JSON renderer.
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(),
        foreign_pre_chain=pre_chain,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    # uvicorn installs its own handlers; replace them so access and error lines share the format.
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.propagate = False
        server_logger.setLevel(level)

    _CONFIGURED = True
