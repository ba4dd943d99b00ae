"""
Structured logging (structlog) and the tool-invocation event sink.

All output goes to stderr: stdout carries the MCP stdio transport.
"""

from __future__ import annotations

import logging
import os
import sys
import time
from dataclasses import asdict, dataclass
from typing import Callable

import structlog


@dataclass(frozen=True)
class InvocationEvent:
    tool_name: str
    outcome: str
    duration_ms: float
    confirmation_id: str | None = None
    phase: str = "invoke"


EventSink = Callable[[InvocationEvent], None]


def configure_logging(level: str | None = None, fmt: str | None = None) -> None:
    """
    Configure structlog for the server process.

    level defaults to MCP_LOG_LEVEL (INFO); fmt to MCP_LOG_FORMAT, either
    "json" (default) or "console".
    """
    level = (level or os.getenv("MCP_LOG_LEVEL", "INFO")).upper()
    fmt = (fmt or os.getenv("MCP_LOG_FORMAT", "json")).lower()

    # Replaces existing root handlers; stdout carries the MCP transport.
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level, force=True)

    renderer = (
        structlog.dev.ConsoleRenderer(colors=False)
        if fmt == "console"
        else structlog.processors.JSONRenderer()
    )
    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
        renderer,
    ]

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def elapsed_ms(started: float) -> float:
    """Milliseconds since a time.perf_counter() reading."""
    return round((time.perf_counter() - started) * 1000, 3)


_event_log = get_logger("evm_wallet.invocations")


def log_invocation_event(event: InvocationEvent) -> None:
    """Default sink: one `tool_invocation` log line per attempt."""
    fields = {k: v for k, v in asdict(event).items() if v is not None}
    if event.outcome == "ok" or event.outcome == "needs_confirmation":
        _event_log.info("tool_invocation", **fields)
    else:
        _event_log.warning("tool_invocation", **fields)
