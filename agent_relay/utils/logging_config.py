"""
Logging configuration using structlog for structured, JSON-based logging.

Every module logs through ``structlog.get_logger(__name__)``. The CLI binds
the agent id into contextvars so every event of a command carries it.
"""

from typing import Any

import structlog


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging with JSON output.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level.upper()),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_agent(agent_id: str, **extra: Any) -> None:
    """Attach the agent id (and any extra keys) to every subsequent log event.

    Example:
        >>> bind_agent("agent001", command="land")
        >>> log.info("plan_executed")  # carries agent_id and command
    """
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(agent_id=agent_id, **extra)
