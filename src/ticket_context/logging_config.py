"""Structured logging configuration.

The engine logs through structlog so that traversal and matching events can
be filtered and aggregated by their fields rather than grepped out of text:
  {"event": "circuit_breaker_tripped", "root_key": "JAR-1", "edges": 20}

In development the output is pretty-printed; in production it is JSON.
Every event names its component (resolver, matcher, aggregator) and the
root ticket bound for the running aggregation.

Usage:
    from ticket_context.logging_config import setup_logging, get_logger

    setup_logging(environment="production")
    logger = get_logger(__name__)
    logger.info("resolution_started", root_key="JAR-1", depth=2)
"""

from __future__ import annotations

import logging
import os
import sys
from contextlib import AbstractContextManager
from enum import Enum
from typing import Any, Protocol

import structlog
from pydantic import BaseModel
from structlog.typing import EventDict, Processor


class LoggerProtocol(Protocol):
    """Minimal logger surface the engine calls. Implementations must not raise."""

    def debug(self, event: str, **kw: Any) -> Any: ...

    def info(self, event: str, **kw: Any) -> Any: ...

    def warning(self, event: str, **kw: Any) -> Any: ...

    def error(self, event: str, **kw: Any) -> Any: ...


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset, tuple)):
        return [_jsonable(v) for v in value]
    return value


def flatten_engine_values(_: Any, __: str, event_dict: EventDict) -> EventDict:
    """Render pydantic models and enums (kinds, PR states) as plain values."""
    return {key: _jsonable(value) for key, value in event_dict.items()}


def add_service(service: str) -> Processor:
    def processor(_: Any, __: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", service)
        return event_dict

    return processor


def setup_logging(
    environment: str | None = None,
    log_level: str | None = None,
    service: str = "ticket-context-engine",
) -> None:
    """Configure structured logging for the engine.

    Events carry whatever ``bind_ticket_context`` bound for the current
    task (root_key, repo_hint), so matcher and resolver events emitted
    during one aggregation can be grouped without passing keys around.

    Args:
        environment: "development" or "production". Reads from the
                     ENVIRONMENT env var if not provided.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
                   Reads from the LOG_LEVEL env var if not provided.
        service: Value of the ``service`` field on every event
    """
    env = environment or os.environ.get("ENVIRONMENT", "development")
    level = getattr(logging, (log_level or os.environ.get("LOG_LEVEL", "INFO")).upper())

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_service(service),
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        flatten_engine_values,
        structlog.processors.format_exc_info,
    ]
    if env == "production":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        # stderr keeps stdout free for callers that pipe the context bundle
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    # httpx logs requests through the standard library
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))


def bind_ticket_context(root_key: str, **values: Any) -> AbstractContextManager[Any]:
    """Bind ``root_key`` (and extra fields) to every event in the current task.

    Usage:
        with bind_ticket_context("JAR-1", repo_hint="api"):
            await aggregator.aggregate("JAR-1")
    """
    return structlog.contextvars.bound_contextvars(root_key=root_key, **values)


def get_logger(name: str) -> Any:
    """Get a structured logger whose events name the emitting component.

    Args:
        name: Logger name (typically __name__)

    Returns:
        A lazily configured structlog logger
    """
    return structlog.get_logger(name, component=name.rsplit(".", 1)[-1])
