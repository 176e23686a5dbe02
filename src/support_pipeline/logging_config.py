"""Structured logging for the pipeline workers.

Every line carries the service name and environment. Scheduled runs,
queue jobs and per-shop ingestion bind their identifiers (task, job,
shop, message) as structlog context variables, so a line
logged deep inside the processor or a client can be traced back to the
job and shop that caused it without passing ids around. Mailbox and
provider secrets are masked before rendering.

Production renders JSON, development a coloured console.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

SERVICE_NAME = "support-pipeline"

_SECRET_KEYS = frozenset({
    "password",
    "imap_password",
    "smtp_password",
    "api_key",
    "access_token",
    "token",
    "authorization",
})

# Third-party loggers and the level they are held to
_LIBRARY_LEVELS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "asyncio": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "aiosqlite": logging.WARNING,
    "asyncpg": logging.WARNING,
    "redis": logging.WARNING,
    "celery": logging.INFO,
    "celery.beat": logging.WARNING,
}


def service_context(environment: str) -> Processor:
    """Processor stamping service and environment on every event."""

    def add_service_context(
        logger: WrappedLogger, method_name: str, event_dict: EventDict
    ) -> EventDict:
        event_dict.setdefault("service", SERVICE_NAME)
        event_dict.setdefault("environment", environment)
        return event_dict

    return add_service_context


def mask_secrets(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    for key in _SECRET_KEYS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = "***"
    return event_dict


@contextmanager
def pipeline_context(**values: Any) -> Iterator[None]:
    """
    Bind identifiers for the duration of the block.

    Previous values of the same keys are restored on exit, so a shop
    context can wrap several job contexts.
    """
    bound = {k: v for k, v in values.items() if v is not None}
    with structlog.contextvars.bound_contextvars(**bound):
        yield


def configure_logging(log_level: str = "INFO", environment: str = "development") -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        environment: Environment name (development, production)
    """
    log_level_int = getattr(logging, log_level.upper(), logging.INFO)
    is_production = environment.lower() == "production"

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        service_context(environment),
        mask_secrets,
    ]

    if is_production:
        shared_processors.append(structlog.processors.format_exc_info)
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=shared_processors)
    )
    handler.setLevel(log_level_int)

    root_logger = logging.getLogger()
    # Celery calls this once per forked child
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level_int)

    for name, level in _LIBRARY_LEVELS.items():
        logging.getLogger(name).setLevel(max(level, log_level_int))

    structlog.get_logger(__name__).info(
        "Logging configured",
        log_level=log_level,
        renderer="json" if is_production else "console",
    )
