"""Structured logging setup using structlog.

The same processor chain feeds either a coloured console renderer
(development) or a JSON renderer (``APP_ENV=production``). Standard-library
logging from httpx, uvicorn and SQLAlchemy is routed through the same
formatter so every line has one shape.
"""

import logging
import sys

import structlog

from docsrag.config import get_settings


def configure_logging(log_level: str | None = None, json_output: bool | None = None) -> None:
    settings = get_settings()
    level = (log_level or settings.log_level).upper()
    use_json = json_output if json_output is not None else settings.app_env == "production"

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if use_json:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[*shared_processors, renderer],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            *shared_processors,
            renderer,
        ],
    )
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)


def get_logger(name: str) -> structlog.typing.FilteringBoundLogger:
    if not structlog.is_configured():
        configure_logging()
    return structlog.get_logger(logger_name=name)
