import logging
import sys
from typing import Any

import structlog

from .settings import Settings, settings

# Handler installed on the root logger by setup_logging(); replaced on re-runs
_stdlib_handler: logging.Handler | None = None


def _shared_processors() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
    ]


def _renderer(debug: bool) -> Any:
    # JSON for production, pretty printing for development
    return structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer()


def build_stdlib_formatter(debug: bool = False) -> structlog.stdlib.ProcessorFormatter:
    """
    Formatter rendering stdlib ``logging`` records like structlog events.

    Fields passed through ``extra=`` (``job_id``, ``worker_id``, ...) end up
    as keys of the rendered event next to the message.
    """
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[
            *_shared_processors(),
            structlog.stdlib.add_logger_name,
            structlog.stdlib.ExtraAdder(),
        ],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            _renderer(debug),
        ],
    )


def setup_logging(app_settings: Settings | None = None) -> None:
    """Configure structured logging for structlog and stdlib loggers."""
    global _stdlib_handler
    config = app_settings or settings
    level = getattr(logging, config.log_level)

    # Standard library loggers (store, handlers, routes) share the renderer
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(build_stdlib_formatter(config.debug))
    root = logging.getLogger()
    if _stdlib_handler is not None:
        root.removeHandler(_stdlib_handler)
    root.addHandler(handler)
    root.setLevel(level)
    _stdlib_handler = handler

    structlog.configure(
        processors=[
            *_shared_processors(),
            (
                structlog.processors.CallsiteParameterAdder(
                    parameters=[structlog.processors.CallsiteParameter.FUNC_NAME]
                )
                if config.debug
                else structlog.processors.CallsiteParameterAdder(parameters=[])
            ),
            _renderer(config.debug),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.WriteLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def add_request_context(request_id: str, **context: Any) -> None:
    """Add request-specific context to all log messages."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, **context)
