"""
Structured logging configuration for TaskPulse.

Configures structlog to wrap stdlib logging so that:
- Development: colored, human-readable console output
- Staging/Production: JSON lines for log aggregation

Used by both the API (``create_app``) and the arq worker (``startup``).
All ``logging.getLogger(__name__)`` calls work unchanged; structlog's
ProcessorFormatter is attached to the root logger handler.
"""

import logging
import sys

import structlog

from app.config import AppEnv

# Third-party loggers that are too chatty at INFO
_NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "arq.worker", "aiosmtplib")


def setup_logging(
    app_env: AppEnv,
    log_level: str = "INFO",
    log_format: str = "auto",
    process_role: str = "api",
) -> None:
    """
    Configure structured logging for the process.

    Args:
        app_env: Current environment (development, staging, production).
        log_level: Root logger level (DEBUG, INFO, WARNING, ERROR).
        log_format: ``"json"``, ``"console"``, or ``"auto"``
                    (auto = console in dev, json otherwise).
        process_role: ``"api"`` or ``"worker"``; bound into every log line
                      so API and worker output can be told apart.
    """
    use_json = _should_use_json(app_env, log_format)

    def add_process_role(logger, method_name, event_dict):
        event_dict.setdefault("role", process_role)
        return event_dict

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        add_process_role,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.stdlib.ExtraAdder(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if use_json:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for noisy_logger in _NOISY_LOGGERS:
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)


def _should_use_json(app_env: AppEnv, log_format: str) -> bool:
    """Determine whether to use JSON output."""
    if log_format == "json":
        return True
    if log_format == "console":
        return False
    # auto: JSON for staging/production, console for development
    return app_env != AppEnv.DEVELOPMENT
