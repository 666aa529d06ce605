"""
Structured logging setup for harness runs.

Every event carries the current run id, injected from a ``ContextVar`` by a
structlog processor, so interleaved output from concurrent runs (or from a run
and its report generation) can be correlated.
"""

import logging
import logging.config
from contextvars import ContextVar
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

import structlog

run_id_context: ContextVar[Optional[str]] = ContextVar('run_id', default=None)

LOG_FILE_NAME = "harness.log"
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUP_COUNT = 5


def bind_run_id(run_id: Optional[str]) -> None:
    run_id_context.set(run_id)


def get_run_id() -> Optional[str]:
    return run_id_context.get()


def create_run_id_processor() -> Callable:
    """Processor adding ``run_id`` to every event when one is bound."""

    def processor(logger, method_name, event_dict):
        run_id = run_id_context.get()
        if run_id:
            event_dict.setdefault('run_id', run_id)
        return event_dict

    return processor


def setup_structured_logging(
    log_level: str = "INFO",
    log_format: str = "console",
    log_dir: Optional[Union[str, Path]] = None,
    run_id: Optional[str] = None,
) -> structlog.stdlib.BoundLogger:
    """
    Configure structlog and the stdlib logging tree.

    Args:
        log_level: Root log level name
        log_format: ``json`` or ``console`` renderer for the console handler
        log_dir: When given, a rotating JSON-lines file handler writes
            ``harness.log`` there
        run_id: Run identifier bound into every event

    Returns:
        Logger for the ``simharness`` namespace
    """
    bind_run_id(run_id)
    log_level = log_level.upper()

    shared_processors = [
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="ISO"),
        create_run_id_processor(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    structlog.configure(
        processors=[structlog.stdlib.filter_by_level] + shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=False,
    )

    console_renderer = (
        structlog.processors.JSONRenderer()
        if log_format == "json"
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    logging_config: Dict[str, Any] = {
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {
            'json': {
                '()': structlog.stdlib.ProcessorFormatter,
                'processor': structlog.processors.JSONRenderer(),
                'foreign_pre_chain': shared_processors,
            },
            'console': {
                '()': structlog.stdlib.ProcessorFormatter,
                'processor': console_renderer,
                'foreign_pre_chain': shared_processors,
            },
        },
        'handlers': {
            'console': {
                'class': 'logging.StreamHandler',
                'formatter': 'console',
                'stream': 'ext://sys.stderr',
            },
        },
        'loggers': {
            '': {
                'handlers': ['console'],
                'level': log_level,
            },
            'httpx': {'level': 'WARNING'},
            'httpcore': {'level': 'WARNING'},
        },
    }

    if log_dir is not None:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        logging_config['handlers']['file'] = {
            'class': 'logging.handlers.RotatingFileHandler',
            'formatter': 'json',
            'filename': str(log_path / LOG_FILE_NAME),
            'maxBytes': LOG_FILE_MAX_BYTES,
            'backupCount': LOG_FILE_BACKUP_COUNT,
            'encoding': 'utf-8',
        }
        logging_config['loggers']['']['handlers'].append('file')

    logging.config.dictConfig(logging_config)

    logger = structlog.get_logger("simharness")
    logger.debug(
        "Structured logging initialized",
        log_level=log_level,
        log_format=log_format,
        file_logging=log_dir is not None,
    )
    return logger
