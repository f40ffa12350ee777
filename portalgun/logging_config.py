"""Structured logging for portal-gun.

Everything goes to stderr: stdout belongs to the endpoint prompt and the
``--list`` table.
"""

import logging
import os
import sys
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import structlog

# Chatty libraries that only matter when debugging a session
NOISY_LOGGERS = ("botocore", "boto3", "urllib3", "asyncio", "uvicorn.access")


def setup_logging(verbose: bool = False, log_format: Optional[str] = None) -> None:
    """Configure structlog on top of stdlib logging.

    Args:
        verbose: Log at DEBUG, including the AWS SDK and uvicorn access logs.
            Otherwise LOG_LEVEL decides and those libraries stay at WARNING.
        log_format: ``console`` or ``json``; defaults to LOG_FORMAT.
    """
    log_level = "DEBUG" if verbose else os.getenv("LOG_LEVEL", "INFO").upper()
    numeric_level = getattr(logging, log_level, logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=numeric_level)
    logging.getLogger().setLevel(numeric_level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(numeric_level if verbose else max(numeric_level, logging.WARNING))

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _renderer(log_format or os.getenv("LOG_FORMAT", "console")),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    structlog.get_logger(__name__).debug("Logging configured", log_level=log_level, verbose=verbose)


def _renderer(log_format: str) -> Any:
    if log_format.lower() == "json":
        return structlog.processors.JSONRenderer()
    # Colours only when a person is watching the terminal
    return structlog.dev.ConsoleRenderer(
        colors=sys.stderr.isatty(),
        exception_formatter=structlog.dev.plain_traceback,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def log_step(logger: structlog.stdlib.BoundLogger, step: str, **context: Any) -> Iterator[Dict[str, Any]]:
    """Log the start and outcome of one pipeline step.

    The yielded dict collects result fields for the closing line. A failing
    step is logged with its error and the exception propagates.

    Example:
        with log_step(logger, "build_catalog", cluster="staging") as result:
            result["endpoints"] = 3
    """
    logger.debug("Step started", step=step, **context)
    result: Dict[str, Any] = {}
    started = time.monotonic()
    try:
        yield result
    except Exception as e:
        logger.debug("Step failed", step=step, error=str(e),
                     error_type=type(e).__name__,
                     duration_ms=_elapsed_ms(started))
        raise
    logger.debug("Step finished", step=step, duration_ms=_elapsed_ms(started), **result)


def _elapsed_ms(started: float) -> float:
    return round((time.monotonic() - started) * 1000, 2)


def log_http_exchange(logger: structlog.stdlib.BoundLogger,
                      method: str,
                      path: str,
                      status_code: int,
                      duration_ms: float,
                      **kwargs: Any) -> None:
    """Log one dashboard request and its response on a single line."""
    log = logger.warning if status_code >= 500 else logger.debug
    log("HTTP request", method=method, path=path, status_code=status_code,
        duration_ms=duration_ms, **kwargs)


def log_aws_operation(logger: structlog.stdlib.BoundLogger, operation: str, cluster: str, **kwargs: Any) -> None:
    """Log an ECS API call before it is made.

    Args:
        logger: The logger instance
        operation: ECS operation name (ListTasks, DescribeTasks, ...)
        cluster: Cluster name
        **kwargs: Additional operation details
    """
    logger.debug("AWS operation", operation=operation, cluster=cluster, **kwargs)


def log_tunnel_event(logger: structlog.stdlib.BoundLogger, event_type: str, **kwargs: Any) -> None:
    """Log a forwarding agent lifecycle event (started, exited, terminating, stream_closed)."""
    logger.info("Tunnel event", event_type=event_type, **kwargs)
