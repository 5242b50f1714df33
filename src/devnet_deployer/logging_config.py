"""structlog setup for the deployer.

Logs go to stderr so tables and JSON printed by the CLI stay clean on stdout.
Every line of a run carries the network name once `bind_network` is called.
"""

import logging
import os
import sys
from typing import Literal

import structlog
from structlog.types import Processor

# stdlib loggers that flood DEBUG output with per-request lines
NOISY_LOGGERS = {"urllib3": logging.INFO, "docker": logging.INFO, "httpx": logging.WARNING}


def _renderer(log_format: str) -> Processor:
    if log_format == "json":
        return structlog.processors.JSONRenderer(sort_keys=False)
    return structlog.dev.ConsoleRenderer(
        colors=sys.stderr.isatty(),
        exception_formatter=structlog.dev.plain_traceback,
    )


def setup_logging(
    log_format: Literal["json", "console"] | None = None,
    log_level: str | None = None,
) -> None:
    """Configure structured logging with structlog.

    Args:
        log_format: "console" for a terminal, "json" for piping into other tools.
                   Falls back to DEVNET_LOG_FORMAT or "console".
        log_level: DEBUG, INFO, WARNING or ERROR.
                  Falls back to DEVNET_VERBOSITY or "INFO".
    """
    log_format = log_format or os.getenv("DEVNET_LOG_FORMAT", "console")
    log_level = (log_level or os.getenv("DEVNET_VERBOSITY", "INFO")).upper()
    level = logging.getLevelName(log_level)
    if not isinstance(level, int):
        level = logging.INFO

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level, force=True)
    for name, floor in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(max(level, floor))

    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=False),
        structlog.processors.CallsiteParameterAdder(
            {
                structlog.processors.CallsiteParameter.FUNC_NAME,
                structlog.processors.CallsiteParameter.LINENO,
            }
        ),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        _renderer(log_format),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    structlog.get_logger().debug("logging_initialized", log_format=log_format, log_level=log_level)


def bind_network(network: str) -> None:
    """Attach the network name to every log line of the current run."""
    structlog.contextvars.bind_contextvars(network=network)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
