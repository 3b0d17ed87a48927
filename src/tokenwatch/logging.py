import logging
import sys

import structlog


def setup_logging(level: "str", verbose: "bool" = False) -> "None":
    """
    maps string log level to logging module levels and configures
    structlog with a console renderer and timestamping. Logs go to
    stderr so that reports on stdout stay readable in watch mode.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    if verbose:
        numeric_level = logging.DEBUG

    logging.basicConfig(
        format="%(message)s",
        level=numeric_level,
        stream=sys.stderr,
        force=True,
    )
    # httpx logs every request at INFO; only keep it for verbose runs
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
