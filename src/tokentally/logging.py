import logging

import structlog

LOG_FORMATS = ("console", "json")


def setup_logging(level: "str", log_format: "str" = "console") -> "None":
    """
    maps string log level to logging module levels and configures
    structlog with timestamping and either a console renderer or
    one JSON object per line, for running under a supervisor.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        format="%(message)s",
        level=numeric_level,
    )

    renderer: "structlog.typing.Processor"
    if log_format == "json":
        renderer = structlog.processors.JSONRenderer()
        exc_processors = [structlog.processors.format_exc_info]
    else:
        # the console renderer formats tracebacks itself
        renderer = structlog.dev.ConsoleRenderer()
        exc_processors = []

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            *exc_processors,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
