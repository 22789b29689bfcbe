import logging
import sys

import structlog
from pythonjsonlogger import jsonlogger


def setup_logging(json_output: bool = False, level: int = logging.INFO):
    """Structured logging setup shared by the API process and the jobs."""

    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(jsonlogger.JsonFormatter(
            fmt="%(asctime)s %(name)s %(levelname)s %(message)s"
        ))
    else:
        handler.setFormatter(logging.Formatter('%(levelname)-8s %(name)s: %(message)s'))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    # SQL echo is too noisy outside debugging sessions
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    return structlog.get_logger()
