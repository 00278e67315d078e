import logging
import os
from typing import Optional

import structlog
try:
    from pythonjsonlogger.json import JsonFormatter
except ImportError:
    # python-json-logger < 3.1 only ships the old module path
    from pythonjsonlogger.jsonlogger import JsonFormatter


def configure_logging(log_file: Optional[str] = None, level: str = "INFO"):
    """
    Route structlog through the stdlib root logger, JSON-formatted, to stdout
    and optionally a file (`log_file` or SIGNAL_HUB_LOG_FILE).
    """
    logger = logging.getLogger()
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    formatter = JsonFormatter()

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    handlers = [stream_handler]

    log_path = log_file or os.environ.get("SIGNAL_HUB_LOG_FILE")
    if log_path:
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    for old in logger.handlers:
        if old not in handlers:
            old.close()
    logger.handlers = handlers
    logger.propagate = False

    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str):
    return structlog.get_logger(name)
