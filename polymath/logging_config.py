"""
Polymath Brain - Logging

loguru is the single sink; stdlib ``logging`` records from LangChain,
httpx and openai are intercepted and re-emitted through it.
"""

import logging
import sys

from loguru import logger


LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)

_NOISY_LOGGERS = ("httpx", "httpcore", "openai", "langchain", "langgraph")


class InterceptHandler(logging.Handler):
    """
    Intercept standard logging and redirect to loguru
    """

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find caller from where originated the logged message
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


def setup_logging(level: str = "INFO") -> None:
    """Route every log record through one stderr sink at ``level``"""
    level = (level or "INFO").upper()
    logger.remove()
    logger.add(sys.stderr, colorize=True, format=LOG_FORMAT, level=level)

    logging.root.handlers = [InterceptHandler()]
    logging.root.setLevel(level)

    for name in list(logging.root.manager.loggerDict.keys()):
        logging.getLogger(name).handlers = []
        logging.getLogger(name).propagate = True

    # Third-party request chatter stays quiet unless we are debugging
    if level != "DEBUG":
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    logger.debug(f"Logging configured - Level: {level}")


__all__ = ["InterceptHandler", "setup_logging"]
