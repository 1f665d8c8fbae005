import sys

from loguru import logger


def setup_logging(json: bool = False, level: str = "INFO") -> None:
    logger.remove()
    fmt = "{time:YYYY-MM-DD HH:mm:ss} | {level} | {name} | {message}"
    logger.add(
        sys.stdout,
        format=fmt,
        level=level,
        serialize=json,
        colorize=not json,
        backtrace=False,
        enqueue=True,
    )


__all__ = ["setup_logging"]
