import sys

from loguru import logger

from .config import settings

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level}</level> | "
    "<cyan>{module}.py: line {line}</cyan> | "
    "{message}"
)


def setup_logging(level: str | None = None, log_file: str | None = None):
    """Replace loguru's default sink with the app's stdout (and optional file) sink."""
    logger.remove()

    logger.add(
        sys.stdout,
        level=level or "INFO",
        colorize=True,
        format=LOG_FORMAT,
        enqueue=True,
    )

    if log_file:
        logger.add(
            log_file,
            level=level or "INFO",
            format=LOG_FORMAT,
            rotation="10 MB",
            retention=5,
            enqueue=True,
        )


setup_logging(
    settings["logging"].get("level"),
    settings["logging"].get("file"),
)


def get_logger(name):
    return logger.bind(name=name) if name else logger
