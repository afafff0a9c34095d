import sys

from loguru import logger

from flowlogic.config import settings

LOG_FORMAT = (
    '<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | '
    '<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>'
)


def configure_logging(level: str | None = None) -> None:
    """Route all application logging through a single loguru sink.

    Called once by each process entry point (the web app factory and the
    import CLI). Modules just ``from loguru import logger``.
    """
    logger.remove()
    logger.add(sys.stderr, level=(level or settings.log_level).upper(), format=LOG_FORMAT)
