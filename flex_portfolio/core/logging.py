import logging
import sys

_NOISY_LOGGERS = ("sqlalchemy.engine", "httpx", "httpcore", "aiosqlite", "asyncio")


def setup_logging(level: int | str = logging.INFO) -> None:
    """Send service logs to stdout; a no-op apart from the level if handlers already exist."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    if root_logger.handlers:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root_logger.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
