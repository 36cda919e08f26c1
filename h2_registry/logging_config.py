import logging
import sys

from h2_registry.settings import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger("h2_registry")

if not logger.handlers:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)

logger.setLevel(settings.LOG_LEVEL.upper())


def set_logger_and_children_level(level: str) -> None:
    """Set the level of the registry logger and every logger beneath it."""
    level = level.upper()
    logger.setLevel(level)

    for name, child in logging.root.manager.loggerDict.items():
        if name.startswith(f"{logger.name}.") and isinstance(child, logging.Logger):
            child.setLevel(level)
