import logging
import sys

from pythonjsonlogger.json import JsonFormatter

from .config import Settings


def setup_logging(settings: Settings) -> None:
    """Configure the root logger once, as text for development or JSON for shipping to a collector."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level, logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    if settings.log_format.lower() == "json":
        formatter = JsonFormatter(
            fmt="%(asctime)s %(name)s %(levelname)s %(message)s",
            rename_fields={"asctime": "timestamp", "name": "logger", "levelname": "level"},
        )
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    handler.setFormatter(formatter)
    root.addHandler(handler)

    logging.getLogger(__name__).info("Logging initialized at level %s", settings.log_level)
