"""Logging setup shared by the worker and scripts."""

import logging

from docengine.shared.config import Settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(settings: Settings) -> None:
    """Configure root logging from settings.

    Args:
        settings: Application settings (log_level is applied)
    """
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT, force=True)
    # Provider SDKs log every HTTP request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
