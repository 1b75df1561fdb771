# ratchet/logger.py
import logging
import sys

from ratchet.config import config

def setup_logging(level: str = None):
    """Configures structured logging for the application."""
    logging.basicConfig(
        level=getattr(logging, (level or config.LOG_LEVEL).upper(), logging.INFO),
        format="%(asctime)s.%(msecs)03dZ [%(levelname)s] [%(name)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        stream=sys.stdout
    )
    # pybit logs every HTTP round-trip at DEBUG/INFO
    logging.getLogger("pybit").setLevel(logging.WARNING)
