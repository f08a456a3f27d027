"""Process-wide logging setup shared by the API and the ingestion worker."""

import logging

__all__ = ["LOGGER_NAME", "setup_logger"]

LOGGER_NAME = "shortlinks"


def setup_logger(level: str = "INFO") -> logging.Logger:
    """Attach one stream handler to the ``shortlinks`` logger tree (idempotent)."""
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(level.upper())
    return logger
