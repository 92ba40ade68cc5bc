# consentledger/log.py
import logging
import os
import sys
import time
from typing import Optional

ROOT_LOGGER = "consentledger"
_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def get_logger(name: str = ROOT_LOGGER, level: Optional[str] = None) -> logging.Logger:
    """
    Child loggers of `consentledger`. Handlers are attached once, on the root of the
    hierarchy, and only when the embedding application has not configured logging.
    """
    if name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
        name = f"{ROOT_LOGGER}.{name}"
    root = logging.getLogger(ROOT_LOGGER)

    if not root.handlers and not logging.getLogger().handlers:
        handler = logging.StreamHandler(sys.stderr)
        formatter = logging.Formatter(fmt=_FORMAT, datefmt="%Y-%m-%dT%H:%M:%SZ")
        formatter.converter = time.gmtime  # UTC timestamps
        handler.setFormatter(formatter)
        root.addHandler(handler)
        root.setLevel(os.environ.get("CONSENT_LOG_LEVEL", "WARNING").upper())

    if level:
        root.setLevel(level.upper())
    return logging.getLogger(name)
