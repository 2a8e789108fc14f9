"""
Logging setup for the API process and the worker.
"""
import logging
import os
import sys

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_configured = False


def configure_logging(level: str = LOG_LEVEL) -> None:
    """Attach one stream handler to the root logger. Safe to call more than once."""
    global _configured
    if _configured:
        return

    root = logging.getLogger()
    root.setLevel(level)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)

    # third-party chatter
    for name in ("httpx", "httpcore", "web3", "botocore", "urllib3"):
        logging.getLogger(name).setLevel(logging.WARNING)

    _configured = True
