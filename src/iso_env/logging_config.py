"""Logging setup for iso-env entry points.

Library modules only create module loggers; handlers are installed here by
whichever process is the entry point.
"""

from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(debug: bool = False) -> None:
    """Send iso-env logs to stderr, at DEBUG level when debug is set."""
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr)
    logging.getLogger("iso_env").setLevel(level)
    # docker/urllib3 chatter is only useful when debugging the engine itself
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("docker").setLevel(logging.WARNING)
