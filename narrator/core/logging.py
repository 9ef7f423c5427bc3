from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Chatty third-party loggers kept at WARNING.
_QUIET_LOGGERS = ("httpx", "httpcore", "urllib3", "celery.redirected")

_configured = False


def configure_logging(level: str | int = "INFO", *, force: bool = False) -> None:
    """Install a single stdout handler on the root logger.

    Safe to call more than once; later calls only adjust the level unless ``force`` is set.
    """

    global _configured
    numeric = logging.getLevelName(level.upper()) if isinstance(level, str) else int(level)
    if not isinstance(numeric, int):
        raise ValueError(f"Unknown log level {level!r}")

    root = logging.getLogger()
    if _configured and not force:
        root.setLevel(numeric)
        return

    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT))
    root.addHandler(handler)
    root.setLevel(numeric)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _configured = True
