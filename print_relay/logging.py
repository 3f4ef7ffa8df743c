"""Console and rotating file logging for the relay process."""

from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Chatty libraries kept at WARNING unless network logging is on.
NETWORK_LOGGERS = ("aiohttp.access", "aiohttp.client", "asyncio")


def configure_logging(
    level: str = "INFO",
    *,
    log_path: Optional[Path] = None,
    log_network: bool = False,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 3,
) -> None:
    """Route log records to the console and, optionally, a rotating file.

    Args:
        level: Level name such as ``"INFO"``; unknown names fall back to INFO.
        log_path: File to append to. The relay runs unattended for days, so
            the file rolls over at ``max_bytes`` keeping ``backup_count``
            older copies (``relay.log.1`` and so on).
        log_network: Leave :data:`NETWORK_LOGGERS` at ``level`` instead of
            raising them to WARNING.
        max_bytes: Rollover size; ``0`` disables rotation.
        backup_count: Rotated files kept next to ``log_path``.
    """

    logging.captureWarnings(True)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )

    if log_path:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=max(0, max_bytes),
            backupCount=max(0, backup_count),
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)

    network_level = root.level if log_network else logging.WARNING
    for name in NETWORK_LOGGERS:
        logging.getLogger(name).setLevel(network_level)
