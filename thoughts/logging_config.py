"""Logging setup for the Thoughts journal.

Console logging goes to stdout at the configured level. When enabled, a
size-rotated log file is also written under the config directory.
"""

from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler

from thoughts.config import Settings, get_settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings | None = None) -> logging.Logger:
    """Configure root logging from settings.

    Args:
        settings: Optional settings override. Uses get_settings() if not provided.

    Returns:
        The root logger.
    """
    if settings is None:
        settings = get_settings()

    level = logging.DEBUG if settings.DEBUG else getattr(logging, settings.LOG_LEVEL)

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        stream=sys.stdout,
    )

    root = logging.getLogger()
    root.setLevel(level)

    if settings.LOG_FILE_ENABLED:
        log_path = settings.log_file_path
        already_attached = any(
            isinstance(h, RotatingFileHandler)
            and getattr(h, "baseFilename", None) == os.path.abspath(log_path)
            for h in root.handlers
        )
        if not already_attached:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                log_path,
                maxBytes=settings.LOG_MAX_BYTES,
                backupCount=settings.LOG_BACKUP_COUNT,
                encoding="utf-8",
            )
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            root.addHandler(file_handler)
            logger.info(
                "File logging enabled",
                extra={"log_file": str(log_path), "max_bytes": settings.LOG_MAX_BYTES},
            )

    return root
