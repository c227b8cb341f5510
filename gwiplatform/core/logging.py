from __future__ import annotations

import logging

from gwiplatform.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging() -> None:
    # Configure the root logger once per process; later calls only adjust the level.
    global _configured
    settings = get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    if not _configured:
        logging.basicConfig(level=level, format=_LOG_FORMAT)
        _configured = True
    logging.getLogger().setLevel(level)
    # SQL echo is noisy at INFO; keep it behind an explicit DEBUG level.
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    )
