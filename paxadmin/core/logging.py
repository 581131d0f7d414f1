from __future__ import annotations

import logging

from paxadmin.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Configure the root logger once; repeated app factories must not stack handlers.
    settings = get_settings()
    root = logging.getLogger()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    root.setLevel(level)
    if any(getattr(handler, "_paxadmin", False) for handler in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    handler._paxadmin = True  # type: ignore[attr-defined]
    root.addHandler(handler)
