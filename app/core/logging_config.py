"""Logging setup shared by the API process and scripts."""

import logging
import sys

from app.core.settings import settings

_TEXT_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"
_PROD_FORMAT = (
    '{"ts": "%(asctime)s", "level": "%(levelname)s", '
    '"logger": "%(name)s", "message": "%(message)s"}'
)


def setup_logging() -> logging.Logger:
    """Configure root logging once and return the application logger."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    fmt = _PROD_FORMAT if settings.is_production else _TEXT_FORMAT

    root = logging.getLogger()
    if not any(getattr(h, "_app_handler", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(fmt))
        handler._app_handler = True
        root.addHandler(handler)
    root.setLevel(level)

    # Keep noisy libraries at WARNING unless SQL debugging is on
    if not settings.sql_debug:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return logging.getLogger("app")
