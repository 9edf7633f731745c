from __future__ import annotations

import logging
import os
from typing import Optional

LOG_LEVEL_ENV = "CFOPS_LOG_LEVEL"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def resolve_level(level: Optional[str] = None, default: str = "INFO") -> int:
    name = (level or os.getenv(LOG_LEVEL_ENV) or default).upper()
    value = logging.getLevelName(name)
    return value if isinstance(value, int) else logging.INFO


def configure_logging(level: Optional[str] = None, default: str = "INFO") -> None:
    """Configure root logging on stderr for an entry point."""
    logging.basicConfig(level=resolve_level(level, default), format=LOG_FORMAT)
