"""Logging setup for ScalingAd.

Library modules log through ``logging.getLogger(__name__)``; entry points
(CLI, backend) call :func:`setup_logging` once at startup.
"""

import logging
import os
from typing import Optional

DEFAULT_FORMAT = "[%(asctime)s] %(levelname)s in %(name)s: %(message)s"

_configured = False


def setup_logging(level: Optional[str] = None, fmt: str = DEFAULT_FORMAT) -> None:
    """Configure root logging once per process.

    Args:
        level: Level name; falls back to SCALINGAD_LOG_LEVEL, then WARNING
        fmt: Log record format
    """
    global _configured
    level_name = (level or os.environ.get("SCALINGAD_LOG_LEVEL") or "WARNING").upper()
    numeric = getattr(logging, level_name, logging.WARNING)
    if _configured:
        logging.getLogger().setLevel(numeric)
        return
    logging.basicConfig(level=numeric, format=fmt)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Get a namespaced logger (``scalingad.<name>`` unless already qualified)."""
    if not name.startswith("scalingad"):
        name = f"scalingad.{name}"
    return logging.getLogger(name)
