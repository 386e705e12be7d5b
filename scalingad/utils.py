"""Utility functions shared across ScalingAd modules."""

import logging
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Generate a new record identifier."""
    return str(uuid.uuid4())


def parse_datetime(value) -> Optional[datetime]:
    """Parse an ISO-8601 string (or pass through a datetime) into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            logger.debug(f"Could not parse datetime: {value!r}")
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def get_scalingad_home() -> Path:
    """Get the ScalingAd data directory.

    Honors SCALINGAD_HOME, otherwise ~/.scalingad.
    """
    env_home = os.environ.get("SCALINGAD_HOME")
    if env_home:
        return Path(env_home).expanduser()
    return Path.home() / ".scalingad"
