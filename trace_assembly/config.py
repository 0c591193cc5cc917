"""Runtime configuration read from the environment.

Values come from environment variables, optionally loaded from a `.env` file
found from the current working directory. Existing environment variables win
over the file.
"""

import os
import logging
from typing import Optional

from dotenv import load_dotenv, find_dotenv

load_dotenv(find_dotenv(usecwd=True), override=False)

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    """Read an int env var, falling back to default on missing or bad values."""
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.debug(f"Ignoring non-integer {name}={raw!r}, using {default}")
        return default


def _env_float(name: str, default: float) -> float:
    """Read a float env var, falling back to default on missing or bad values."""
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.debug(f"Ignoring non-numeric {name}={raw!r}, using {default}")
        return default


# Span fetch API
API_URL = os.getenv("TRACER_API_URL", "http://localhost:3000")
API_KEY = os.getenv("TRACER_API_KEY", "")
PAGE_SIZE = _env_int("TRACER_PAGE_SIZE", 15)
DEFAULT_TIMEOUT = _env_float("TRACER_TIMEOUT", 30.0)

# Timeline layout: 5 axis steps of 166 units each
TIMELINE_AXIS_STEPS = _env_int("TIMELINE_AXIS_STEPS", 5)
TIMELINE_WIDTH = _env_float("TIMELINE_WIDTH", 166.0 * 5)
TIMELINE_MIN_LENGTH = _env_float("TIMELINE_MIN_LENGTH", 10.0)

# Optional JSON file replacing the built-in pricing table
PRICING_TABLE_PATH: Optional[str] = os.getenv("PRICING_TABLE_PATH") or None
