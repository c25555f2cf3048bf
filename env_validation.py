"""Environment variable validation and management."""

import os
import logging
from typing import Dict
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass

def validate_environment() -> None:
    """Validate critical environment variables.

    Raises EnvironmentError if validation fails.
    """
    # Nothing is strictly required; every setting has a working default.
    required_vars: Dict[str, str] = {}

    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "data.db",
        "BIBENDO_API_URL": os.getenv("BIBENDO_API_URL") or "https://serious-gaming-platform.appspot.com/api",
        "TOKEN_TTL_MINUTES": os.getenv("TOKEN_TTL_MINUTES") or "30",
        "TIMELINE_TZ": os.getenv("TIMELINE_TZ") or "Europe/Amsterdam",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars = {
        "GAME_API_TIMEOUT": "Seconds to wait for the game platform",
        "LOG_LEVEL": "Root logging level",
    }

    # Check required variables
    missing = []
    for var, description in required_vars.items():
        if not os.getenv(var):
            missing.append(f"{var} ({description})")

    if missing:
        raise EnvironmentError(
            f"Missing required environment variables: {', '.join(missing)}"
        )

    # Validate URLs
    url_vars = {"BIBENDO_API_URL"}
    for var in url_vars:
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise EnvironmentError(f"Invalid URL format for {var}: {value}")

    positive_ints = {"TOKEN_TTL_MINUTES"}
    for var in positive_ints:
        value = os.getenv(var, "")
        if not value.isdigit() or int(value) < 1:
            raise EnvironmentError(f"{var} must be a positive integer, got {value!r}")

    timeout = os.getenv("GAME_API_TIMEOUT")
    if timeout:
        try:
            if float(timeout) <= 0:
                raise ValueError
        except ValueError:
            raise EnvironmentError(f"GAME_API_TIMEOUT must be a positive number, got {timeout!r}")

    try:
        ZoneInfo(os.environ["TIMELINE_TZ"])
    except (ZoneInfoNotFoundError, ValueError):
        raise EnvironmentError(f"Unknown time zone in TIMELINE_TZ: {os.environ['TIMELINE_TZ']}")

    # Log optional variables status
    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.debug(f"Optional environment variable not set: {var} ({description})")
