"""
Environment variable readers with sanitization.

Whitespace is stripped by default: a stray newline in SECRET_KEY silently
breaks every signed cookie, and one in CRON_TOKEN locks out the scheduler.
"""
import logging
import os
from typing import Optional, Sequence

logger = logging.getLogger(__name__)


def get_env_str(
    name: str,
    default: Optional[str] = None,
    required: bool = False,
    strip: bool = True
) -> Optional[str]:
    """
    Read an environment variable; empty (after strip) counts as unset.

    Raises:
        ValueError: If required=True and the value is missing or empty.
    """
    value = os.getenv(name)
    if value is not None and strip:
        value = value.strip()

    if not value:
        if required:
            raise ValueError(
                f"Required environment variable '{name}' is not set or empty. "
                f"Please add it to your .env file or environment."
            )
        return default

    return value


def get_env_bool(name: str, default: bool = False) -> bool:
    """Truthy: 1/true/yes/on (case-insensitive). Unset or empty -> default."""
    value = os.getenv(name, "").strip().lower()
    if not value:
        return default
    return value in ("1", "true", "yes", "on")


def get_env_int(name: str, default: int = 0) -> int:
    """
    Read an integer environment variable.

    Empty or unparseable values fall back to default (a warning is logged
    for unparseable ones so typos in deployment config are visible).
    """
    value = get_env_str(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"[Config] {name}={value!r} is not an integer. Using default {default}.")
        return default


def get_env_choice(name: str, choices: Sequence[str], default: str) -> str:
    """
    Read a lower-cased enumerated setting (e.g. AD_ATTR_REDIRECT_METHOD).

    Raises:
        ValueError: The value is set but not one of `choices`.
    """
    value = (get_env_str(name) or default).lower()
    if value not in choices:
        raise ValueError(f"{name} must be one of {', '.join(choices)} (got {value!r}).")
    return value


def get_database_url(name: str = "DATABASE_URL") -> Optional[str]:
    """DATABASE_URL with the postgres:// alias hosted providers hand out rewritten to postgresql://."""
    url = get_env_str(name)
    if url and url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url
