"""Process-wide settings accessor.

    from hookrelay.core.settings import get_settings

    settings = get_settings()

Settings are read from the environment once. A worker must not start with
a bad configuration, so any load or validation error is logged at CRITICAL
and turned into SystemExit(1). Tests call clear_settings_cache() to pick
up a changed environment.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from pydantic import ValidationError

from hookrelay.core.config import ConfigValidationError, Settings, validate_settings

logger = logging.getLogger(__name__)


def format_validation_errors(error: ValidationError) -> str:
    """Render pydantic errors as one "  - nested.field: message" line each."""
    return "\n".join(
        f"  - {'.'.join(str(part) for part in item['loc']) or '<root>'}: {item['msg']}"
        for item in error.errors()
    )


def _load_settings() -> Settings:
    settings = Settings()  # type: ignore[call-arg]
    validate_settings(settings)
    return settings


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load, validate and cache the settings.

    Raises:
        SystemExit: If the environment does not produce valid settings.
    """
    logger.info("Loading settings from environment")
    try:
        settings = _load_settings()
    except ValidationError as e:
        logger.critical("Invalid configuration:\n%s", format_validation_errors(e))
        raise SystemExit(1) from e
    except ConfigValidationError as e:
        logger.critical("Invalid configuration: field=%s, error=%s", e.field or "unknown", e.message)
        raise SystemExit(1) from e
    except Exception as e:
        logger.critical("Failed to load configuration: %s", e)
        raise SystemExit(1) from e

    logger.info(
        "Configuration loaded: environment=%s, concurrency=%d, persist_jobs=%s",
        settings.environment.value,
        settings.jobs.concurrency,
        settings.jobs.persist_jobs,
    )
    return settings


def clear_settings_cache() -> None:
    """Drop the cached settings so the next get_settings() reloads them."""
    get_settings.cache_clear()


def get_settings_safe() -> Settings | None:
    """Like get_settings(), but returns None instead of exiting."""
    try:
        return get_settings()
    except SystemExit:
        return None
