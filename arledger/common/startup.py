"""Log the resolved arledger settings once when the API process boots.

Operators read this line to confirm which database, timezone and worker
mode a container came up with; credentials are masked.
"""

from arledger.common.config import Settings
from arledger.common.logging import logger

# Settings fields worth seeing at boot; the rest stay at their defaults in most deployments.
STARTUP_FIELDS = (
    "service_name",
    "database_url",
    "api_key",
    "timezone",
    "sweep_hour",
    "telegram_bot_token",
    "run_workers",
    "tracing_enabled",
)

_SECRET_MARKERS = ("key", "secret", "password", "token", "database_url")


def _masked(field: str, value) -> str:
    if value in (None, ""):
        return "<unset>"
    if any(marker in field for marker in _SECRET_MARKERS):
        return "<redacted>"
    return str(value)


def log_startup_config(settings: Settings, fields: tuple[str, ...] = STARTUP_FIELDS) -> dict[str, str]:
    """Log the chosen settings fields with credentials masked and return what was logged."""

    config = {field: _masked(field, getattr(settings, field)) for field in fields}
    logger.info("startup_config=%s", config)
    return config
