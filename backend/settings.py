import logging
import os

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///./recurring.db"
DEFAULT_RULE_TIMEOUT_SECONDS = 30.0


def get_database_url() -> str:
    return os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)


def get_rule_timeout() -> float | None:
    """Per-rule processing limit in seconds, or None when disabled with 0."""
    raw = os.getenv("RECURRING_RULE_TIMEOUT_SECONDS", str(DEFAULT_RULE_TIMEOUT_SECONDS))
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring invalid RECURRING_RULE_TIMEOUT_SECONDS=%r", raw)
        return DEFAULT_RULE_TIMEOUT_SECONDS
    return value if value > 0 else None
