"""
TouchCRM Configuration
Loads settings from environment variables with sensible defaults.
"""

import logging
import os
from pathlib import Path
from dotenv import load_dotenv

_logger = logging.getLogger(__name__)

# Load .env file
env_path = Path(__file__).parent.parent / '.env'
load_dotenv(env_path)

SCORING_MODELS = ('rhs', 'contact_score')
DECK_STRATEGIES = ('rhs', 'composite')


def _choice(name: str, default: str, allowed: tuple) -> str:
    value = os.getenv(name, default).strip().lower()
    if value not in allowed:
        _logger.warning(f"{name}={value!r} is not one of {allowed}; using {default!r}")
        return default
    return value


class Config:
    """Application configuration."""

    # Database: must be set in .env, never hardcode credentials here
    DATABASE_URL = os.getenv('DATABASE_URL')
    if not DATABASE_URL:
        _logger.critical("DATABASE_URL is not set, cannot start. Copy .env.example to .env and configure it.")
        raise ValueError("DATABASE_URL environment variable is not set. Copy .env.example to .env and configure it.")
    DB_CONNECT_TIMEOUT = int(os.getenv('DB_CONNECT_TIMEOUT', '10'))

    # Timezone used to decide what "today" is for the deck
    TIMEZONE = os.getenv('TIMEZONE', 'Europe/Berlin')

    # Identity and entitlement (supplied from outside, never verified here)
    DEFAULT_USER_ID = os.getenv('DEFAULT_USER_ID', 'me')
    IS_PREMIUM = os.getenv('IS_PREMIUM', 'false').strip().lower() in ('1', 'true', 'yes')

    # Daily deck quotas
    FREE_DECK_SIZE = int(os.getenv('FREE_DECK_SIZE', '5'))
    PREMIUM_DECK_SIZE = int(os.getenv('PREMIUM_DECK_SIZE', '10'))

    # Scoring
    SCORING_MODEL = _choice('SCORING_MODEL', 'rhs', SCORING_MODELS)
    DECK_STRATEGY = _choice('DECK_STRATEGY', 'rhs', DECK_STRATEGIES)
    SCORE_CACHE_TTL_SECONDS = int(os.getenv('SCORE_CACHE_TTL_SECONDS', '300'))
    SCORE_CACHE_MAX_ENTRIES = int(os.getenv('SCORE_CACHE_MAX_ENTRIES', '500'))
    SCORE_WINDOW_DAYS = int(os.getenv('SCORE_WINDOW_DAYS', '90'))
    SCORE_BATCH_SIZE = int(os.getenv('SCORE_BATCH_SIZE', '10'))

    # Background recalculation queue (jobs beyond this are dropped with a warning)
    RECALC_QUEUE_SIZE = int(os.getenv('RECALC_QUEUE_SIZE', '100'))


# Singleton instance
config = Config()
