"""
PostgreSQL access for the CRUD layer.

Each crm.py operation opens one connection, runs in one transaction and
closes it: commit when the block exits cleanly, rollback otherwise.
Sessions run in UTC; local "today" is decided in Python (engine.timeutil).
"""

from contextlib import contextmanager
from pathlib import Path
import logging

import psycopg2
from psycopg2.extras import RealDictCursor

from touchcrm.config import config

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / 'schema.sql'
APPLICATION_NAME = 'touchcrm'


def _connect():
    return psycopg2.connect(
        config.DATABASE_URL,
        connect_timeout=config.DB_CONNECT_TIMEOUT,
        application_name=APPLICATION_NAME,
        options='-c timezone=UTC',
    )


@contextmanager
def get_db_connection():
    """
    One transaction on a fresh connection.

        with get_db_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM deck_cards WHERE user_id = %s AND date < %s", (user_id, day))
    """
    conn = _connect()
    logger.debug("Database connection opened")
    try:
        yield conn
    except Exception as e:
        conn.rollback()
        logger.error(f"Transaction rolled back: {e}")
        raise
    else:
        conn.commit()
        logger.debug("Transaction committed")
    finally:
        conn.close()


@contextmanager
def get_db_cursor(dict_cursor=True):
    """Cursor inside get_db_connection(); rows come back as dicts unless dict_cursor=False."""
    with get_db_connection() as conn:
        cur = conn.cursor(cursor_factory=RealDictCursor if dict_cursor else None)
        try:
            yield cur
        finally:
            cur.close()


def init_schema():
    """Apply schema.sql. Every statement is IF NOT EXISTS, so re-running is harmless."""
    with get_db_cursor(dict_cursor=False) as cur:
        cur.execute(SCHEMA_PATH.read_text(encoding='utf-8'))
    logger.info(f"Schema applied from {SCHEMA_PATH.name}")
