#!/usr/bin/env python3
"""Wait for Postgres to be reachable.

Run before `alembic upgrade head` and by the queue worker at startup.

This checks real DB readiness (credentials + accept loop), not just TCP.
"""
import logging
import os
import sys
import time

import psycopg2

# Ensure project root is in path
sys.path.append(os.getcwd())

from utils.env import get_database_url, get_env_int
from utils.redaction import redact_database_url

logger = logging.getLogger("wait_for_db")


def wait_for_db(database_url: str, timeout_seconds: int = 60, sleep_seconds: float = 1.0) -> None:
    """Return when the DB answers SELECT 1; re-raise the last error on timeout."""
    start = time.time()

    # Short connection timeout per attempt
    connect_kwargs = {
        "connect_timeout": 3,
        "sslmode": os.environ.get("PGSSLMODE", "prefer"),
    }

    while True:
        try:
            conn = psycopg2.connect(database_url, **connect_kwargs)
            try:
                cur = conn.cursor()
                cur.execute("SELECT 1")
                cur.fetchone()
                cur.close()
            finally:
                conn.close()
            logger.info("[wait_for_db] Postgres is ready")
            return
        except psycopg2.Error as e:
            elapsed = time.time() - start
            if elapsed >= timeout_seconds:
                logger.error(f"[wait_for_db] TIMEOUT after {timeout_seconds}s: {type(e).__name__}")
                raise
            logger.info(f"[wait_for_db] Not ready yet ({elapsed:.1f}s): {type(e).__name__}")
            time.sleep(sleep_seconds)


def main() -> int:
    if not logging.getLogger().handlers:
        logging.basicConfig(stream=sys.stdout, level=logging.INFO, format="%(message)s")

    database_url = get_database_url()
    if not database_url:
        logger.error("[wait_for_db] DATABASE_URL is not set")
        return 1

    timeout = get_env_int("DB_WAIT_TIMEOUT", default=60)
    logger.info(f"[wait_for_db] Waiting for Postgres: {redact_database_url(database_url)}")
    try:
        wait_for_db(database_url, timeout_seconds=timeout)
        return 0
    except psycopg2.Error:
        return 1


if __name__ == "__main__":
    sys.exit(main())
