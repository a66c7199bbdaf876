"""
Platform click identifiers (gclid, fbclid, msclkid, ...).

One row per (tracking_id, platform); a newer click on the same pair overwrites
the value. Captured regardless of consent state, since the value comes from
the ad platform's own query string and not from a visitor cookie.
"""
import logging

import psycopg2

from constants import MAX_DIMENSION_LENGTH
from database import get_db
from services.errors import PersistenceError

logger = logging.getLogger(__name__)


class ClickIdStore:
    def __init__(self, db=get_db):
        self._db = db

    def store(self, tracking_id, platform, click_id):
        db = self._db()
        try:
            with db.transaction():
                db.execute(
                    """
                    INSERT INTO click_ids (tracking_id, platform, click_id, clicked_at)
                    VALUES (%s, %s, %s, NOW())
                    ON CONFLICT (tracking_id, platform)
                    DO UPDATE SET click_id = EXCLUDED.click_id, clicked_at = EXCLUDED.clicked_at
                    """,
                    (tracking_id, platform, click_id[:MAX_DIMENSION_LENGTH])
                )
        except psycopg2.Error as e:
            raise PersistenceError(f"Click id write failed: {e}") from e

    def get_for_ids(self, tracking_ids):
        """Returns {tracking_id: {platform: click_id}}."""
        ids = list(tracking_ids)
        if not ids:
            return {}

        rows = self._db().execute(
            "SELECT tracking_id, platform, click_id FROM click_ids WHERE tracking_id = ANY(%s)",
            (ids,)
        ).fetchall()

        result = {}
        for row in rows:
            result.setdefault(row['tracking_id'], {})[row['platform']] = row['click_id']
        return result

    def cleanup(self, days):
        db = self._db()
        cursor = db.execute(
            "DELETE FROM click_ids WHERE clicked_at < NOW() - (%s * INTERVAL '1 day')",
            (days,)
        )
        db.commit()
        deleted = cursor.rowcount
        if deleted:
            logger.info(f"[ClickIds] Deleted {deleted} click id(s) older than {days} days")
        return deleted
