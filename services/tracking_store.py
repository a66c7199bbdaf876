"""
Postgres persistence for tracking definitions, clicks and conversions.

Tables (see migrations/versions/001_attribution_schema.py):
- tracking_definitions: read-only reference data for the engine
- clicks: append-only, one row per recorded visit
- conversions: one row per (conversion, attributed click)
"""
import logging
import secrets
from datetime import datetime, timezone

import psycopg2

from constants import DEFINITION_STATUS_ACTIVE
from database import get_db
from models import TrackingDefinition
from services.errors import PersistenceError
from utils.redaction import mask

logger = logging.getLogger(__name__)


def generate_tracking_id() -> str:
    """256 bits from the OS CSPRNG; never derived from the definition's attributes."""
    return secrets.token_hex(32)


class TrackingStore:
    def __init__(self, db=get_db):
        # `db` is a provider returning a PostgresDB (request-scoped by default)
        self._db = db

    # -------------------------------------------------------------------------
    # Tracking definitions
    # -------------------------------------------------------------------------
    def get_definition(self, tracking_id):
        row = self._db().execute(
            "SELECT * FROM tracking_definitions WHERE id = %s",
            (tracking_id,)
        ).fetchone()
        return TrackingDefinition.from_row(row) if row else None

    def get_active_ids(self, tracking_ids):
        """Subset of tracking_ids that belong to active definitions."""
        ids = list(tracking_ids)
        if not ids:
            return set()
        rows = self._db().execute(
            "SELECT id FROM tracking_definitions WHERE id = ANY(%s) AND status = %s",
            (ids, DEFINITION_STATUS_ACTIVE)
        ).fetchall()
        return {r['id'] for r in rows}

    def create_definition(self, destination, utm_source, utm_medium, utm_campaign,
                          utm_content=None, utm_term=None, status=DEFINITION_STATUS_ACTIVE):
        """Seeding helper for the CLI and tests; the admin UI owns real CRUD."""
        db = self._db()
        tracking_id = generate_tracking_id()
        row = db.execute(
            """
            INSERT INTO tracking_definitions
                (id, destination, utm_source, utm_medium, utm_campaign, utm_content, utm_term, status)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (tracking_id, destination, utm_source, utm_medium, utm_campaign,
             utm_content or None, utm_term or None, status)
        ).fetchone()
        db.commit()
        logger.info(f"[Tracking] Created definition {mask(tracking_id)}", extra={"tracking_id": mask(tracking_id)})
        return TrackingDefinition.from_row(row)

    # -------------------------------------------------------------------------
    # Clicks
    # -------------------------------------------------------------------------
    def insert_click(self, click):
        db = self._db()
        try:
            with db.transaction():
                row = db.execute(
                    """
                    INSERT INTO clicks
                        (tracking_id, clicked_at, utm_source, utm_medium, utm_campaign,
                         utm_content, utm_term, utm_id, utm_source_platform, session_ref)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (click.tracking_id, click.clicked_at, click.utm_source, click.utm_medium,
                     click.utm_campaign, click.utm_content, click.utm_term, click.utm_id,
                     click.utm_source_platform, click.session_ref)
                ).fetchone()
        except psycopg2.Error as e:
            raise PersistenceError(f"Click write failed: {e}") from e
        click.id = row['id']
        return click.id

    # -------------------------------------------------------------------------
    # Conversions
    # -------------------------------------------------------------------------
    def record_conversions(self, weights, session, converted_at):
        """
        Write one conversion row per identifier with weight > 0, all or nothing.

        Each row links to the identifier's most recent click, preferring the
        click whose timestamp matches the session entry. Identifiers without any
        click row are skipped.

        Returns:
            {tracking_id: conversion_id} for the rows written.

        Raises:
            PersistenceError: the transaction was rolled back.
        """
        db = self._db()
        written = {}
        try:
            with db.transaction():
                for tracking_id, weight in weights.items():
                    if weight <= 0:
                        continue

                    clicked_at = datetime.fromtimestamp(session[tracking_id], tz=timezone.utc)
                    click = db.execute(
                        """
                        SELECT id FROM clicks
                        WHERE tracking_id = %s
                        ORDER BY (clicked_at = %s) DESC, clicked_at DESC, id DESC
                        LIMIT 1
                        """,
                        (tracking_id, clicked_at)
                    ).fetchone()

                    if not click:
                        logger.warning(
                            "[Conversion] No click row for attributed identifier; skipped.",
                            extra={"tracking_id": mask(tracking_id), "stage": "persist"},
                        )
                        continue

                    row = db.execute(
                        """
                        INSERT INTO conversions (click_id, attribution, converted_at)
                        VALUES (%s, %s, %s)
                        RETURNING id
                        """,
                        (click['id'], float(weight), converted_at)
                    ).fetchone()
                    written[tracking_id] = row['id']
        except psycopg2.Error as e:
            raise PersistenceError(f"Conversion write failed: {e}") from e

        return written

    def get_campaign_data(self, tracking_ids):
        """
        Campaign dimensions per identifier.

        Source/medium/campaign come from the definition; content/term/id/
        source_platform from the identifier's most recent click.
        """
        ids = list(tracking_ids)
        if not ids:
            return {}

        db = self._db()
        result = {}
        for row in db.execute(
            """
            SELECT id, utm_source, utm_medium, utm_campaign
            FROM tracking_definitions
            WHERE id = ANY(%s)
            """,
            (ids,)
        ).fetchall():
            result[row['id']] = {
                "utm_source": row['utm_source'] or "",
                "utm_medium": row['utm_medium'] or "",
                "utm_campaign": row['utm_campaign'] or "",
            }

        for row in db.execute(
            """
            SELECT DISTINCT ON (tracking_id)
                tracking_id, utm_content, utm_term, utm_id, utm_source_platform
            FROM clicks
            WHERE tracking_id = ANY(%s)
            ORDER BY tracking_id, clicked_at DESC, id DESC
            """,
            (ids,)
        ).fetchall():
            result.setdefault(row['tracking_id'], {}).update({
                "utm_content": row['utm_content'] or "",
                "utm_term": row['utm_term'] or "",
                "utm_id": row['utm_id'] or "",
                "utm_source_platform": row['utm_source_platform'] or "",
            })

        return result
