"""
Report Queue: durable jobs that carry attribution results to reporters.

Lifecycle: pending -> processing -> done | pending (retry scheduled) | failed.

Retries are round-based. With attempts_per_round=3, retry_delay=60,
max_rounds=3, round_delay=6h a job is tried 3 times a minute apart, then waits
6 hours, and after 9 failures in total it is parked as 'failed' for an
operator to inspect.
"""
import logging
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from psycopg2.extras import Json

from constants import (
    JOB_STATUS_PENDING,
    JOB_STATUS_PROCESSING,
    JOB_STATUS_DONE,
    JOB_STATUS_FAILED,
    JOB_STATUSES,
)
from database import get_db
from models import QueueJob

logger = logging.getLogger(__name__)

RETRY_PARAM_KEYS = ("attempts_per_round", "retry_delay", "max_rounds", "round_delay")


def _utcnow():
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class FailureTransition:
    attempts: int
    status: str
    retry_after: Optional[datetime]


def compute_failure_transition(attempts, params, now) -> FailureTransition:
    """
    Where a job goes after its (attempts + 1)-th failure.

    - total attempts reach attempts_per_round * max_rounds -> failed, no retry
    - end of a round (attempts is a multiple of attempts_per_round) -> round_delay
    - otherwise -> retry_delay
    """
    k = attempts + 1
    per_round = params["attempts_per_round"]
    max_total = per_round * params["max_rounds"]

    if k >= max_total:
        return FailureTransition(attempts=k, status=JOB_STATUS_FAILED, retry_after=None)

    if per_round > 0 and k % per_round == 0:
        delay = params["round_delay"]
    else:
        delay = params["retry_delay"]

    return FailureTransition(
        attempts=k,
        status=JOB_STATUS_PENDING,
        retry_after=now + timedelta(seconds=delay),
    )


def _row_to_job(row):
    job = QueueJob.from_row(row)
    if isinstance(job.payload, str):
        try:
            job.payload = json.loads(job.payload)
        except json.JSONDecodeError:
            # Kept as-is; the processor fails it with a useful message.
            logger.error(f"[Queue] Job {job.id} has an undecodable payload", extra={"job_id": job.id})
    return job


class ReportQueue:
    def __init__(self, retry_defaults, db=get_db, clock=_utcnow):
        self.retry_defaults = dict(retry_defaults)
        self._db = db
        self._clock = clock

    def enqueue(self, reporter, payload, label="", retry=None):
        """
        Enqueue a job for `reporter`.
        payload should be a dict (stored as JSONB).
        retry may override any of attempts_per_round / retry_delay / max_rounds / round_delay.
        Returns job_id.
        """
        params = dict(self.retry_defaults)
        params.update({k: int(v) for k, v in (retry or {}).items() if k in RETRY_PARAM_KEYS})

        db = self._db()
        cursor = db.execute(
            """
            INSERT INTO report_queue
                (reporter, payload, status, attempts, label,
                 attempts_per_round, retry_delay, max_rounds, round_delay)
            VALUES (%s, %s, 'pending', 0, %s, %s, %s, %s, %s)
            RETURNING id
            """,
            (reporter, Json(payload), label or None,
             params["attempts_per_round"], params["retry_delay"],
             params["max_rounds"], params["round_delay"])
        )
        db.commit()
        job_id = cursor.fetchone()['id']
        logger.info(f"[Queue] Enqueued {reporter} job {job_id}", extra={"job_id": job_id, "reporter": reporter})
        return job_id

    def dequeue(self, limit=10):
        """
        Atomically claim up to `limit` ready pending jobs.

        Select and status flip happen in one statement; SKIP LOCKED lets a
        concurrent run claim a disjoint batch instead of the same jobs.
        """
        db = self._db()
        cursor = db.execute(
            """
            UPDATE report_queue
            SET status = 'processing',
                locked_at = NOW()
            WHERE id IN (
                SELECT id
                FROM report_queue
                WHERE status = 'pending'
                  AND (retry_after IS NULL OR retry_after <= NOW())
                ORDER BY retry_after ASC NULLS FIRST, created_at ASC
                LIMIT %s
                FOR UPDATE SKIP LOCKED
            )
            RETURNING *
            """,
            (limit,)
        )
        rows = cursor.fetchall()
        db.commit()

        jobs = [_row_to_job(r) for r in rows]
        # RETURNING order is unspecified; restore readiness order
        floor = datetime.min.replace(tzinfo=timezone.utc)
        jobs.sort(key=lambda j: (j.retry_after or floor, j.created_at or floor, j.id))

        if jobs:
            logger.info(f"[Queue] Claimed {len(jobs)} jobs")
        return jobs

    def complete(self, job_id):
        db = self._db()
        db.execute(
            "UPDATE report_queue SET status = 'done', processed_at = NOW(), locked_at = NULL WHERE id = %s",
            (job_id,)
        )
        db.commit()
        logger.info(f"[Queue] Job {job_id} marked DONE", extra={"job_id": job_id})

    def fail(self, job_id, message):
        """
        Record a failed attempt and schedule the retry (or park the job as failed).
        Returns the FailureTransition applied, or None if the job no longer exists.
        """
        db = self._db()
        with db.transaction():
            row = db.execute(
                """
                SELECT attempts, attempts_per_round, retry_delay, max_rounds, round_delay
                FROM report_queue WHERE id = %s
                FOR UPDATE
                """,
                (job_id,)
            ).fetchone()

            if not row:
                return None

            params = {
                key: row[key] if row[key] is not None else self.retry_defaults[key]
                for key in RETRY_PARAM_KEYS
            }
            now = self._clock()
            transition = compute_failure_transition(row['attempts'], params, now)

            db.execute(
                """
                UPDATE report_queue
                SET attempts = %s,
                    status = %s,
                    error_message = %s,
                    retry_after = %s,
                    locked_at = NULL,
                    processed_at = CASE WHEN %s = 'failed' THEN %s ELSE processed_at END
                WHERE id = %s
                """,
                (transition.attempts, transition.status, str(message), transition.retry_after,
                 transition.status, now, job_id)
            )

        if transition.status == JOB_STATUS_FAILED:
            logger.error(f"[Queue] Job {job_id} FAILED permanently after {transition.attempts} attempts: {message}",
                         extra={"job_id": job_id})
        else:
            logger.warning(f"[Queue] Job {job_id} failed (will retry at {transition.retry_after}): {message}",
                           extra={"job_id": job_id})
        return transition

    def requeue_stale(self, older_than_minutes):
        """Fail jobs stuck in 'processing' (crashed worker) so the retry policy picks them up."""
        rows = self._db().execute(
            """
            SELECT id FROM report_queue
            WHERE status = 'processing'
              AND locked_at < NOW() - (%s * INTERVAL '1 minute')
            """,
            (older_than_minutes,)
        ).fetchall()
        for row in rows:
            self.fail(row['id'], "Processing timed out")
        return len(rows)

    def delete(self, job_id):
        """Operator removal of a job in any state. False when the id is unknown."""
        db = self._db()
        cursor = db.execute("DELETE FROM report_queue WHERE id = %s", (job_id,))
        db.commit()
        return cursor.rowcount > 0

    def reset_retry(self, job_id):
        """Make a waiting job eligible immediately (operator action)."""
        db = self._db()
        cursor = db.execute("UPDATE report_queue SET retry_after = NULL WHERE id = %s", (job_id,))
        db.commit()
        return cursor.rowcount > 0

    def next_retry_time(self):
        """Earliest future retry_after among pending jobs, or None."""
        row = self._db().execute(
            """
            SELECT MIN(retry_after) AS next_retry
            FROM report_queue
            WHERE status = 'pending'
              AND retry_after IS NOT NULL
              AND retry_after > NOW()
            """
        ).fetchone()
        return row['next_retry'] if row else None

    def has_ready_jobs(self):
        row = self._db().execute(
            """
            SELECT EXISTS (
                SELECT 1 FROM report_queue
                WHERE status = 'pending'
                  AND (retry_after IS NULL OR retry_after <= NOW())
            ) AS ready
            """
        ).fetchone()
        return bool(row['ready'])

    def get_status(self):
        db = self._db()
        status = {s: 0 for s in JOB_STATUSES}
        status["last_error"] = None

        for row in db.execute("SELECT status, COUNT(*) AS cnt FROM report_queue GROUP BY status").fetchall():
            if row['status'] in status:
                status[row['status']] = int(row['cnt'])

        last = db.execute(
            """
            SELECT error_message FROM report_queue
            WHERE status = 'failed' AND error_message IS NOT NULL
            ORDER BY processed_at DESC NULLS LAST
            LIMIT 1
            """
        ).fetchone()
        status["last_error"] = last['error_message'] if last else None
        return status

    def get_active_jobs(self):
        rows = self._db().execute(
            """
            SELECT * FROM report_queue
            WHERE status IN ('pending', 'processing', 'failed')
            ORDER BY created_at DESC
            """
        ).fetchall()
        return [_row_to_job(r) for r in rows]

    def cleanup(self, done_days=30, failed_days=90):
        """Delete done/failed jobs past retention. Returns number of rows removed."""
        db = self._db()
        deleted = 0
        for status, days in ((JOB_STATUS_DONE, done_days), (JOB_STATUS_FAILED, failed_days)):
            cursor = db.execute(
                """
                DELETE FROM report_queue
                WHERE status = %s AND processed_at < NOW() - (%s * INTERVAL '1 day')
                """,
                (status, days)
            )
            deleted += cursor.rowcount
        db.commit()
        if deleted:
            logger.info(f"[Queue] Cleanup removed {deleted} job(s)")
        return deleted


__all__ = [
    "ReportQueue",
    "FailureTransition",
    "compute_failure_transition",
    "JOB_STATUS_PENDING",
    "JOB_STATUS_PROCESSING",
    "JOB_STATUS_DONE",
    "JOB_STATUS_FAILED",
]
