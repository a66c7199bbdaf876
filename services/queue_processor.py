"""
Queue Processor: drains the Report Queue into reporters and decides when to run next.

Two runners:
- ThreadScheduler: in-process threading.Timer, for single-process deployments.
- WorkerScheduler: only records the wake-up time; scripts/async_worker.py polls.
"""
import logging
import threading
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


def _utcnow():
    return datetime.now(timezone.utc)


class QueueProcessor:
    def __init__(self, queue, hooks, batch_size=10, stale_minutes=5, scheduler=None, clock=_utcnow):
        self.queue = queue
        self.hooks = hooks
        self.batch_size = batch_size
        self.stale_minutes = stale_minutes
        self.scheduler = scheduler
        self._clock = clock

    def process(self, limit=None):
        """
        One drain pass. Never raises for job-level errors.

        Returns:
            datetime of the next run, or None when nothing is left to do.
        """
        self.queue.requeue_stale(self.stale_minutes)

        jobs = self.queue.dequeue(limit or self.batch_size)
        for job in jobs:
            self.dispatch(job)

        return self.schedule()

    def dispatch(self, job):
        reporter = self.hooks.get_reporter(job.reporter)
        if reporter is None or not callable(reporter.process):
            logger.error(f"[Queue] No reporter '{job.reporter}' for job {job.id}",
                         extra={"job_id": job.id, "reporter": job.reporter})
            self.queue.fail(job.id, f"Reporter '{job.reporter}' is not registered.")
            return

        if not isinstance(job.payload, dict):
            self.queue.fail(job.id, f"Invalid payload type: {type(job.payload).__name__}")
            return

        logger.info(f"[Queue] Processing job {job.id} ({job.reporter})",
                    extra={"job_id": job.id, "reporter": job.reporter})
        try:
            ok = reporter.process(job.payload)
        except Exception as e:
            logger.exception(f"[Queue] Job {job.id} raised: {e}",
                             extra={"job_id": job.id, "reporter": job.reporter})
            self.queue.fail(job.id, str(e) or type(e).__name__)
            return

        if ok is True:
            self.queue.complete(job.id)
        else:
            self.queue.fail(job.id, "Reporter returned false.")

    def schedule(self):
        """
        Ready jobs -> run again now; otherwise wake at the earliest retry_after.
        """
        if self.queue.has_ready_jobs():
            next_run = self._clock()
        else:
            next_run = self.queue.next_retry_time()

        if next_run is not None and self.scheduler is not None:
            self.scheduler.schedule(next_run)
        return next_run


class WorkerScheduler:
    """Remembers the earliest requested wake-up; the worker loop reads it."""

    def __init__(self, clock=_utcnow):
        self._clock = clock
        self._lock = threading.Lock()
        self.next_wakeup = None

    def schedule(self, when):
        with self._lock:
            if self.next_wakeup is None or when < self.next_wakeup:
                self.next_wakeup = when

    def seconds_until_wakeup(self, idle_seconds):
        """Sleep length for the worker: until the wake-up, capped at idle_seconds."""
        with self._lock:
            when = self.next_wakeup
        if when is None:
            return idle_seconds
        delay = (when - self._clock()).total_seconds()
        return max(0.0, min(delay, idle_seconds))

    def clear(self):
        with self._lock:
            self.next_wakeup = None


class ThreadScheduler:
    """
    Runs the processor on a daemon threading.Timer inside an app context.
    A new request replaces a pending timer only if it fires earlier.
    """

    def __init__(self, app, processor_getter, clock=_utcnow):
        self.app = app
        self._processor_getter = processor_getter
        self._clock = clock
        self._lock = threading.Lock()
        self._timer = None
        self._fire_at = None

    def schedule(self, when):
        with self._lock:
            if self._timer is not None and self._fire_at is not None and self._fire_at <= when:
                return
            if self._timer is not None:
                self._timer.cancel()

            delay = max(0.0, (when - self._clock()).total_seconds())
            self._fire_at = when
            self._timer = threading.Timer(delay, self._run)
            self._timer.daemon = True
            self._timer.start()

    def cancel(self):
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = None
            self._fire_at = None

    def _run(self):
        with self._lock:
            self._timer = None
            self._fire_at = None

        with self.app.app_context():
            try:
                self._processor_getter().process()
            except Exception:
                logger.exception("[Queue] Background queue run failed.")
