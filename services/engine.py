"""
Startup wiring for the attribution engine.

Every component is constructed once here and handed its collaborators;
nothing in the engine looks anything up globally. create_app() stores the
result in app.extensions["ad_attribution"].
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

from constants import SESSION_COOKIE, DEDUP_COOKIE, PENDING_TRANSPORTS, REDIRECT_METHODS, QUEUE_RUNNERS
from services.attribution import AttributionCalculator, get_weighting
from services.bot_detector import BotDetector
from services.click_ids import ClickIdStore
from services.click_recorder import ClickRecorder
from services.consent import ConsentResolver
from services.errors import ConfigurationError
from services.hooks import HookRegistry
from services.queue_processor import QueueProcessor, ThreadScheduler, WorkerScheduler
from services.report_queue import ReportQueue
from services.session_store import SessionStore
from services.tracking_store import TrackingStore

logger = logging.getLogger(__name__)


@dataclass
class AttributionEngine:
    settings: Any
    hooks: HookRegistry
    tracking_store: Any
    click_id_store: Any
    session_store: SessionStore
    dedup_store: SessionStore
    consent: ConsentResolver
    bot_detector: BotDetector
    queue: Any
    scheduler: Any
    processor: QueueProcessor
    recorder: ClickRecorder
    calculator: AttributionCalculator

    def cleanup(self):
        """Retention pass over the queue and stored click ids."""
        jobs = self.queue.cleanup(
            done_days=self.settings.queue_done_retention_days,
            failed_days=self.settings.queue_failed_retention_days,
        )
        click_ids = self.click_id_store.cleanup(self.settings.click_id_retention_days)
        return {"jobs": jobs, "click_ids": click_ids}


def validate_settings(settings):
    if not settings.secret_key:
        raise ConfigurationError("SECRET_KEY is required to sign attribution cookies.")
    if settings.queue_runner not in QUEUE_RUNNERS:
        raise ConfigurationError(f"AD_ATTR_QUEUE_RUNNER must be one of {QUEUE_RUNNERS}.")
    if settings.pending_transport not in PENDING_TRANSPORTS:
        raise ConfigurationError(f"AD_ATTR_PENDING_TRANSPORT must be one of {PENDING_TRANSPORTS}.")
    if settings.redirect_method not in REDIRECT_METHODS:
        raise ConfigurationError(f"AD_ATTR_REDIRECT_METHOD must be one of {REDIRECT_METHODS}.")
    if settings.max_session_entries < 1:
        raise ConfigurationError("AD_ATTR_MAX_SESSION_ENTRIES must be at least 1.")
    if settings.queue_attempts_per_round < 1 or settings.queue_max_rounds < 1:
        raise ConfigurationError("Queue attempts per round and max rounds must be at least 1.")
    if not settings.url_prefix:
        raise ConfigurationError("AD_ATTR_URL_PREFIX must not be empty.")


def build_engine(settings, app=None, hooks: Optional[HookRegistry] = None, tracking_store=None,
                 click_id_store=None, queue=None, scheduler=None, consent_callback=None,
                 weighting=None, bot_detector=None, destination_resolver=None, clock=time.time):
    """
    Construct the engine. Stores and strategies can be injected (tests, hosts
    with their own consent platform or destination lookup); anything omitted
    gets the Postgres-backed default.
    """
    validate_settings(settings)

    hooks = hooks or HookRegistry()
    tracking_store = tracking_store or TrackingStore()
    click_id_store = click_id_store or ClickIdStore()
    queue = queue or ReportQueue(settings.retry_defaults)
    bot_detector = bot_detector or BotDetector()
    weighting = weighting or get_weighting(settings.weighting, settings.weighting_half_life_days)

    session_store = SessionStore(
        settings.secret_key,
        max_entries=settings.max_session_entries,
        cookie_name=SESSION_COOKIE,
        lifetime_seconds=settings.cookie_lifetime_seconds,
        secure=settings.cookie_secure,
        clock=clock,
    )
    dedup_store = SessionStore(
        settings.secret_key,
        max_entries=settings.max_session_entries,
        cookie_name=DEDUP_COOKIE,
        lifetime_seconds=settings.dedup_cookie_seconds,
        secure=settings.cookie_secure,
        clock=clock,
    )
    consent = ConsentResolver(consent_callback, default=settings.default_consent)

    processor = QueueProcessor(
        queue,
        hooks,
        batch_size=settings.queue_batch_size,
        stale_minutes=settings.queue_stale_minutes,
    )

    if scheduler is None:
        if settings.queue_runner == "thread":
            if app is None:
                raise ConfigurationError("The 'thread' queue runner needs the Flask app.")
            scheduler = ThreadScheduler(app, lambda: processor)
        else:
            scheduler = WorkerScheduler()
    processor.scheduler = scheduler

    recorder = ClickRecorder(
        settings, tracking_store, session_store, consent, bot_detector, hooks,
        click_id_store=click_id_store,
        destination_resolver=destination_resolver,
        clock=clock,
    )
    calculator = AttributionCalculator(
        settings, tracking_store, session_store, dedup_store, consent, bot_detector, hooks, queue,
        click_id_store=click_id_store,
        scheduler=scheduler,
        weighting=weighting,
        clock=clock,
    )

    logger.info(f"[Engine] Attribution engine ready (prefix=/{settings.url_prefix}, "
                f"queue runner={settings.queue_runner}, weighting={settings.weighting})")

    return AttributionEngine(
        settings=settings,
        hooks=hooks,
        tracking_store=tracking_store,
        click_id_store=click_id_store,
        session_store=session_store,
        dedup_store=dedup_store,
        consent=consent,
        bot_detector=bot_detector,
        queue=queue,
        scheduler=scheduler,
        processor=processor,
        recorder=recorder,
        calculator=calculator,
    )
