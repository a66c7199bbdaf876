"""
Attribution Calculator: turns a conversion into weighted credit for prior clicks.

Weighting functions take the surviving session entries ({id: ts}, in session
order) and return {id: weight} with non-negative weights summing to 1.0.
"""
import logging
import math
import time
from datetime import datetime, timezone

import psycopg2

from models import AttributionResult
from services.consent import ConsentState
from services.errors import ConfigurationError, PersistenceError
from services.hooks import ReportPayload
from utils.redaction import mask

logger = logging.getLogger(__name__)

WEIGHT_TOLERANCE = 1e-6


# =============================================================================
# Weighting strategies
# =============================================================================

def last_click(entries):
    """1.0 to the most recent click; ties go to the entry earliest in the session."""
    winner = None
    for tracking_id, ts in entries.items():
        if winner is None or ts > entries[winner]:
            winner = tracking_id
    return {tracking_id: (1.0 if tracking_id == winner else 0.0) for tracking_id in entries}


def linear(entries):
    if not entries:
        return {}
    share = 1.0 / len(entries)
    return {tracking_id: share for tracking_id in entries}


def time_decay(half_life_days=7):
    """
    Credit halves for every `half_life_days` a click precedes the latest one.
    Normalised, so the reference point does not change the result.
    """
    half_life_seconds = float(half_life_days) * 86400

    def weigh(entries):
        if not entries:
            return {}
        newest = max(entries.values())
        raw = {
            tracking_id: math.exp(-(newest - ts) * math.log(2) / half_life_seconds)
            for tracking_id, ts in entries.items()
        }
        total = sum(raw.values())
        return {tracking_id: value / total for tracking_id, value in raw.items()}

    weigh.__name__ = f"time_decay_{half_life_days}d"
    return weigh


def get_weighting(name, half_life_days=7):
    """Resolve a configured strategy name (AD_ATTR_WEIGHTING)."""
    if name == "last_click":
        return last_click
    if name == "linear":
        return linear
    if name == "time_decay":
        return time_decay(half_life_days)
    raise ConfigurationError(f"Unknown weighting strategy: {name!r}")


def weights_are_valid(weights, entries) -> bool:
    if not isinstance(weights, dict) or not weights:
        return False
    if any(tracking_id not in entries for tracking_id in weights):
        return False
    try:
        values = [float(w) for w in weights.values()]
    except (TypeError, ValueError):
        return False
    if any(math.isnan(v) or v < 0 for v in values):
        return False
    return abs(sum(values) - 1.0) <= WEIGHT_TOLERANCE


# =============================================================================
# Calculator
# =============================================================================

class AttributionCalculator:
    def __init__(self, settings, tracking_store, session_store, dedup_store, consent, bot_detector,
                 hooks, queue, click_id_store=None, scheduler=None, weighting=last_click, clock=time.time):
        self.settings = settings
        self.tracking_store = tracking_store
        self.session_store = session_store
        self.dedup_store = dedup_store
        self.consent = consent
        self.bot_detector = bot_detector
        self.hooks = hooks
        self.queue = queue
        self.click_id_store = click_id_store
        self.scheduler = scheduler
        self.weighting = weighting or last_click
        self._clock = clock

    def handle_conversion(self, context):
        """
        Attribute one conversion for the visitor in `context`.

        Returns:
            AttributionResult, or None when the conversion was not attributed
            (bot, no consent, empty session, deduplicated, or a failed write).
        """
        if self.bot_detector.is_bot(context):
            return None

        # Without confirmed consent no cookie is read at all
        if self.consent.check(context) is not ConsentState.GRANTED:
            return None

        session = self.session_store.read(context.cookies.get(self.session_store.cookie_name))
        if not session:
            return None

        active = self.tracking_store.get_active_ids(session.keys())
        entries = {tracking_id: ts for tracking_id, ts in session.items() if tracking_id in active}
        if not entries:
            return None

        now = int(self._clock())
        window = self.settings.dedup_seconds
        marker = None
        if window > 0:
            marker = self.dedup_store.read(context.cookies.get(self.dedup_store.cookie_name))
            entries = {
                tracking_id: ts for tracking_id, ts in entries.items()
                if not (tracking_id in marker and now - marker[tracking_id] < window)
            }
            if not entries:
                logger.info("[Conversion] All identifiers inside the dedup window; skipped.",
                            extra={"stage": "dedup"})
                return None

        weights = self._weigh(entries)

        converted_at = datetime.fromtimestamp(now, tz=timezone.utc)
        try:
            written = self.tracking_store.record_conversions(weights, entries, converted_at)
        except PersistenceError:
            logger.exception("[Conversion] Conversion write rolled back.", extra={"stage": "persist"})
            return None

        if not written:
            logger.warning("[Conversion] No click rows for attributed identifiers; nothing recorded.",
                           extra={"stage": "persist"})
            return None

        attributions = {tracking_id: float(weights[tracking_id]) for tracking_id in written}
        result = AttributionResult(attributions=attributions, conversion_ids=list(written.values()))
        logger.info(
            f"[Conversion] Recorded {len(written)} attributed click(s): "
            + ", ".join(f"{mask(t)}={w:.3f}" for t, w in attributions.items()),
            extra={"stage": "persist"},
        )

        if marker is not None:
            result.cookies.append(self._updated_marker(marker, written, now))

        report_context = context.as_report_context()
        self.hooks.fire_conversion_recorded(attributions, report_context)
        result.job_ids = self._enqueue_reports(attributions, report_context)
        return result

    def _weigh(self, entries):
        name = getattr(self.weighting, "__name__", repr(self.weighting))
        try:
            weights = self.weighting(dict(entries))
        except Exception:
            logger.exception(f"[Conversion] Weighting function {name} raised; using last click.",
                             extra={"stage": "weights"})
            return last_click(entries)

        if not weights_are_valid(weights, entries):
            logger.error(f"[Conversion] Weighting function {name} broke its contract; using last click.",
                         extra={"stage": "weights"})
            return last_click(entries)
        # Within tolerance a single weight may sit just above 1; storage caps it there
        return {tracking_id: min(float(w), 1.0) for tracking_id, w in weights.items()}

    def _updated_marker(self, marker, written, now):
        window = self.settings.dedup_seconds
        fresh = {tracking_id: ts for tracking_id, ts in marker.items() if now - ts < window}
        for tracking_id in written:
            fresh = self.dedup_store.add(fresh, tracking_id, now)
        return self.dedup_store.write(fresh, max_age=self.settings.dedup_cookie_seconds)

    def _enqueue_reports(self, attributions, report_context):
        reporters = [r for r in self.hooks.reporters.values() if callable(r.enqueue)]
        if not reporters:
            return []

        ids = list(attributions)
        click_ids = self.click_id_store.get_for_ids(ids) if self.click_id_store else {}
        campaigns = self.tracking_store.get_campaign_data(ids)

        job_ids = []
        for reporter in reporters:
            try:
                produced = reporter.enqueue(dict(attributions), click_ids, campaigns, report_context)
            except Exception:
                logger.exception(f"[Conversion] Reporter '{reporter.name}' enqueue failed; skipped.",
                                 extra={"stage": "enqueue", "reporter": reporter.name})
                continue

            if produced is None:
                continue
            if isinstance(produced, (dict, ReportPayload)):
                produced = [produced]

            for payload in produced:
                try:
                    if isinstance(payload, ReportPayload):
                        job_ids.append(self.queue.enqueue(reporter.name, payload.data,
                                                          label=payload.label, retry=payload.retry))
                    elif isinstance(payload, dict):
                        job_ids.append(self.queue.enqueue(reporter.name, payload))
                    else:
                        logger.warning(f"[Conversion] Reporter '{reporter.name}' returned "
                                       f"{type(payload).__name__}; ignored.",
                                       extra={"stage": "enqueue", "reporter": reporter.name})
                except psycopg2.Error:
                    logger.exception(f"[Conversion] Could not queue report for '{reporter.name}'.",
                                     extra={"stage": "enqueue", "reporter": reporter.name})

        if job_ids and self.scheduler is not None:
            self.scheduler.schedule(datetime.now(timezone.utc))
        return job_ids
