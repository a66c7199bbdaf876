"""
Click Recorder: the `/{prefix}/<id>` entrypoint.

Validates the identifier, resolves the destination, records the visit and
updates the visitor's session according to consent. The visitor always gets
either a redirect or a plain 404; nothing raised in here reaches them.
"""
import enum
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from constants import (
    CAMPAIGN_PARAM_ALIASES,
    PER_VISIT_PARAM_ALIASES,
    MAX_DIMENSION_LENGTH,
    PENDING_COOKIE,
    PENDING_COOKIE_MAX_AGE,
    PENDING_FRAGMENT_KEY,
    TRACKING_QUERY_PARAM,
)
from models import ClickRecord
from services.consent import ConsentState
from services.errors import PersistenceError
from services.session_store import CookieInstruction
from utils.redaction import mask
from utils.urls import (
    normalize_destination,
    merge_query_params,
    with_query,
    append_fragment,
    path_has_prefix,
)

logger = logging.getLogger(__name__)


class ClickOutcome(enum.Enum):
    PASS_THROUGH = "pass_through"
    NOT_FOUND = "not_found"
    REDIRECT = "redirect"


@dataclass
class ClickResult:
    outcome: ClickOutcome
    location: Optional[str] = None
    redirect_method: str = "302"
    cookies: list = field(default_factory=list)
    recorded: bool = False


def definition_destination(site_base_url):
    """Default resolver: the definition's stored URL or site-relative path."""
    def resolve(definition):
        return normalize_destination(definition.destination or "", site_base_url)
    return resolve


def _first_value(query, keys):
    for key in keys:
        value = (query.get(key) or "").strip()
        if value:
            return value[:MAX_DIMENSION_LENGTH]
    return None


def resolve_campaign(definition, incoming):
    """
    Dimensions for the click row.

    Source/medium/campaign: stored value, else utm_*, else mtm_*. A non-empty
    stored value is never overwritten. Per-visit dimensions prefer the incoming
    value and fall back to the definition's content/term.
    """
    campaign = {}
    for column, aliases in CAMPAIGN_PARAM_ALIASES.items():
        stored = (getattr(definition, column) or "").strip()
        campaign[column] = stored[:MAX_DIMENSION_LENGTH] if stored else _first_value(incoming, aliases)

    for column, aliases in PER_VISIT_PARAM_ALIASES.items():
        value = _first_value(incoming, aliases)
        if value is None:
            fallback = (getattr(definition, column, None) or "").strip()
            value = fallback[:MAX_DIMENSION_LENGTH] or None
        campaign[column] = value

    return campaign


class ClickRecorder:
    def __init__(self, settings, tracking_store, session_store, consent, bot_detector, hooks,
                 click_id_store=None, destination_resolver=None, clock=time.time):
        self.settings = settings
        self.tracking_store = tracking_store
        self.session_store = session_store
        self.consent = consent
        self.bot_detector = bot_detector
        self.hooks = hooks
        self.click_id_store = click_id_store
        self.destination_resolver = destination_resolver or definition_destination(settings.site_base_url)
        self._clock = clock

    def handle(self, tracking_id, context) -> ClickResult:
        if not tracking_id:
            return ClickResult(ClickOutcome.PASS_THROUGH)

        if not self.session_store.validate_id(tracking_id):
            return ClickResult(ClickOutcome.NOT_FOUND)

        log_extra = {"tracking_id": mask(tracking_id), "stage": "click"}

        definition = self.tracking_store.get_definition(tracking_id)
        if definition is None or not definition.is_active:
            logger.info("[Click] Unknown or inactive tracking id.", extra=log_extra)
            return ClickResult(ClickOutcome.NOT_FOUND)

        destination = self.destination_resolver(definition)
        if not destination:
            logger.warning("[Click] Destination missing or invalid.", extra=log_extra)
            return ClickResult(ClickOutcome.NOT_FOUND)

        merged, destination_params, incoming = merge_query_params(
            destination, context.query, strip=(TRACKING_QUERY_PARAM,)
        )
        merged = self.hooks.filter_redirect_params(merged, destination_params, incoming)
        location = with_query(destination, merged)

        if path_has_prefix(location, self.settings.url_prefix):
            logger.error("[Click] Destination points back at the click route; refusing redirect loop.",
                         extra=log_extra)
            return ClickResult(ClickOutcome.NOT_FOUND)

        result = ClickResult(ClickOutcome.REDIRECT, location=location,
                             redirect_method=self.settings.redirect_method)

        if self.bot_detector.is_bot(context):
            return result

        now = int(self._clock())
        state = self.consent.check(context)

        session = {}
        if state is ConsentState.GRANTED or (
            state is ConsentState.UNDETERMINED and self.settings.click_dedup_seconds > 0
        ):
            session = self.session_store.read(context.cookies.get(self.session_store.cookie_name))

        repeat_visit = False
        if state is not ConsentState.DENIED and self.settings.click_dedup_seconds > 0:
            last_seen = session.get(tracking_id)
            repeat_visit = last_seen is not None and now - last_seen < self.settings.click_dedup_seconds

        campaign = resolve_campaign(definition, incoming)

        if not repeat_visit:
            click = ClickRecord(
                tracking_id=tracking_id,
                clicked_at=datetime.fromtimestamp(now, tz=timezone.utc),
                **campaign,
            )
            try:
                self.tracking_store.insert_click(click)
                result.recorded = True
            except PersistenceError:
                logger.exception("[Click] Click write failed; redirecting anyway.", extra=log_extra)

        self._capture_click_ids(tracking_id, incoming)
        self.hooks.fire_click_observed(
            tracking_id,
            location,
            {k: v or "" for k, v in campaign.items()},
            context.as_report_context(),
        )

        if state is ConsentState.GRANTED:
            result.cookies.append(self.session_store.write(self.session_store.add(session, tracking_id, now)))
        elif state is ConsentState.UNDETERMINED:
            self._defer(result, tracking_id)

        return result

    def _capture_click_ids(self, tracking_id, incoming):
        if self.click_id_store is None:
            return
        for platform, parameter in self.hooks.click_id_capturers.items():
            value = (incoming.get(parameter) or "").strip()
            if not value:
                continue
            try:
                self.click_id_store.store(tracking_id, platform, value)
                logger.info(f"[Click] Captured {platform} click id {mask(value)}",
                            extra={"tracking_id": mask(tracking_id), "stage": "click_ids"})
            except PersistenceError:
                logger.exception(f"[Click] Storing {platform} click id failed.",
                                 extra={"tracking_id": mask(tracking_id), "stage": "click_ids"})

    def _defer(self, result, tracking_id):
        """Hand the id to the client-side consent script instead of writing the session."""
        if self.settings.pending_transport == "fragment":
            result.location = append_fragment(result.location, PENDING_FRAGMENT_KEY, tracking_id)
            return

        result.cookies.append(CookieInstruction(
            name=PENDING_COOKIE,
            value=tracking_id,
            max_age=PENDING_COOKIE_MAX_AGE,
            httponly=False,
            secure=self.settings.cookie_secure,
        ))
