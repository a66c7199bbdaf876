"""
Extension points.

Collaborators register named handlers here at startup; the engine invokes
them synchronously in registration order and never depends on how many
there are. A failing handler is logged and skipped so one broken add-on
cannot break click recording or attribution for the visitor.

Handler contracts:
- click_observed(tracking_id, destination_url, campaign: dict, context: dict)
- conversion_recorded(attributions: dict[id, weight], context: dict)
- redirect params filter(merged, destination_params, incoming_params) -> dict
- Reporter.enqueue(attributions, click_ids, campaigns, context)
      -> payload | list of payloads | None
- Reporter.process(payload) -> True on success
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from utils.redaction import mask

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reporter:
    name: str
    enqueue: Optional[Callable]
    process: Optional[Callable]


@dataclass(frozen=True)
class ReportPayload:
    """A queue payload with an optional operator label and retry overrides."""
    data: dict
    label: str = ""
    retry: dict = field(default_factory=dict)


class HookRegistry:
    def __init__(self):
        self._click_observed = []
        self._conversion_recorded = []
        self._redirect_param_filters = []
        self._reporters = {}
        self._click_id_capturers = {}

    # --- registration ---

    def on_click_observed(self, handler):
        self._click_observed.append(handler)
        return handler

    def on_conversion_recorded(self, handler):
        self._conversion_recorded.append(handler)
        return handler

    def add_redirect_params_filter(self, handler):
        self._redirect_param_filters.append(handler)
        return handler

    def register_reporter(self, name, enqueue=None, process=None):
        if name in self._reporters:
            logger.warning(f"[Hooks] Reporter '{name}' re-registered; previous handlers replaced.")
        self._reporters[name] = Reporter(name=name, enqueue=enqueue, process=process)

    def register_click_id_capturer(self, platform, parameter):
        """Capture query parameter `parameter` (e.g. 'gclid') as the click id for `platform`."""
        self._click_id_capturers[platform] = parameter

    # --- lookup ---

    @property
    def reporters(self):
        return dict(self._reporters)

    def get_reporter(self, name):
        return self._reporters.get(name)

    @property
    def click_id_capturers(self):
        return dict(self._click_id_capturers)

    # --- dispatch ---

    def fire_click_observed(self, tracking_id, destination_url, campaign, context):
        for handler in self._click_observed:
            try:
                handler(tracking_id, destination_url, campaign, context)
            except Exception:
                logger.exception("[Hooks] click_observed handler failed.",
                                 extra={"tracking_id": mask(tracking_id), "stage": "click_observed"})

    def fire_conversion_recorded(self, attributions, context):
        for handler in self._conversion_recorded:
            try:
                handler(dict(attributions), context)
            except Exception:
                logger.exception("[Hooks] conversion_recorded handler failed.",
                                 extra={"stage": "conversion_recorded"})

    def filter_redirect_params(self, merged, destination_params, incoming_params):
        for handler in self._redirect_param_filters:
            try:
                result = handler(dict(merged), destination_params, incoming_params)
            except Exception:
                logger.exception("[Hooks] redirect params filter failed; keeping previous params.",
                                 extra={"stage": "redirect_params"})
                continue
            if isinstance(result, dict):
                merged = result
        return merged
