import logging

from constants import BOT_SIGNATURES

logger = logging.getLogger(__name__)


def user_agent_detector(context):
    """Flags empty User-Agents and known automation signatures."""
    user_agent = (context.user_agent or "").lower()
    if not user_agent:
        return True
    return any(signature in user_agent for signature in BOT_SIGNATURES)


class BotDetector:
    """
    Chain of detectors `detector(context) -> bool`; the first True wins.

    Extra detectors (IP lists, header heuristics) can be appended with
    add_detector(). A detector that raises is skipped and logged.
    """
    def __init__(self, detectors=None):
        self.detectors = list(detectors) if detectors is not None else [user_agent_detector]

    def add_detector(self, detector):
        self.detectors.append(detector)

    def is_bot(self, context) -> bool:
        for detector in self.detectors:
            try:
                if detector(context):
                    return True
            except Exception:
                logger.exception(f"[Bot] Detector {getattr(detector, '__name__', detector)!r} failed; skipped.")
        return False
