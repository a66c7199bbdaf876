"""
Consent resolution for tracking cookies.

Three states:
- GRANTED: the session cookie may be read and written.
- DENIED: no session read or write at all.
- UNDETERMINED: the click is still counted, but the session write is deferred
  through a short-lived transport until consent is resolved client-side.

Anything ambiguous resolves to UNDETERMINED, never to GRANTED.
"""
import enum
import logging

logger = logging.getLogger(__name__)


class ConsentState(enum.Enum):
    GRANTED = "granted"
    DENIED = "denied"
    UNDETERMINED = "undetermined"


def normalize_consent(value) -> ConsentState:
    """Map a callback's answer (bool / None / str / ConsentState) onto ConsentState."""
    if isinstance(value, ConsentState):
        return value
    if value is True:
        return ConsentState.GRANTED
    if value is False:
        return ConsentState.DENIED
    if isinstance(value, str):
        try:
            return ConsentState(value.strip().lower())
        except ValueError:
            pass
    if value is not None:
        logger.warning(f"[Consent] Unrecognised consent value {value!r}; treating as undetermined.")
    return ConsentState.UNDETERMINED


class ConsentResolver:
    """
    Delegates to a registered callback `callback(context) -> state`.
    Without one, every visitor gets the configured default (commonly 'granted'
    for sites with no consent requirements).
    """
    def __init__(self, callback=None, default="granted"):
        self.callback = callback
        self.default = normalize_consent(default)

    def check(self, context=None) -> ConsentState:
        if self.callback is None:
            return self.default

        try:
            return normalize_consent(self.callback(context))
        except Exception:
            logger.exception("[Consent] Consent callback raised; treating as undetermined.")
            return ConsentState.UNDETERMINED
