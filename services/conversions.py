"""
Conversion trigger for host code (form handlers, checkout success pages, ...).

    from services.conversions import trigger_conversion

    @app.route("/contact", methods=["POST"])
    def contact():
        ...
        trigger_conversion()
        return redirect(url_for("thanks"))

Attribution problems never surface to the visitor: the trigger logs and
returns None instead of raising.
"""
import logging

from flask import after_this_request, current_app, has_request_context, request

from services.context import VisitorContext
from utils.cookies import apply_cookies

logger = logging.getLogger(__name__)

ENGINE_EXTENSION_KEY = "ad_attribution"


def get_engine(app=None):
    app = app or current_app
    return app.extensions[ENGINE_EXTENSION_KEY]


def trigger_conversion():
    """
    Attribute a conversion for the current request's visitor.

    Returns the AttributionResult (mainly for tests), or None.
    """
    if not has_request_context():
        logger.warning("[Conversion] trigger_conversion() called outside a request; ignored.")
        return None

    try:
        engine = get_engine()
        result = engine.calculator.handle_conversion(VisitorContext.from_request(request))
    except Exception:
        logger.exception("[Conversion] Conversion attribution failed.", extra={"stage": "trigger"})
        return None

    if result is not None and result.cookies:
        @after_this_request
        def _set_dedup_cookie(response):
            return apply_cookies(response, result.cookies)

    return result
