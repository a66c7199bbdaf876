"""
Consent hand-off: the client-side consent script posts the ids it held back
(pending cookie or URL fragment) once the visitor has granted consent.
"""
import logging

from flask import Blueprint, current_app, jsonify, request

from constants import SET_COOKIE_RATE_LIMIT
from extensions import limiter
from services.consent import ConsentState
from services.context import VisitorContext
from utils.cookies import apply_cookies

logger = logging.getLogger(__name__)

consent_bp = Blueprint('consent', __name__)


@consent_bp.route('/api/ad-attribution/v1/set-cookie', methods=['POST'])
@limiter.limit(SET_COOKIE_RATE_LIMIT)
def set_cookie():
    """
    Body: {"ids": ["<64 hex>", ...]}

    All-or-nothing: one malformed or inactive id rejects the whole request.
    """
    engine = current_app.extensions["ad_attribution"]

    data = request.get_json(silent=True)
    ids = data.get('ids') if isinstance(data, dict) else None
    if not isinstance(ids, list) or not ids:
        return jsonify({"success": False, "error": "Missing ids"}), 400

    # Every element is checked before it is hashed for de-duplication
    if not all(engine.session_store.validate_id(i) for i in ids):
        return jsonify({"success": False, "error": "Invalid id"}), 400

    ids = list(dict.fromkeys(ids))
    if len(ids) > engine.settings.max_session_entries:
        return jsonify({"success": False, "error": "Too many ids"}), 400

    context = VisitorContext.from_request(request)
    if engine.consent.check(context) is not ConsentState.GRANTED:
        return jsonify({"success": False, "error": "Consent not granted"}), 403

    active = engine.tracking_store.get_active_ids(ids)
    if any(i not in active for i in ids):
        logger.info("[Consent] set-cookie rejected: unknown or inactive id.", extra={"stage": "set_cookie"})
        return jsonify({"success": False, "error": "Unknown id"}), 400

    store = engine.session_store
    session = store.read(context.cookies.get(store.cookie_name))
    for tracking_id in ids:
        session = store.add(session, tracking_id)

    response = jsonify({"success": True})
    return apply_cookies(response, [store.write(session)])
