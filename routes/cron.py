import hmac
import logging

from flask import Blueprint, request, jsonify, current_app

logger = logging.getLogger(__name__)

cron_bp = Blueprint("cron", __name__, url_prefix="/cron")


def _authorized():
    expected_token = current_app.config.get("CRON_TOKEN")
    if not expected_token:
        # If the token is not configured we can't verify, so deny.
        return False

    incoming_token = request.headers.get("X-CRON-TOKEN") or ""
    return hmac.compare_digest(incoming_token.encode(), expected_token.encode())


@cron_bp.route("/process-queue", methods=["POST"])
def process_queue():
    if not _authorized():
        return jsonify({"success": False, "error": "unauthorized"}), 401

    engine = current_app.extensions["ad_attribution"]
    limit = request.args.get("limit", type=int)
    if limit is not None and limit < 1:
        # Non-positive limits fall back to the configured batch size
        limit = None
    try:
        next_run = engine.processor.process(limit)
        status = engine.queue.get_status()
    except Exception:
        logger.exception("[Cron] Queue processing failed.")
        return jsonify({"success": False, "error": "queue processing failed"}), 500

    return jsonify({
        "success": True,
        "next_run": next_run.isoformat() if next_run else None,
        "status": status,
    })


@cron_bp.route("/cleanup", methods=["POST"])
def cleanup():
    if not _authorized():
        return jsonify({"success": False, "error": "unauthorized"}), 401

    engine = current_app.extensions["ad_attribution"]
    try:
        deleted = engine.cleanup()
    except Exception:
        logger.exception("[Cron] Cleanup failed.")
        return jsonify({"success": False, "error": "cleanup failed"}), 500

    return jsonify({"success": True, "deleted": deleted})
