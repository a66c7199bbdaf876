"""
Click route: GET /<prefix>/<64-hex tracking id>.

The prefix is configurable (AD_ATTR_URL_PREFIX), so the blueprint is built at
startup rather than declared at import time.
"""
from flask import Blueprint, abort, current_app, make_response, redirect, render_template_string, request

from constants import TRACKING_QUERY_PARAM
from services.click_recorder import ClickOutcome
from services.context import VisitorContext
from utils.cookies import apply_cookies

JS_REDIRECT_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<meta name="robots" content="noindex, nofollow">
<meta http-equiv="refresh" content="0;url={{ location }}">
<title>Redirecting</title>
</head>
<body>
<script>window.location.replace({{ location|tojson }});</script>
<noscript><a href="{{ location }}">Continue</a></noscript>
</body>
</html>
"""


def _no_cache(response):
    response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, max-age=0"
    response.headers["Pragma"] = "no-cache"
    response.headers["Expires"] = "0"
    return response


def handle_click(tracking_id):
    engine = current_app.extensions["ad_attribution"]
    result = engine.recorder.handle(tracking_id, VisitorContext.from_request(request))

    if result.outcome is not ClickOutcome.REDIRECT:
        # Pass-through has nothing else to serve on this route either
        abort(404)

    if result.redirect_method == "js":
        response = make_response(render_template_string(JS_REDIRECT_TEMPLATE, location=result.location))
        response.headers["Content-Type"] = "text/html; charset=utf-8"
    else:
        response = make_response(redirect(result.location, code=302))

    apply_cookies(response, result.cookies)
    return _no_cache(response)


def create_tracking_blueprint(url_prefix):
    tracking_bp = Blueprint("tracking", __name__, url_prefix=f"/{url_prefix.strip('/')}")

    @tracking_bp.route("/<tracking_id>")
    def click(tracking_id):
        return handle_click(tracking_id)

    # Rewritten host URLs deliver the id as ?ad_attr_id=<id>
    @tracking_bp.route("/")
    def click_by_query():
        return handle_click(request.args.get(TRACKING_QUERY_PARAM, ""))

    return tracking_bp
