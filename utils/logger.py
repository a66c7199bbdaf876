import json
import logging
import sys
import uuid
from datetime import datetime, timezone

from flask import g, has_request_context, request

# Fields engine code attaches via `extra=`; identifiers arrive already masked
CONTEXT_FIELDS = ("tracking_id", "stage", "job_id", "reporter")

REQUEST_ID_HEADER = "X-Request-Id"


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line: level, logger, message, the engine's context
    fields, and request method/path/id when emitted inside a request.
    """
    def format(self, record):
        log_record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "lineno": record.lineno,
        }
        log_record.update(
            (name, getattr(record, name)) for name in CONTEXT_FIELDS
            if getattr(record, name, None) is not None
        )

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)

        if has_request_context():
            log_record["method"] = request.method
            log_record["path"] = request.path
            log_record["remote_ip"] = request.remote_addr
            request_id = g.get("request_id")
            if request_id:
                log_record["request_id"] = request_id

        return json.dumps(log_record, default=str)


def _install_request_id(app):
    @app.before_request
    def assign_request_id():
        g.request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex

    @app.after_request
    def echo_request_id(response):
        request_id = g.get("request_id")
        if request_id:
            response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response


def setup_logger(app):
    """
    JSON logs on stdout for every logger in the process.

    Engine modules use logging.getLogger(__name__), so the handler lives on the
    root logger; under gunicorn the root adopts gunicorn's handlers and level.
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())

    root = logging.getLogger()
    # create_app() runs once per test; keep a single JSON handler
    if not any(isinstance(h.formatter, JSONFormatter) for h in root.handlers):
        root.addHandler(handler)
    root.setLevel(logging.INFO)

    app.logger.handlers.clear()
    app.logger.setLevel(logging.INFO)

    werkzeug_logger = logging.getLogger('werkzeug')
    werkzeug_logger.handlers = [handler]
    werkzeug_logger.propagate = False

    gunicorn_logger = logging.getLogger('gunicorn.error')
    if gunicorn_logger.handlers:
        root.handlers = gunicorn_logger.handlers
        root.setLevel(gunicorn_logger.level)

    _install_request_id(app)
    app.logger.info("Logger setup complete. JSON formatted logs enabled.")
