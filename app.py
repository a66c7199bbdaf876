import logging

import click
from flask import Flask

from config import (
    SECRET_KEY,
    CRON_TOKEN,
    SITE_BASE_URL,
    TRUST_PROXY_HEADERS,
    PROXY_FIX_NUM_PROXIES,
    IS_PRODUCTION,
    AttributionSettings,
)
from database import close_connection
from extensions import limiter
from services.conversions import ENGINE_EXTENSION_KEY

logger = logging.getLogger(__name__)


def create_app(test_config=None, engine=None, **engine_overrides):
    """
    App factory.

    `engine` replaces the whole attribution engine (tests inject one built on
    in-memory stores); `engine_overrides` are passed to build_engine()
    (consent_callback, weighting, hooks, destination_resolver, ...).
    """
    app = Flask(__name__)

    app.config['SECRET_KEY'] = SECRET_KEY
    app.config['CRON_TOKEN'] = CRON_TOKEN
    app.config['SITE_BASE_URL'] = SITE_BASE_URL
    app.config['RATELIMIT_ENABLED'] = True

    # Apply Test Config Overrides
    if test_config:
        app.config.update(test_config)

    # Setup Structured Logging
    from utils.logger import setup_logger
    setup_logger(app)

    # Health Check (Validates DB connectivity)
    @app.route("/healthz")
    def healthz():
        try:
            from database import get_db
            db = get_db()
            db.execute("SELECT 1").fetchone()
            return {"status": "ok", "db": "connected"}, 200
        except Exception as e:
            logger.error(f"[Health] DB check failed: {type(e).__name__}")
            return {"status": "error", "db": "unavailable"}, 503

    # Simple ping endpoint for Docker health checks
    @app.route("/ping")
    def ping():
        return {"status": "ok"}, 200

    # ProxyFix
    if IS_PRODUCTION and TRUST_PROXY_HEADERS:
        from werkzeug.middleware.proxy_fix import ProxyFix
        n = PROXY_FIX_NUM_PROXIES
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=n, x_proto=n, x_host=n, x_port=n)
        logger.info(f"[Security] ProxyFix enabled for {n} proxies")

    # Extensions
    limiter.init_app(app)

    # Database Teardown
    app.teardown_appcontext(close_connection)

    # Attribution Engine
    if engine is None:
        from services.engine import build_engine
        engine = build_engine(AttributionSettings.from_config(app.config), app=app, **engine_overrides)
    app.extensions[ENGINE_EXTENSION_KEY] = engine

    # Blueprints
    from routes.tracking import create_tracking_blueprint
    from routes.consent import consent_bp
    from routes.cron import cron_bp

    app.register_blueprint(create_tracking_blueprint(engine.settings.url_prefix))
    app.register_blueprint(consent_bp)
    app.register_blueprint(cron_bp)

    # CLI Commands
    @app.cli.command("process-queue")
    @click.option("--limit", type=click.IntRange(min=1), default=None, help="Max jobs to claim in this pass.")
    def process_queue_cmd(limit):
        """Run one Report Queue drain pass."""
        next_run = engine.processor.process(limit)
        status = engine.queue.get_status()
        click.echo(f"Queue: {status['pending']} pending, {status['processing']} processing, "
                   f"{status['done']} done, {status['failed']} failed.")
        if next_run:
            click.echo(f"Next run due at {next_run.isoformat()}.")

    @app.cli.command("cleanup-queue")
    def cleanup_queue_cmd():
        """Delete finished jobs and stale click ids past retention."""
        deleted = engine.cleanup()
        click.echo(f"Deleted {deleted['jobs']} jobs and {deleted['click_ids']} click ids.")

    @app.cli.command("retry-job")
    @click.argument("job_id", type=int)
    def retry_job_cmd(job_id):
        """Clear a waiting job's retry delay so the next pass picks it up."""
        if not engine.queue.reset_retry(job_id):
            raise click.ClickException(f"No queue job {job_id}.")
        click.echo(f"Job {job_id} is ready.")

    @app.cli.command("delete-job")
    @click.argument("job_id", type=int)
    def delete_job_cmd(job_id):
        """Remove a queue job, typically a failed one after review."""
        if not engine.queue.delete(job_id):
            raise click.ClickException(f"No queue job {job_id}.")
        click.echo(f"Deleted job {job_id}.")

    @app.cli.command("create-tracking-url")
    @click.argument("destination")
    @click.option("--source", required=True, help="utm_source")
    @click.option("--medium", required=True, help="utm_medium")
    @click.option("--campaign", required=True, help="utm_campaign")
    @click.option("--content", default=None, help="utm_content")
    @click.option("--term", default=None, help="utm_term")
    def create_tracking_url_cmd(destination, source, medium, campaign, content, term):
        """Seed a tracking definition and print its click URL."""
        definition = engine.tracking_store.create_definition(
            destination, source, medium, campaign, utm_content=content, utm_term=term
        )
        base = engine.settings.site_base_url
        click.echo(f"{base}/{engine.settings.url_prefix}/{definition.id}")

    return app


if __name__ == "__main__":
    create_app().run(host='0.0.0.0', debug=True)
