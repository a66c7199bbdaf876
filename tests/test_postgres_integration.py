"""
Postgres-backed stores and the full click -> conversion -> report path.

Needs a reachable DATABASE_URL; skipped otherwise. Run with `pytest -m postgres`.
"""
import os
from datetime import datetime, timedelta, timezone

import psycopg2
import pytest
from alembic import command
from alembic.config import Config

from services.context import VisitorContext

pytestmark = pytest.mark.postgres

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
TABLES = "conversions, clicks, click_ids, report_queue, tracking_definitions"
BROWSER_UA = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 Chrome/120.0 Safari/537.36"


@pytest.fixture(scope="module")
def migrated(pg_available):
    # No ini file: keeps alembic from reconfiguring test logging
    cfg = Config()
    cfg.set_main_option("script_location", os.path.join(PROJECT_ROOT, "migrations"))
    command.upgrade(cfg, "head")
    return True


@pytest.fixture
def pg_app(migrated):
    conn = psycopg2.connect(os.environ["DATABASE_URL"])
    with conn, conn.cursor() as cur:
        cur.execute(f"TRUNCATE {TABLES} RESTART IDENTITY CASCADE")
    conn.close()

    from app import create_app
    app = create_app({"TESTING": True, "RATELIMIT_ENABLED": False, "AD_ATTR_COOKIE_SECURE": False})
    with app.test_request_context("/"):
        yield app


@pytest.fixture
def pg_engine(pg_app):
    return pg_app.extensions["ad_attribution"]


def test_definition_roundtrip(pg_engine):
    store = pg_engine.tracking_store
    created = store.create_definition("https://example.com/a", "google", "cpc", "spring", utm_term="shoes")

    loaded = store.get_definition(created.id)
    assert loaded.destination == "https://example.com/a"
    assert loaded.utm_term == "shoes"
    assert loaded.is_active
    assert store.get_active_ids([created.id, "f" * 64]) == {created.id}


def test_click_then_conversion(pg_engine):
    store = pg_engine.tracking_store
    definition = store.create_definition("https://example.com/a", "google", "cpc", "spring")
    pg_engine.hooks.register_click_id_capturer("google_ads", "gclid")

    click = pg_engine.recorder.handle(
        definition.id, VisitorContext(user_agent=BROWSER_UA, query={"gclid": "Cj0", "utm_content": "hero"})
    )
    cookies = {c.name: c.value for c in click.cookies}

    result = pg_engine.calculator.handle_conversion(VisitorContext(user_agent=BROWSER_UA, cookies=cookies))

    assert result.attributions == {definition.id: 1.0}
    assert pg_engine.click_id_store.get_for_ids([definition.id]) == {definition.id: {"google_ads": "Cj0"}}
    campaign = store.get_campaign_data([definition.id])[definition.id]
    assert campaign["utm_campaign"] == "spring"
    assert campaign["utm_content"] == "hero"


def test_conversion_rejects_unknown_click(pg_engine):
    store = pg_engine.tracking_store
    definition = store.create_definition("https://example.com/a", "google", "cpc", "spring")
    now = datetime.now(timezone.utc)
    assert store.record_conversions({definition.id: 1.0}, {definition.id: int(now.timestamp())}, now) == {}


class TestReportQueue:
    def test_claim_complete(self, pg_engine):
        queue = pg_engine.queue
        job_id = queue.enqueue("crm", {"lead": 7}, label="lead")

        [job] = queue.dequeue(5)
        assert job.id == job_id
        assert job.payload == {"lead": 7}
        assert queue.dequeue(5) == []

        queue.complete(job_id)
        assert queue.get_status()["done"] == 1

    def test_fail_schedules_retry_then_parks(self, pg_engine):
        queue = pg_engine.queue
        job_id = queue.enqueue("crm", {}, retry={"attempts_per_round": 1, "max_rounds": 2, "round_delay": 3600})

        first = queue.fail(job_id, "HTTP 500")
        assert first.status == "pending"
        assert first.retry_after > datetime.now(timezone.utc) + timedelta(minutes=50)
        assert not queue.has_ready_jobs()
        assert queue.next_retry_time() is not None

        assert queue.reset_retry(job_id) is True
        assert queue.has_ready_jobs()

        second = queue.fail(job_id, "HTTP 500 again")
        assert second.status == "failed"
        status = queue.get_status()
        assert status["failed"] == 1
        assert status["last_error"] == "HTTP 500 again"

    def test_processor_drains(self, pg_engine):
        delivered = []
        pg_engine.hooks.register_reporter("crm", process=lambda payload: delivered.append(payload) or True)
        pg_engine.queue.enqueue("crm", {"n": 1})
        pg_engine.queue.enqueue("crm", {"n": 2})

        assert pg_engine.processor.process() is None
        assert sorted(p["n"] for p in delivered) == [1, 2]
        assert pg_engine.queue.get_active_jobs() == []

    def test_fail_missing_job(self, pg_engine):
        assert pg_engine.queue.fail(999999, "gone") is None

    def test_delete(self, pg_engine):
        queue = pg_engine.queue
        job_id = queue.enqueue("crm", {})

        assert queue.delete(job_id) is True
        assert queue.get_active_jobs() == []
        assert queue.delete(job_id) is False
        assert queue.reset_retry(job_id) is False
