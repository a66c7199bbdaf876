"""
Settings resolution, environment helpers and engine wiring checks.
"""
import sys
from dataclasses import replace

import pytest

from config import AttributionSettings
from services.engine import build_engine, validate_settings
from services.errors import ConfigurationError
from services.queue_processor import ThreadScheduler, WorkerScheduler
from utils.env import get_env_bool, get_env_choice, get_env_int, get_database_url


class TestAttributionSettings:
    def test_flask_config_overrides(self):
        settings = AttributionSettings.from_config({
            "SECRET_KEY": "override-key",
            "SITE_BASE_URL": "https://www.example.org/",
            "AD_ATTR_URL_PREFIX": "/go/",
            "AD_ATTR_DEDUP_SECONDS": 600,
            "AD_ATTR_WEIGHTING": "linear",
        })
        assert settings.secret_key == "override-key"
        assert settings.site_base_url == "https://www.example.org"
        assert settings.url_prefix == "go"
        assert settings.dedup_seconds == 600
        assert settings.weighting == "linear"

    def test_unrelated_keys_ignored(self):
        base = AttributionSettings.from_config()
        assert AttributionSettings.from_config({"TESTING": True}) == base

    def test_defaults(self):
        settings = AttributionSettings.from_config()
        assert settings.url_prefix == "ad"
        assert settings.cookie_lifetime_days == 90
        assert settings.max_session_entries == 50
        assert settings.dedup_seconds == 0
        assert settings.retry_defaults == {
            "attempts_per_round": 3, "retry_delay": 60, "max_rounds": 3, "round_delay": 21600,
        }

    def test_dedup_cookie_never_outlives_session(self):
        settings = replace(AttributionSettings.from_config(), dedup_seconds=10 ** 9, cookie_lifetime_days=30)
        assert settings.dedup_cookie_seconds == 30 * 86400


class TestEnvHelpers:
    def test_int_parses(self, monkeypatch):
        monkeypatch.setenv("AD_ATTR_TEST_INT", " 42 ")
        assert get_env_int("AD_ATTR_TEST_INT", default=1) == 42

    def test_int_falls_back_on_garbage(self, monkeypatch):
        monkeypatch.setenv("AD_ATTR_TEST_INT", "sixty")
        assert get_env_int("AD_ATTR_TEST_INT", default=60) == 60

    def test_choice(self, monkeypatch):
        monkeypatch.setenv("AD_ATTR_TEST_CHOICE", " JS ")
        assert get_env_choice("AD_ATTR_TEST_CHOICE", ("302", "js"), default="302") == "js"
        monkeypatch.delenv("AD_ATTR_TEST_CHOICE")
        assert get_env_choice("AD_ATTR_TEST_CHOICE", ("302", "js"), default="302") == "302"

    def test_choice_rejects_unknown(self, monkeypatch):
        monkeypatch.setenv("AD_ATTR_TEST_CHOICE", "301")
        with pytest.raises(ValueError, match="302, js"):
            get_env_choice("AD_ATTR_TEST_CHOICE", ("302", "js"), default="302")

    def test_database_url_alias(self, monkeypatch):
        monkeypatch.setenv("AD_ATTR_TEST_DB", "postgres://u:p@db:5432/ads")
        assert get_database_url("AD_ATTR_TEST_DB") == "postgresql://u:p@db:5432/ads"

    @pytest.mark.parametrize("raw,expected", [("1", True), ("YES", True), ("off", False), ("", True)])
    def test_bool(self, monkeypatch, raw, expected):
        monkeypatch.setenv("AD_ATTR_TEST_BOOL", raw)
        assert get_env_bool("AD_ATTR_TEST_BOOL", default=True) is expected


class TestValidateSettings:
    @pytest.mark.parametrize("override", [
        {"secret_key": ""},
        {"queue_runner": "cron"},
        {"pending_transport": "localstorage"},
        {"redirect_method": "301"},
        {"max_session_entries": 0},
        {"queue_attempts_per_round": 0},
        {"queue_max_rounds": 0},
        {"url_prefix": ""},
    ])
    def test_rejects(self, settings, override):
        with pytest.raises(ConfigurationError):
            validate_settings(replace(settings, **override))

    def test_accepts_defaults(self, settings):
        validate_settings(settings)


class TestBuildEngine:
    def test_unknown_weighting(self, settings, tracking_store, click_id_store, queue):
        with pytest.raises(ConfigurationError):
            build_engine(replace(settings, weighting="first_click"), tracking_store=tracking_store,
                         click_id_store=click_id_store, queue=queue)

    def test_thread_runner_needs_app(self, settings, tracking_store, click_id_store, queue):
        with pytest.raises(ConfigurationError):
            build_engine(replace(settings, queue_runner="thread"), tracking_store=tracking_store,
                         click_id_store=click_id_store, queue=queue)

    def test_thread_runner_with_app(self, settings, tracking_store, click_id_store, queue):
        from flask import Flask
        engine = build_engine(replace(settings, queue_runner="thread"), app=Flask(__name__),
                              tracking_store=tracking_store, click_id_store=click_id_store, queue=queue)
        assert isinstance(engine.scheduler, ThreadScheduler)
        assert engine.processor.scheduler is engine.scheduler

    def test_worker_runner_default(self, settings, tracking_store, click_id_store, queue):
        engine = build_engine(settings, tracking_store=tracking_store, click_id_store=click_id_store, queue=queue)
        assert isinstance(engine.scheduler, WorkerScheduler)
        assert engine.calculator.scheduler is engine.scheduler

    def test_create_app_builds_engine_from_config(self):
        from app import create_app
        app = create_app({"TESTING": True, "RATELIMIT_ENABLED": False, "AD_ATTR_URL_PREFIX": "r"})
        engine = app.extensions["ad_attribution"]
        assert engine.settings.url_prefix == "r"
        assert any(rule.rule == "/r/<tracking_id>" for rule in app.url_map.iter_rules())


class TestStageGuards:
    def test_staging_requires_https_site_url(self, monkeypatch):
        monkeypatch.setenv("APP_STAGE", "staging")
        monkeypatch.setenv("FLASK_ENV", "production")
        monkeypatch.setenv("SITE_BASE_URL", "http://shop.example.com")
        # monkeypatch puts the already-imported module back afterwards
        monkeypatch.delitem(sys.modules, "config")

        with pytest.raises(RuntimeError, match="HTTPS"):
            import config  # noqa: F401

    def test_database_url_must_be_postgres(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "mysql://user:pw@db/ads")
        monkeypatch.delitem(sys.modules, "config")

        with pytest.raises(ValueError) as excinfo:
            import config  # noqa: F401
        assert "pw" not in str(excinfo.value)
