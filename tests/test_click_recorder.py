"""
Click Recorder behaviour against in-memory stores.
"""
from urllib.parse import urlsplit, parse_qs

import pytest

from constants import DEFINITION_STATUS_INACTIVE
from services.click_recorder import ClickOutcome, resolve_campaign
from services.context import VisitorContext

BROWSER_UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/120.0 Safari/537.36"
BOT_UA = "Mozilla/5.0 (compatible; bingbot/2.0; +http://www.bing.com/bingbot.htm)"


def visit(query=None, cookies=None, ua=BROWSER_UA):
    return VisitorContext(ip="203.0.113.9", user_agent=ua, path="/ad/x", url="https://shop.example.com/ad/x",
                          query=query or {}, cookies=cookies or {})


def test_empty_id_passes_through(engine):
    assert engine.recorder.handle("", visit()).outcome is ClickOutcome.PASS_THROUGH


def test_malformed_id_not_found(engine, tracking_store):
    result = engine.recorder.handle("not-a-tracking-id", visit())
    assert result.outcome is ClickOutcome.NOT_FOUND
    assert tracking_store.clicks == []


def test_unknown_id_not_found(engine):
    assert engine.recorder.handle("f" * 64, visit()).outcome is ClickOutcome.NOT_FOUND


def test_inactive_definition_not_found(engine, tracking_store):
    inactive = tracking_store.add_definition(status=DEFINITION_STATUS_INACTIVE)
    assert engine.recorder.handle(inactive.id, visit()).outcome is ClickOutcome.NOT_FOUND


def test_missing_destination_not_found(engine, tracking_store):
    orphan = tracking_store.add_definition(destination=None)
    assert engine.recorder.handle(orphan.id, visit()).outcome is ClickOutcome.NOT_FOUND
    assert tracking_store.clicks == []


def test_redirect_records_click_and_writes_session(engine, tracking_store, definition, clock):
    result = engine.recorder.handle(definition.id, visit())

    assert result.outcome is ClickOutcome.REDIRECT
    assert result.location == "https://example.com/landing?ref=ad"
    assert result.redirect_method == "302"
    assert len(tracking_store.clicks) == 1

    [cookie] = result.cookies
    assert cookie.name == "_ad_clicks"
    assert engine.session_store.read(cookie.value) == {definition.id: clock.now}


def test_relative_destination_resolved_against_site(engine, tracking_store):
    d = tracking_store.add_definition(destination="/pricing")
    result = engine.recorder.handle(d.id, visit())
    assert result.location == "https://shop.example.com/pricing"


def test_query_merge_destination_wins(engine, definition):
    result = engine.recorder.handle(definition.id, visit({"ref": "visitor", "gclid": "G-1", "ad_attr_id": "x"}))
    query = parse_qs(urlsplit(result.location).query)
    assert query == {"ref": ["ad"], "gclid": ["G-1"]}


def test_redirect_params_filter_hook(engine, hooks, definition):
    hooks.add_redirect_params_filter(lambda merged, dest, incoming: {**merged, "src": "ads"})
    result = engine.recorder.handle(definition.id, visit())
    assert parse_qs(urlsplit(result.location).query)["src"] == ["ads"]


def test_redirect_loop_refused(engine, tracking_store):
    looping = tracking_store.add_definition(destination="/ad/" + "e" * 64)
    result = engine.recorder.handle(looping.id, visit())
    assert result.outcome is ClickOutcome.NOT_FOUND
    assert tracking_store.clicks == []


def test_bot_redirects_without_side_effects(engine, tracking_store, hooks, definition):
    observed = []
    hooks.on_click_observed(lambda *args: observed.append(args))

    result = engine.recorder.handle(definition.id, visit(ua=BOT_UA))

    assert result.outcome is ClickOutcome.REDIRECT
    assert result.location == "https://example.com/landing?ref=ad"
    assert result.cookies == []
    assert tracking_store.clicks == []
    assert observed == []


class TestConsentOutcomes:
    def test_denied_records_but_sets_nothing(self, make_engine, tracking_store, definition):
        engine = make_engine(consent_callback=lambda ctx: False)
        result = engine.recorder.handle(definition.id, visit())
        assert result.outcome is ClickOutcome.REDIRECT
        assert result.cookies == []
        assert len(tracking_store.clicks) == 1

    def test_denied_never_deduplicated(self, make_engine, tracking_store, definition, clock):
        engine = make_engine(consent_callback=lambda ctx: False, click_dedup_seconds=3600)
        session = engine.session_store.write({definition.id: clock.now}).value
        engine.recorder.handle(definition.id, visit(cookies={"_ad_clicks": session}))
        engine.recorder.handle(definition.id, visit(cookies={"_ad_clicks": session}))
        assert len(tracking_store.clicks) == 2

    def test_undetermined_uses_pending_cookie(self, make_engine, tracking_store, definition):
        engine = make_engine(consent_callback=lambda ctx: None)
        result = engine.recorder.handle(definition.id, visit())

        [cookie] = result.cookies
        assert cookie.name == "_aah_pending"
        assert cookie.value == definition.id
        assert cookie.max_age == 60
        assert cookie.httponly is False
        assert len(tracking_store.clicks) == 1

    def test_undetermined_fragment_transport(self, make_engine, definition):
        engine = make_engine(consent_callback=lambda ctx: None, pending_transport="fragment")
        result = engine.recorder.handle(definition.id, visit())
        assert result.cookies == []
        assert result.location == f"https://example.com/landing?ref=ad#_aah={definition.id}"


class TestClickDedup:
    def test_repeat_visit_within_window_refreshes_only(self, make_engine, tracking_store, definition, clock):
        engine = make_engine(click_dedup_seconds=600)
        first = engine.recorder.handle(definition.id, visit())
        clock.advance(60)
        second = engine.recorder.handle(definition.id, visit(cookies={"_ad_clicks": first.cookies[0].value}))

        assert len(tracking_store.clicks) == 1
        assert second.recorded is False
        assert engine.session_store.read(second.cookies[0].value) == {definition.id: clock.now}

    def test_repeat_visit_outside_window_recorded(self, make_engine, tracking_store, definition, clock):
        engine = make_engine(click_dedup_seconds=600)
        first = engine.recorder.handle(definition.id, visit())
        clock.advance(600)
        engine.recorder.handle(definition.id, visit(cookies={"_ad_clicks": first.cookies[0].value}))
        assert len(tracking_store.clicks) == 2

    def test_dedup_disabled_records_every_visit(self, engine, tracking_store, definition):
        first = engine.recorder.handle(definition.id, visit())
        engine.recorder.handle(definition.id, visit(cookies={"_ad_clicks": first.cookies[0].value}))
        assert len(tracking_store.clicks) == 2


class TestCampaignResolution:
    def test_stored_values_never_overwritten(self, tracking_store):
        d = tracking_store.add_definition(utm_source="google", utm_medium="cpc", utm_campaign="spring")
        campaign = resolve_campaign(d, {"utm_source": "bing", "mtm_medium": "email"})
        assert campaign["utm_source"] == "google"
        assert campaign["utm_medium"] == "cpc"

    def test_backfill_from_utm_then_mtm(self, tracking_store):
        d = tracking_store.add_definition(utm_source="", utm_medium="", utm_campaign="")
        campaign = resolve_campaign(d, {"utm_source": "bing", "mtm_source": "matomo", "mtm_medium": "email",
                                        "mtm_campaign": "fall"})
        assert campaign["utm_source"] == "bing"
        assert campaign["utm_medium"] == "email"
        assert campaign["utm_campaign"] == "fall"

    def test_per_visit_values_prefer_incoming(self, tracking_store):
        d = tracking_store.add_definition(utm_content="banner", utm_term="shoes")
        campaign = resolve_campaign(d, {"mtm_kwd": "boots", "mtm_cid": "42", "mtm_group": "search"})
        assert campaign["utm_content"] == "banner"
        assert campaign["utm_term"] == "boots"
        assert campaign["utm_id"] == "42"
        assert campaign["utm_source_platform"] == "search"

    def test_values_truncated(self, tracking_store):
        d = tracking_store.add_definition(utm_source="")
        campaign = resolve_campaign(d, {"utm_source": "x" * 300})
        assert len(campaign["utm_source"]) == 255

    def test_click_row_carries_backfill_but_definition_untouched(self, engine, tracking_store):
        d = tracking_store.add_definition(utm_source="", utm_medium="cpc", utm_campaign="spring")
        engine.recorder.handle(d.id, visit({"utm_source": "newsletter", "utm_term": "boots"}))

        [click] = tracking_store.clicks
        assert click.utm_source == "newsletter"
        assert click.utm_term == "boots"
        assert tracking_store.get_definition(d.id).utm_source == ""


def test_click_ids_captured_and_hooks_fired(make_engine, hooks, click_id_store, definition):
    hooks.register_click_id_capturer("google_ads", "gclid")
    observed = []
    hooks.on_click_observed(lambda tid, url, campaign, ctx: observed.append((tid, url, campaign, ctx)))
    engine = make_engine(consent_callback=lambda ctx: False)

    engine.recorder.handle(definition.id, visit({"gclid": "Cj0KCQ"}))

    assert click_id_store.rows == {(definition.id, "google_ads"): "Cj0KCQ"}
    [(tid, url, campaign, ctx)] = observed
    assert tid == definition.id
    assert url.startswith("https://example.com/landing?")
    assert campaign["utm_source"] == "google"
    assert ctx["ip"] == "203.0.113.9"


def test_failing_hook_does_not_break_redirect(engine, hooks, definition):
    def broken(*args):
        raise RuntimeError("analytics down")

    hooks.on_click_observed(broken)
    assert engine.recorder.handle(definition.id, visit()).outcome is ClickOutcome.REDIRECT


def test_click_write_failure_still_redirects(engine, tracking_store, definition):
    tracking_store.fail_writes = True
    result = engine.recorder.handle(definition.id, visit())
    assert result.outcome is ClickOutcome.REDIRECT
    assert result.recorded is False


@pytest.mark.parametrize("method", ["302", "js"])
def test_redirect_method_passed_through(make_engine, definition, method):
    engine = make_engine(redirect_method=method)
    assert engine.recorder.handle(definition.id, visit()).redirect_method == method
