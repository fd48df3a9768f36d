"""
tests/test_conditions.py — ConditionEvaluator families and fail-open behaviour.
"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from snipgate.core.conditions import ConditionEvaluator, parse_timestamp, wildcard_to_regex
from snipgate.core.context import request_context
from snipgate.utils.enums import DeviceType, Kind, PageType
from snipgate.utils.types import Fragment, RequestContext

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


# ── Helpers ──────────────────────────────────────────────────────────────


def make_fragment(conditions=None, **fields) -> Fragment:
    fields.setdefault("active", True)
    return Fragment(id=1, kind=Kind.MARKUP, source="<p>x</p>", conditions=conditions, **fields)


def evaluator_for(**ctx) -> ConditionEvaluator:
    ctx.setdefault("now", NOW)
    context = RequestContext(**ctx)
    return ConditionEvaluator(lambda: context)


# ── Basics ───────────────────────────────────────────────────────────────


class TestBasics:
    def test_inactive_never_runs(self):
        assert not evaluator_for().should_run(make_fragment(active=False))

    def test_deleted_never_runs(self):
        assert not evaluator_for().should_run(make_fragment(deleted=True))

    @pytest.mark.parametrize("conditions", [None, "", {}, "{}"])
    def test_empty_conditions_run(self, conditions):
        assert evaluator_for().should_run(make_fragment(conditions))

    def test_malformed_json_fails_open(self, caplog):
        with caplog.at_level("WARNING", logger="snipgate.core.conditions"):
            assert evaluator_for().should_run(make_fragment("{not json"))
        assert "Unparsable" in caplog.text

    def test_non_object_json_fails_open(self):
        assert evaluator_for().should_run(make_fragment("[1, 2]"))

    def test_json_string_is_parsed(self):
        conditions = json.dumps({"device_type": ["mobile"]})
        assert not evaluator_for().should_run(make_fragment(conditions))

    def test_empty_family_list_is_absent(self):
        assert evaluator_for().should_run(make_fragment({"page_type": [], "user_role": []}))

    def test_all_families_must_pass(self):
        conditions = {"page_type": ["single"], "device_type": ["mobile"]}
        ev = evaluator_for(page_types=frozenset({PageType.SINGLE}))
        assert not ev.should_run(make_fragment(conditions))

    def test_uses_bound_request_context(self):
        evaluator = ConditionEvaluator()
        fragment = make_fragment({"url_pattern": "*/cart"})
        with request_context(RequestContext(url="https://shop.example/cart")):
            assert evaluator.should_run(fragment)
        assert not evaluator.should_run(fragment)


# ── Families ─────────────────────────────────────────────────────────────


class TestPageType:
    def test_any_listed_category_matches(self):
        ev = evaluator_for(page_types=frozenset({PageType.ARCHIVE}))
        assert ev.should_run(make_fragment({"page_type": ["single", "archive"]}))

    def test_no_match(self):
        ev = evaluator_for(page_types=frozenset({PageType.HOME}))
        assert not ev.should_run(make_fragment({"page_type": ["search"]}))

    @pytest.mark.parametrize(
        "alias, page_type",
        [
            ("front_page", PageType.LANDING),
            ("front-page", PageType.LANDING),
            ("page", PageType.LISTING),
            ("404", PageType.NOT_FOUND),
            ("search_results", PageType.SEARCH),
            ("admin_area", PageType.ADMIN),
        ],
    )
    def test_aliases(self, alias, page_type):
        ev = evaluator_for(page_types=frozenset({page_type}))
        assert ev.should_run(make_fragment({"page_type": [alias]}))


class TestContentType:
    def test_matches(self):
        ev = evaluator_for(content_type="product")
        assert ev.should_run(make_fragment({"content_type": ["post", "product"]}))

    def test_post_type_alias(self):
        ev = evaluator_for(content_type="post")
        assert ev.should_run(make_fragment({"post_type": "post"}))

    def test_no_current_category_fails(self):
        assert not evaluator_for().should_run(make_fragment({"content_type": ["post"]}))


class TestUserRole:
    def test_role_held(self):
        ev = evaluator_for(authenticated=True, user_roles=frozenset({"editor"}))
        assert ev.should_run(make_fragment({"user_role": ["administrator", "editor"]}))

    def test_role_not_held(self):
        ev = evaluator_for(authenticated=True, user_roles=frozenset({"subscriber"}))
        assert not ev.should_run(make_fragment({"user_role": ["editor"]}))

    def test_guest(self):
        ev = evaluator_for(authenticated=False)
        assert ev.should_run(make_fragment({"user_role": ["guest"]}))
        assert not ev.should_run(make_fragment({"user_role": ["editor"]}))


class TestAuthStatus:
    @pytest.mark.parametrize("value", ["authenticated", "logged_in"])
    def test_requires_login(self, value):
        assert evaluator_for(authenticated=True).should_run(make_fragment({"auth_status": value}))
        assert not evaluator_for().should_run(make_fragment({"auth_status": value}))

    def test_login_status_alias(self):
        assert evaluator_for().should_run(make_fragment({"login_status": "logged_out"}))

    def test_unknown_value_skips_family(self):
        assert evaluator_for().should_run(make_fragment({"auth_status": "sometimes"}))


class TestDeviceType:
    def test_mobile(self):
        ev = evaluator_for(device=DeviceType.MOBILE)
        assert ev.should_run(make_fragment({"device_type": ["mobile"]}))
        assert not ev.should_run(make_fragment({"device_type": ["desktop"]}))

    def test_desktop(self):
        assert evaluator_for().should_run(make_fragment({"device_type": "desktop"}))


class TestUrlPattern:
    def test_wildcard_full_match(self):
        ev = evaluator_for(url="https://example.com/blog/2026/post")
        assert ev.should_run(make_fragment({"url_pattern": "*/blog/*"}))
        assert not ev.should_run(make_fragment({"url_pattern": "/blog/*"}))

    def test_case_insensitive(self):
        ev = evaluator_for(url="https://example.com/Shop")
        assert ev.should_run(make_fragment({"url_pattern": ["*/shop"]}))

    def test_literal_characters_escaped(self):
        assert not wildcard_to_regex("a.c").match("abc")
        assert wildcard_to_regex("a.c").match("a.c")


class TestDateRange:
    def test_from_boundary_is_inclusive(self):
        conditions = {"date_range": {"from": NOW.isoformat()}}
        assert evaluator_for().should_run(make_fragment(conditions))

    def test_before_from(self):
        start = NOW + timedelta(seconds=1)
        assert not evaluator_for().should_run(make_fragment({"date_range": {"from": start.isoformat()}}))

    def test_after_to(self):
        end = NOW - timedelta(days=1)
        assert not evaluator_for().should_run(make_fragment({"date_range": {"to": end.isoformat()}}))

    def test_to_boundary_is_inclusive(self):
        assert evaluator_for().should_run(make_fragment({"date_to": NOW.timestamp()}))

    def test_top_level_bounds(self):
        conditions = {"date_from": "2026-01-01T00:00:00Z", "date_to": "2026-12-31T00:00:00Z"}
        assert evaluator_for().should_run(make_fragment(conditions))

    def test_naive_is_utc(self):
        assert parse_timestamp("2026-03-01T12:00:00") == NOW

    def test_unparsable_bound_ignored(self, caplog):
        with caplog.at_level("WARNING", logger="snipgate.core.conditions"):
            assert evaluator_for().should_run(make_fragment({"date_range": {"from": "soon"}}))
        assert "Unparsable date_range" in caplog.text

    def test_out_of_range_epoch_ignored(self, caplog):
        with caplog.at_level("WARNING", logger="snipgate.core.conditions"):
            fragment = make_fragment('{"date_range": {"from": 1e300}}')
            assert evaluator_for().should_run(fragment)
        assert "Unparsable date_range 'from'" in caplog.text

    @pytest.mark.parametrize("value", [1e300, -1e300, float("nan"), float("inf"), "1e300", "nan"])
    def test_unusable_epochs_parse_to_none(self, value):
        assert parse_timestamp(value) is None
