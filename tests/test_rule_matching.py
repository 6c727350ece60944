# tests/test_rule_matching.py
from datetime import timedelta

import pytest

from auction_watch.models import CrawlerRule, utc_now
from auction_watch.rule_matching import (
    filter_matches,
    location_matches,
    matches_rule,
    price_matches,
    time_left_within,
)

NOW = utc_now().replace(microsecond=0)


@pytest.mark.parametrize("locations,expected", [
    ([], True),
    (["Florence"], True),
    (["21"], True),
    (["industrial"], True),
    (["louisville"], False),
    (["637", "21"], True),
    (["637"], False),
])
def test_location_matches(make_item, locations, expected):
    item = make_item(location_text="Florence - Industrial Road")
    assert location_matches(item, locations) is expected


def test_location_matches_raw_text_only(make_item):
    item = make_item(location_name="Erlanger — Kenton Lane Road 100", location_text="7405 Industrial Rd")
    assert location_matches(item, ["21"]) is True


def test_price_matches(make_item):
    assert price_matches(make_item(current_bid=10.0), 10.0) is True
    assert price_matches(make_item(current_bid=10.01), 10.0) is False
    assert price_matches(make_item(current_bid=None), 10.0) is False
    assert price_matches(make_item(current_bid=0.0), 0.0) is True


def test_time_left_bounds(make_item):
    assert time_left_within(make_item(minutes_left=60, now=NOW), 60, NOW) == 60
    assert time_left_within(make_item(minutes_left=61, now=NOW), 60, NOW) is None
    assert time_left_within(make_item(minutes_left=0, now=NOW), 60, NOW) == 0
    assert time_left_within(make_item(minutes_left=-1, now=NOW), 60, NOW) is None
    assert time_left_within(make_item(minutes_left=None), 60, NOW) is None


def test_matches_rule_combines_constraints(make_item):
    rule = CrawlerRule(id="r1", name="Chairs", locations=["Florence"], max_bid_price=10.0, max_time_left_minutes=60)
    assert matches_rule(make_item(current_bid=8.5, now=NOW), rule, NOW)
    assert not matches_rule(make_item(current_bid=15.0, now=NOW), rule, NOW)
    assert not matches_rule(make_item(current_bid=8.5, minutes_left=240, now=NOW), rule, NOW)


def test_filter_matches_reports_minutes_left(make_item):
    rule = CrawlerRule(id="r1", name="All", max_bid_price=100.0, max_time_left_minutes=60)
    items = [make_item("1", minutes_left=45, now=NOW), make_item("2", minutes_left=500, now=NOW)]
    matches = filter_matches(items, rule, NOW + timedelta(minutes=5))
    assert [(item.item_id, minutes) for item, minutes in matches] == [("1", 40)]
