from __future__ import annotations

"""Tests for the filter engine. Nothing gets through unless a rule says so."""

import unittest

import pytest

from anime_tracker.config import ConfigError
from anime_tracker.filters import (
    Action,
    Field,
    FilterEngine,
    FilterRule,
    Operator,
    Predicate,
    default_rules,
    predicate_matches,
)
from anime_tracker.models import FeedKind, ReleaseCandidate, TrackedShow


def _show(**overrides) -> TrackedShow:
    data = {"show_id": 1, "title": "Sousou no Frieren", "aliases": ["Frieren"]}
    data.update(overrides)
    return TrackedShow(**data)


def _candidate(**overrides) -> ReleaseCandidate:
    data = {
        "title": "[SubsPlease] Sousou no Frieren - 05 (1080p)",
        "content_id": "aaaa",
        "link": "magnet:?xt=urn:btih:aaaa",
        "show_guess": "Sousou no Frieren",
        "episode": 5,
        "group": "SubsPlease",
        "resolution": 1080,
        "origin": "subsplease",
    }
    data.update(overrides)
    return ReleaseCandidate(**data)


def _with_ids(rules):
    for index, rule in enumerate(rules, start=1):
        rule.rule_id = index
    return rules


class FilterEngineTests(unittest.TestCase):
    def test_no_rules_means_reject(self) -> None:
        decision = FilterEngine([]).evaluate(_candidate(), _show())
        self.assertFalse(decision.accepted)
        self.assertEqual(decision.reason, "no rule matched")

    def test_default_rules_accept_tracked_show_at_minimum(self) -> None:
        decision = FilterEngine(default_rules()).evaluate(_candidate(), _show())
        self.assertTrue(decision.accepted)
        self.assertEqual(decision.rule, "Accept tracked show at minimum resolution")

    def test_default_rules_reject_other_shows(self) -> None:
        decision = FilterEngine(default_rules()).evaluate(_candidate(show_guess="Dandadan"), _show())
        self.assertFalse(decision.accepted)
        self.assertEqual(decision.rule, "Exclude other shows")

    def test_default_rules_use_show_minimum_resolution(self) -> None:
        engine = FilterEngine(default_rules())
        low = _candidate(resolution=720)
        self.assertFalse(engine.evaluate(low, _show()).accepted)
        self.assertTrue(engine.evaluate(low, _show(min_resolution=720)).accepted)
        self.assertFalse(engine.evaluate(low, _show(), min_resolution=1080).accepted)

    def test_unknown_resolution_is_never_accepted_by_numeric_rules(self) -> None:
        decision = FilterEngine(default_rules()).evaluate(_candidate(resolution=None), _show())
        self.assertFalse(decision.accepted)
        self.assertEqual(decision.reason, "no rule matched")

    def test_higher_priority_wins(self) -> None:
        rules = [
            FilterRule("accept anything", Action.ACCEPT, Predicate(Field.TITLE, Operator.CONTAINS, "Frieren"), priority=1),
            FilterRule("no HEVC", Action.REJECT, Predicate(Field.TITLE, Operator.REGEX, r"hevc|x265"), priority=10),
        ]
        engine = FilterEngine(rules)
        decision = engine.evaluate(_candidate(title="[ASW] Sousou no Frieren - 05 [1080p HEVC]"), _show())
        self.assertFalse(decision.accepted)
        self.assertEqual(decision.rule, "no HEVC")
        self.assertTrue(engine.evaluate(_candidate(), _show()).accepted)

    def test_equal_priority_keeps_insertion_order(self) -> None:
        rules = [
            FilterRule("first", Action.REJECT, Predicate(Field.GROUP, Operator.EXACT, "subsplease")),
            FilterRule("second", Action.ACCEPT, Predicate(Field.GROUP, Operator.EXACT, "SubsPlease")),
        ]
        self.assertEqual(FilterEngine(rules).evaluate(_candidate(), _show()).rule, "first")
        self.assertEqual(FilterEngine(list(reversed(rules))).evaluate(_candidate(), _show()).rule, "second")

    def test_override_beats_global_at_equal_priority(self) -> None:
        rules = [
            FilterRule("global reject", Action.REJECT, Predicate(Field.GROUP, Operator.EXACT, "SubsPlease"), priority=5),
            FilterRule(
                "frieren allows SubsPlease",
                Action.ACCEPT,
                Predicate(Field.GROUP, Operator.EXACT, "SubsPlease"),
                priority=5,
                show_id=1,
            ),
        ]
        engine = FilterEngine(rules)
        self.assertTrue(engine.evaluate(_candidate(), _show()).accepted)
        self.assertFalse(engine.evaluate(_candidate(), _show(show_id=2, title="Other", aliases=[])).accepted)

    def test_override_can_disable_a_global_rule(self) -> None:
        rules = _with_ids(default_rules())
        below_minimum = next(rule for rule in rules if rule.name == "Exclude below minimum resolution")
        rules.append(FilterRule("take 720p", Action.ACCEPT, Predicate(Field.RESOLUTION, Operator.AT_LEAST, "720"), show_id=1))
        rules.append(FilterRule("no minimum here", Action.REJECT, show_id=1, disables=below_minimum.rule_id))

        engine = FilterEngine(rules)
        self.assertNotIn(below_minimum, engine.rules_for(_show()))
        self.assertTrue(engine.evaluate(_candidate(resolution=720), _show()).accepted)
        self.assertFalse(engine.evaluate(_candidate(resolution=720), _show(show_id=2)).accepted)

    def test_prefer_rules_score_without_deciding(self) -> None:
        rules = default_rules() + [
            FilterRule("likes HEVC", Action.PREFER, Predicate(Field.EXTRAS, Operator.CONTAINS, "hevc"), priority=3),
        ]
        decision = FilterEngine(rules).evaluate(_candidate(extras=("HEVC",)), _show())
        self.assertTrue(decision.accepted)
        self.assertEqual(decision.score, 3)
        self.assertIn("likes HEVC (+3)", decision.matched)

    def test_disabled_rules_are_ignored(self) -> None:
        rule = FilterRule("off", Action.ACCEPT, Predicate(Field.TITLE, Operator.CONTAINS, "Frieren"), enabled=False)
        self.assertFalse(FilterEngine([rule]).evaluate(_candidate(), _show()).accepted)


def test_predicate_operators() -> None:
    show = _show()
    candidate = _candidate(kind=FeedKind.SCRAPE, season=2)
    assert predicate_matches(Predicate(Field.GROUP, Operator.EXACT, "subsplease"), candidate, show, 1080)
    assert predicate_matches(Predicate(Field.TITLE, Operator.CONTAINS, "frieren"), candidate, show, 1080)
    assert predicate_matches(Predicate(Field.TITLE, Operator.REGEX, r"- \d{2} "), candidate, show, 1080)
    assert predicate_matches(Predicate(Field.KIND, Operator.EXACT, "scrape"), candidate, show, 1080)
    assert predicate_matches(Predicate(Field.SEASON, Operator.AT_LEAST, "2"), candidate, show, 1080)
    assert not predicate_matches(Predicate(Field.EPISODE, Operator.LESS_THAN, "5"), candidate, show, 1080)
    assert predicate_matches(Predicate(Field.SHOW, Operator.MATCHES_SHOW), _candidate(show_guess="frieren"), show, 1080)


def test_rule_from_dict_round_trip() -> None:
    data = {"name": "no HEVC", "field": "title", "operator": "regex", "pattern": "hevc", "action": "reject", "priority": 7}
    rule = FilterRule.from_dict(data)
    assert rule.predicate == Predicate(Field.TITLE, Operator.REGEX, "hevc")
    assert FilterRule.from_dict(rule.to_dict()).to_dict() == rule.to_dict()


@pytest.mark.parametrize(
    "data",
    [
        {"field": "title", "operator": "contains", "pattern": "x"},
        {"name": "bad action", "field": "title", "operator": "contains", "pattern": "x", "action": "maybe"},
        {"name": "bad regex", "field": "title", "operator": "regex", "pattern": "(unclosed"},
        {"name": "numeric text", "field": "group", "operator": "at_least", "pattern": "5"},
        {"name": "not a number", "field": "resolution", "operator": "at_least", "pattern": "high"},
        {"name": "nothing at all", "action": "reject"},
        {"name": "global disable", "action": "reject", "disables": 3},
    ],
)
def test_invalid_rule_definitions(data) -> None:
    with pytest.raises(ConfigError):
        FilterRule.from_dict(data)


@pytest.mark.parametrize("disables", ["minimum", [3], {"id": 3}])
def test_override_disables_must_be_an_id(disables) -> None:
    with pytest.raises(ConfigError):
        FilterRule.from_dict({"name": "override", "action": "reject", "disables": disables}, show_id=1)


if __name__ == "__main__":
    unittest.main()
