from __future__ import annotations

"""Tests for the SQLite store: shows, rules, history, and the one-success-per-episode rule."""

from datetime import datetime, timezone

import pytest

from anime_tracker.config import ShowConfig
from anime_tracker.filters import Action, Field, FilterRule, Operator, Predicate
from anime_tracker.models import DownloadOutcome, DownloadRecord
from anime_tracker.store import SqliteStore, StoreError


def _success(show_id: int, episode: int, content_id: str = "hash") -> DownloadRecord:
    return DownloadRecord(show_id=show_id, episode=episode, content_id=content_id, outcome=DownloadOutcome.SUCCESS)


def test_upsert_show_keeps_watermark(store, frieren) -> None:
    store.commit_success(_success(frieren.show_id, 4))
    updated = store.upsert_show(ShowConfig(title="Sousou no Frieren", preferred_group="Erai-raws", season=1))

    assert updated.show_id == frieren.show_id
    assert updated.preferred_group == "Erai-raws"
    assert updated.last_downloaded_episode == 4
    assert updated.aliases == []


def test_list_shows_enabled_only(store, frieren) -> None:
    other = store.upsert_show(ShowConfig(title="Dandadan"))
    store.set_show_enabled(other.show_id, False)

    assert [show.title for show in store.list_shows()] == ["Sousou no Frieren", "Dandadan"]
    assert [show.title for show in store.list_shows(enabled_only=True)] == ["Sousou no Frieren"]
    assert store.find_show("sousou NO frieren").show_id == frieren.show_id
    assert store.get_show(999) is None


def test_commit_success_advances_watermark_with_max(store, frieren) -> None:
    assert store.commit_success(_success(frieren.show_id, 5, "five")) == 5
    assert store.commit_success(_success(frieren.show_id, 3, "three")) == 5
    assert store.get_show(frieren.show_id).last_downloaded_episode == 5


def test_second_success_for_same_episode_is_refused(store, frieren) -> None:
    store.commit_success(_success(frieren.show_id, 5, "first"))
    with pytest.raises(StoreError):
        store.commit_success(_success(frieren.show_id, 5, "second"))
    assert len(store.history(frieren.show_id)) == 1


def test_failures_do_not_block_a_later_success(store, frieren) -> None:
    failed = DownloadRecord(
        show_id=frieren.show_id,
        episode=5,
        content_id="flaky",
        outcome=DownloadOutcome.FAILED,
        error="Transmission unreachable",
    )
    store.record_failure(failed)
    store.record_failure(failed)
    assert store.get_show(frieren.show_id).last_downloaded_episode == 0
    assert store.successful_download(frieren.show_id, 5) is None
    assert not store.content_downloaded("flaky")

    store.commit_success(_success(frieren.show_id, 5, "flaky"))
    assert store.successful_download(frieren.show_id, 5).content_id == "flaky"
    assert store.content_downloaded("flaky")
    assert [record.outcome for record in store.history(frieren.show_id)] == [
        DownloadOutcome.SUCCESS,
        DownloadOutcome.FAILED,
        DownloadOutcome.FAILED,
    ]


def test_seed_default_rules_only_once(store) -> None:
    assert store.seed_default_rules() == 4
    assert store.seed_default_rules() == 0
    names = [rule.name for rule in store.list_rules()]
    assert names[0] == "Exclude batches"
    assert all(rule.rule_id for rule in store.list_rules())


def test_rules_round_trip_with_scope(store, frieren) -> None:
    global_rule = store.add_rule(
        FilterRule("no HEVC", Action.REJECT, Predicate(Field.TITLE, Operator.REGEX, "hevc"), priority=7)
    )
    store.add_rule(FilterRule("allow HEVC", Action.REJECT, show_id=frieren.show_id, disables=global_rule.rule_id))
    other = store.upsert_show(ShowConfig(title="Dandadan"))

    assert [rule.name for rule in store.list_rules(frieren.show_id)] == ["no HEVC", "allow HEVC"]
    assert [rule.name for rule in store.list_rules(other.show_id)] == ["no HEVC"]
    loaded = store.list_rules(frieren.show_id)[0]
    assert loaded.predicate == Predicate(Field.TITLE, Operator.REGEX, "hevc")
    assert loaded.priority == 7

    store.delete_rule(global_rule.rule_id)
    assert [rule.name for rule in store.list_rules(frieren.show_id)] == ["allow HEVC"]


def test_replace_rules_resolves_shows_and_names(store, frieren) -> None:
    definitions = [
        {"name": "Minimum", "field": "resolution", "operator": "less_than", "pattern": "$min_resolution", "action": "reject", "priority": 80},
        {"name": "Accept", "field": "resolution", "operator": "at_least", "pattern": "$min_resolution"},
        {"name": "Frieren takes anything", "show": "Sousou no Frieren", "action": "reject", "disables": "minimum"},
        {"name": "Ghost", "show": "Not Tracked", "field": "title", "operator": "contains", "pattern": "x"},
        {"name": "Broken", "field": "title", "operator": "regex", "pattern": "("},
    ]
    assert store.replace_rules(definitions) == 3

    rules = {rule.name: rule for rule in store.list_rules()}
    assert set(rules) == {"Minimum", "Accept", "Frieren takes anything"}
    assert rules["Frieren takes anything"].show_id == frieren.show_id
    assert rules["Frieren takes anything"].disables == rules["Minimum"].rule_id


def test_reloaded_overrides_follow_rules_by_name(store, frieren) -> None:
    definitions = [
        {"name": "No HEVC", "field": "title", "operator": "regex", "pattern": "hevc", "action": "reject"},
        {"name": "Frieren allows HEVC", "show": "Sousou no Frieren", "action": "reject", "disables": "No HEVC"},
        {"name": "Stale id", "show": "Sousou no Frieren", "action": "reject", "disables": 1},
    ]
    for _ in range(3):
        assert store.replace_rules(definitions) == 2
        rules = {rule.name: rule for rule in store.list_rules()}
        assert rules["Frieren allows HEVC"].disables == rules["No HEVC"].rule_id
        assert "Stale id" not in rules


def test_last_poll_time(store) -> None:
    assert store.last_poll_time() is None
    when = datetime(2024, 10, 5, 17, 0, tzinfo=timezone.utc)
    store.mark_polled(when)
    assert store.last_poll_time() == when


def test_file_database_persists(tmp_path) -> None:
    path = tmp_path / "nested" / "tracker.db"
    first = SqliteStore(path)
    show = first.upsert_show(ShowConfig(title="Dandadan"))
    first.commit_success(_success(show.show_id, 2))
    first.close()

    second = SqliteStore(path)
    assert second.get_show(show.show_id).last_downloaded_episode == 2
    second.close()
