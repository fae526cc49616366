from __future__ import annotations

"""Tests for the CLI glue around configuration reloads."""

import asyncio
import json
import logging
from unittest.mock import AsyncMock, MagicMock

import main


def _args(tmp_path, payload=None):
    path = tmp_path / "config.json"
    if payload is not None:
        path.write_text(json.dumps(payload), encoding="utf-8")
    return main.parse_args(["--config", str(path), "run"])


def test_reload_applies_fresh_config(tmp_path) -> None:
    tracker = MagicMock()
    tracker.reload = AsyncMock()
    args = _args(tmp_path, {"shows": [{"title": "Dandadan"}]})

    assert asyncio.run(main.reload_config(args, tracker)) is True
    fresh = tracker.reload.await_args.args[0]
    assert [show.title for show in fresh.shows] == ["Dandadan"]


def test_reload_with_broken_file_keeps_running(tmp_path, caplog) -> None:
    tracker = MagicMock()
    tracker.reload = AsyncMock()

    with caplog.at_level(logging.ERROR):
        assert asyncio.run(main.reload_config(_args(tmp_path), tracker)) is False
    tracker.reload.assert_not_awaited()
    assert "keeping the current configuration" in caplog.text


def test_reload_failure_while_applying_is_logged(tmp_path, caplog) -> None:
    tracker = MagicMock()
    tracker.reload = AsyncMock(side_effect=RuntimeError("database is locked"))

    with caplog.at_level(logging.ERROR):
        assert asyncio.run(main.reload_config(_args(tmp_path, {}), tracker)) is False
    assert "database is locked" in caplog.text
