from __future__ import annotations

"""
Pytest configuration helpers.

Puts the repository root on ``sys.path`` and hands out the fixtures most
modules lean on: a throwaway in-memory store and a show to track in it.
"""

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]

if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from anime_tracker.config import ShowConfig  # noqa: E402
from anime_tracker.store import SqliteStore  # noqa: E402


@pytest.fixture
def store():
    store = SqliteStore(":memory:")
    yield store
    store.close()


@pytest.fixture
def frieren(store):
    return store.upsert_show(ShowConfig(title="Sousou no Frieren", aliases=["Frieren"]))
