from __future__ import annotations

"""
Convenience imports for the Anime Tracker package.

The pieces the CLI wires together, reachable from one place.
"""

from .config import AppConfig, ConfigError, ConfigLoader, TransmissionConfig
from .dispatcher import DownloadDispatcher
from .feeds import FeedClient
from .filters import FilterEngine, FilterRule
from .selector import MatchSelector
from .store import SqliteStore
from .tracker import TrackerLoop
from .transmission import TransmissionController

__all__ = [
    "AppConfig",
    "ConfigError",
    "ConfigLoader",
    "TransmissionConfig",
    "DownloadDispatcher",
    "FeedClient",
    "FilterEngine",
    "FilterRule",
    "MatchSelector",
    "SqliteStore",
    "TrackerLoop",
    "TransmissionController",
]
