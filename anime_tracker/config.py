from __future__ import annotations

"""
Configuration plumbing for Anime Tracker.

Read once at startup (and again when someone explicitly asks for a reload),
never polled. Flips tables if anything looks shady.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional

from .models import FeedKind

DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; AnimeTracker/1.0)"
DEFAULT_REQUEST_TIMEOUT = 20.0
DEFAULT_RPC_TIMEOUT = 15.0
DEFAULT_POLLS_PER_DAY = 4
DEFAULT_MIN_RESOLUTION = 1080


class ConfigError(Exception):
    """Raised when a configuration section (or a single show/rule in it) makes no sense."""


def parse_resolution(value: Any) -> Optional[int]:
    """
    Accept ``1080``, ``"1080"`` or ``"1080p"`` and hand back ``1080``.

    Raises
    ------
    ConfigError
        If the value is neither empty nor a number with an optional ``p``.
    """

    if value is None or value == "":
        return None
    text = str(value).strip().lower()
    if text.endswith("p"):
        text = text[:-1]
    try:
        return int(text)
    except ValueError as exc:
        raise ConfigError(f"Invalid resolution: {value!r}") from exc


@dataclass
class DatabaseConfig:
    path: str = "tracker.db"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "DatabaseConfig":
        if not data:
            return cls()
        return cls(path=str(data.get("path", "tracker.db")))


@dataclass
class TransmissionConfig:
    """Where Transmission lives and how to talk to it."""

    host: str = "localhost"
    port: int = 9091
    rpc_path: str = "/transmission/rpc"
    https: bool = False
    username: Optional[str] = None
    password: Optional[str] = None
    download_dir: Optional[str] = None
    start: bool = True
    timeout: float = DEFAULT_RPC_TIMEOUT

    @property
    def url(self) -> str:
        scheme = "https" if self.https else "http"
        path = self.rpc_path if self.rpc_path.startswith("/") else f"/{self.rpc_path}"
        return f"{scheme}://{self.host}:{self.port}{path}"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "TransmissionConfig":
        """
        Build a TransmissionConfig from a JSON blob.

        Parameters
        ----------
        data : dict[str, Any] | None
            Configuration chunk dedicated to Transmission. ``None`` means a local
            daemon on the default port.

        Returns
        -------
        TransmissionConfig
            The settings TransmissionController connects with.

        Raises
        ------
        ConfigError
            If the port or timeout are not numbers.
        """

        if data is None:
            return cls()
        try:
            port = int(data.get("port", 9091))
            timeout = float(data.get("timeout", DEFAULT_RPC_TIMEOUT))
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid Transmission setting: {exc}") from exc

        return cls(
            host=data.get("host", "localhost"),
            port=port,
            rpc_path=data.get("rpc_path", "/transmission/rpc"),
            https=bool(data.get("https", False)),
            username=data.get("username"),
            password=data.get("password"),
            download_dir=data.get("download_dir"),
            start=bool(data.get("start", True)),
            timeout=timeout,
        )


@dataclass
class FeedSourceConfig:
    """
    One upstream release listing.

    ``url`` is a template: ``{quality}`` expands to the configured quality and
    ``{query}`` turns the source into a per-show search.
    """

    name: str
    url: str
    kind: FeedKind = FeedKind.RSS
    quality: Optional[str] = None
    enabled: bool = True
    user_agent: str = DEFAULT_USER_AGENT
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT

    @property
    def per_show(self) -> bool:
        return "{query}" in self.url

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FeedSourceConfig":
        try:
            name = data["name"]
            url = data["url"]
        except KeyError as exc:
            raise ConfigError(f"Missing feed setting: {exc.args[0]}") from exc

        try:
            kind = FeedKind(str(data.get("kind", "rss")).lower())
        except ValueError as exc:
            raise ConfigError(f"Unknown feed kind for {name}: {data.get('kind')!r}") from exc

        try:
            request_timeout = float(data.get("request_timeout", DEFAULT_REQUEST_TIMEOUT))
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid request_timeout for {name}: {data.get('request_timeout')!r}") from exc

        quality = data.get("quality")
        return cls(
            name=name,
            url=url,
            kind=kind,
            quality=str(quality) if quality is not None else None,
            enabled=bool(data.get("enabled", True)),
            user_agent=data.get("user_agent", DEFAULT_USER_AGENT),
            request_timeout=request_timeout,
        )


def default_feeds() -> List[FeedSourceConfig]:
    return [
        FeedSourceConfig(
            name="subsplease",
            url="https://subsplease.org/rss/?t&r={quality}",
            kind=FeedKind.RSS,
            quality="1080",
        ),
        FeedSourceConfig(
            name="nyaa",
            url="https://nyaa.si/?page=rss&q={query}&c=1_2&f=0",
            kind=FeedKind.RSS,
        ),
    ]


@dataclass
class TrackerConfig:
    """Polling cadence and the knobs the matching pipeline reads."""

    enabled: bool = True
    polls_per_day: int = DEFAULT_POLLS_PER_DAY
    max_parallel_shows: int = 4
    fetch_timeout: float = 60.0
    min_resolution: int = DEFAULT_MIN_RESOLUTION
    source_priority: List[str] = field(default_factory=lambda: [FeedKind.RSS.value, FeedKind.SCRAPE.value])
    confidence_threshold: float = 0.0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "TrackerConfig":
        if not data:
            return cls()
        try:
            polls = int(data.get("polls_per_day", DEFAULT_POLLS_PER_DAY))
            parallel = int(data.get("max_parallel_shows", 4))
            fetch_timeout = float(data.get("fetch_timeout", 60.0))
            threshold = float(data.get("confidence_threshold", 0.0))
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid tracker setting: {exc}") from exc
        if polls < 0:
            raise ConfigError("polls_per_day cannot be negative")

        min_resolution = parse_resolution(data.get("min_resolution", DEFAULT_MIN_RESOLUTION))
        priority = data.get("source_priority") or [FeedKind.RSS.value, FeedKind.SCRAPE.value]
        return cls(
            enabled=bool(data.get("enabled", True)),
            polls_per_day=polls,
            max_parallel_shows=max(1, parallel),
            fetch_timeout=fetch_timeout,
            min_resolution=min_resolution or DEFAULT_MIN_RESOLUTION,
            source_priority=[str(item).lower() for item in priority],
            confidence_threshold=threshold,
        )


@dataclass
class ShowConfig:
    """A show definition as written in the config file, before the store assigns an id."""

    title: str
    aliases: List[str] = field(default_factory=list)
    season: Optional[int] = None
    preferred_group: Optional[str] = None
    min_resolution: Optional[int] = None
    enabled: bool = True
    search_group: str = "subsplease"
    download_dir: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ShowConfig":
        title = str(data.get("title") or "").strip()
        if not title:
            raise ConfigError("Show definition is missing a title")
        aliases = data.get("aliases") or []
        if isinstance(aliases, str):
            aliases = [aliases]
        season = data.get("season")
        try:
            season = int(season) if season is not None else None
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid season for {title}: {season!r}") from exc
        return cls(
            title=title,
            aliases=[str(alias) for alias in aliases],
            season=season,
            preferred_group=data.get("preferred_group") or None,
            min_resolution=parse_resolution(data.get("min_resolution")),
            enabled=bool(data.get("enabled", True)),
            search_group=data.get("search_group", "subsplease"),
            download_dir=data.get("download_dir"),
        )


@dataclass
class LoggingConfig:
    """Lightweight logging configuration for when INFO just isn't loud enough."""

    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        if data is None:
            return cls()
        return cls(level=str(data.get("level", "INFO")).upper())


@dataclass
class AppConfig:
    """Everything the tracker needs, tied up in a dataclass bow."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    transmission: TransmissionConfig = field(default_factory=TransmissionConfig)
    feeds: List[FeedSourceConfig] = field(default_factory=default_feeds)
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    shows: List[ShowConfig] = field(default_factory=list)
    filters: Optional[List[dict[str, Any]]] = None
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AppConfig":
        """
        Stitch together the full configuration set from JSON.

        Sections that are broken as a whole raise; a single broken show or feed
        is logged and skipped so the rest of the config still loads. Filter rule
        definitions are kept raw here and validated when they are synced into
        the store.

        Raises
        ------
        ConfigError
            If the payload is not an object or a whole section is unusable.
        """

        if not isinstance(data, dict):
            raise ConfigError("Configuration root must be a JSON object")

        feeds_data = data.get("feeds")
        feeds = default_feeds() if feeds_data is None else _load_each(feeds_data, FeedSourceConfig.from_dict, "feed")
        shows = _load_each(data.get("shows") or [], ShowConfig.from_dict, "show")

        filters = data.get("filters")
        if filters is not None and not isinstance(filters, list):
            raise ConfigError("'filters' must be a list of rule definitions")

        return cls(
            database=DatabaseConfig.from_dict(data.get("database")),
            transmission=TransmissionConfig.from_dict(data.get("transmission")),
            feeds=feeds,
            tracker=TrackerConfig.from_dict(data.get("tracker")),
            shows=shows,
            filters=filters,
            logging=LoggingConfig.from_dict(data.get("logging")),
        )


def _load_each(items: Any, factory, label: str) -> list:
    if not isinstance(items, list):
        raise ConfigError(f"'{label}s' must be a list")
    loaded = []
    for index, raw in enumerate(items):
        try:
            if not isinstance(raw, dict):
                raise ConfigError(f"{label} #{index} is not an object")
            loaded.append(factory(raw))
        except ConfigError as exc:
            logging.error("Skipping %s #%d: %s", label, index, exc)
    return loaded


class ConfigLoader:
    """Loads application configuration from JSON files and delivers it."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def load(self) -> AppConfig:
        """
        Read and validate the configuration file.

        Returns
        -------
        AppConfig
            The fully parsed configuration bundle.

        Raises
        ------
        ConfigError
            When the file is missing or invalid.
        """

        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise ConfigError(f"Configuration file not found: {self.path}") from exc
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Invalid JSON configuration: {exc.msg}") from exc

        return AppConfig.from_dict(payload)

    @staticmethod
    def apply_overrides(config: AppConfig, overrides: dict[str, Any]) -> AppConfig:
        """
        Update the in-memory configuration with CLI overrides.

        ``None`` values mean "leave it alone".
        """

        if overrides.get("db"):
            config.database.path = overrides["db"]
        if overrides.get("host"):
            config.transmission.host = overrides["host"]
        if overrides.get("port") is not None:
            config.transmission.port = int(overrides["port"])
        if overrides.get("download_dir"):
            config.transmission.download_dir = overrides["download_dir"]
        if overrides.get("polls_per_day") is not None:
            config.tracker.polls_per_day = int(overrides["polls_per_day"])
        return config
