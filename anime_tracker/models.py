from __future__ import annotations

"""
Data models for Anime Tracker.

Shows we care about, releases we stumble over, and the paper trail of what
actually got sent to Transmission.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterator, List, Optional, Tuple

_SEASON_SUFFIXES = (
    r"\s+(?:2nd|3rd|[4-9]th|1[0-9]th)\s+Season\s*$",
    r"\s+Season\s+\d+\s*$",
    r"\s+S\d+\s*$",
    r"\s+Part\s+\d+\s*$",
    r"\s+(?:II|III|IV|V|VI|VII|VIII|IX|X)\s*$",
    r"\s+Cour\s+\d+\s*$",
)
_SEASON_SUFFIX_RES = [re.compile(pattern, re.IGNORECASE) for pattern in _SEASON_SUFFIXES]


def strip_season_suffix(title: str) -> str:
    """
    Drop season markers that release groups never put in their titles.

    ``"Sousou no Frieren 2nd Season"`` becomes ``"Sousou no Frieren"``, while
    ``"One Piece"`` walks away untouched.
    """

    result = title.strip()
    for pattern in _SEASON_SUFFIX_RES:
        result = pattern.sub("", result)
    return result.strip()


def normalize_title(title: str) -> str:
    """Lower-case a title and collapse punctuation so comparisons stop being picky."""

    cleaned = re.sub(r"[^0-9a-z]+", " ", strip_season_suffix(title).lower())
    return " ".join(cleaned.split())


@dataclass
class TrackedShow:
    """A show somebody asked us to keep an eye on."""

    show_id: int
    title: str
    aliases: List[str] = field(default_factory=list)
    season: Optional[int] = None
    preferred_group: Optional[str] = None
    min_resolution: Optional[int] = None
    last_downloaded_episode: int = 0
    enabled: bool = True
    search_group: str = "subsplease"
    download_dir: Optional[str] = None

    def names(self) -> List[str]:
        return [self.title, *[alias for alias in self.aliases if alias]]

    def search_title(self) -> str:
        """The first alias wins for feed queries, since aliases usually hold the romaji name."""

        for alias in self.aliases:
            if alias.strip():
                return strip_season_suffix(alias)
        return strip_season_suffix(self.title)

    def matches(self, show_guess: str, season: Optional[int] = None) -> bool:
        """
        Decide whether a parsed release name belongs to this show.

        Parameters
        ----------
        show_guess : str
            Show name as extracted from a release title.
        season : int, optional
            Season parsed from the release title, when it carried one.

        Returns
        -------
        bool
            ``True`` when any of the show's names normalizes to the same text and
            the seasons (if both are known) agree.
        """

        guess = normalize_title(show_guess)
        if not guess:
            return False
        if season is not None and self.season is not None and season != self.season:
            return False
        return any(normalize_title(name) == guess for name in self.names())


class FeedKind(str, Enum):
    RSS = "rss"
    SCRAPE = "scrape"


@dataclass
class RawItem:
    """One entry from a feed, normalized across RSS and scraped listings."""

    title: str
    link: str
    origin: str
    kind: FeedKind = FeedKind.RSS
    published: Optional[datetime] = None
    info_hash: Optional[str] = None
    group: str = "unknown"
    seeders: Optional[int] = None
    leechers: Optional[int] = None
    size: Optional[str] = None


@dataclass
class ReleaseCandidate:
    """A parsed release that might be the episode a tracked show is waiting for."""

    title: str
    content_id: str
    link: str
    show_guess: str
    episode: int
    group: str = "unknown"
    resolution: Optional[int] = None
    season: Optional[int] = None
    checksum: Optional[str] = None
    extras: Tuple[str, ...] = ()
    origin: str = ""
    kind: FeedKind = FeedKind.RSS
    published: Optional[datetime] = None
    seen_order: int = 0


class DownloadOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class DownloadRecord:
    show_id: int
    episode: int
    content_id: str
    outcome: DownloadOutcome
    link: str = ""
    created_at: Optional[datetime] = None
    error: Optional[str] = None
    record_id: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is DownloadOutcome.SUCCESS


@dataclass
class PollCycleResult:
    """Counters for a single poll cycle. Purely for the logs and the curious."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    seen: int = 0
    parse_skipped: int = 0
    fetch_skipped: int = 0
    accepted: int = 0
    downloaded: List[DownloadRecord] = field(default_factory=list)
    failed: List[DownloadRecord] = field(default_factory=list)
    pending_confirmation: List[Tuple[int, int]] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def add_error(self, scope: str, exc: BaseException | str) -> None:
        self.errors.append(f"{scope}: {exc}")

    def iter_summary(self) -> Iterator[str]:
        yield f"seen={self.seen}"
        yield f"accepted={self.accepted}"
        yield f"downloaded={len(self.downloaded)}"
        yield f"failed={len(self.failed)}"
        yield f"skipped={self.parse_skipped + self.fetch_skipped}"
        yield f"errors={len(self.errors)}"

    def summary(self) -> str:
        return " ".join(self.iter_summary())
