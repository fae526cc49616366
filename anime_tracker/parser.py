from __future__ import annotations

"""
Release title parsing.

Pattern matching, not mind reading: fansub titles follow a handful of
conventions and this module knows the common ones.
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

UNKNOWN_GROUP = "unknown"

_EXTENSION_RE = re.compile(r"\.(?:mkv|mp4|avi|webm|ts)$", re.IGNORECASE)
_GROUP_RE = re.compile(r"^\s*\[([^\]]+)\]\s*")
_TAG_RE = re.compile(r"\[([^\]]*)\]|\(([^)]*)\)")
_RESOLUTION_RE = re.compile(r"\b(\d{3,4})p\b", re.IGNORECASE)
_DIMENSIONS_RE = re.compile(r"\b\d{3,4}x(\d{3,4})\b", re.IGNORECASE)
_UHD_RE = re.compile(r"\b4k\b", re.IGNORECASE)
_CHECKSUM_RE = re.compile(r"^[0-9A-Fa-f]{8}$")
_BATCH_WORD_RE = re.compile(r"\bbatch\b", re.IGNORECASE)
_RANGE_RE = re.compile(r"(?<![\d.])(\d{1,4})(?:-|\s?~\s?)(\d{1,4})(?![\d.])")

# Tried in order; every pattern captures (show, season or None, episode).
_EPISODE_PATTERNS: Tuple[Tuple[re.Pattern[str], bool], ...] = (
    (re.compile(r"^(?P<show>.*?)[\s._-]+S(?P<season>\d{1,2})E(?P<episode>\d{1,4})(?:v\d)?\b", re.IGNORECASE), True),
    (re.compile(r"^(?P<show>.*?)\s+S(?P<season>\d{1,2})\s*-\s*(?P<episode>\d{1,4})(?:v\d)?\b"), True),
    (
        re.compile(
            r"^(?P<show>.*?)\s+(?P<season>\d{1,2})(?:st|nd|rd|th)\s+Season\s*-\s*(?P<episode>\d{1,4})(?:v\d)?\b",
            re.IGNORECASE,
        ),
        True,
    ),
    (
        re.compile(r"^(?P<show>.*?)\s+Season\s+(?P<season>\d{1,2})\s*-\s*(?P<episode>\d{1,4})(?:v\d)?\b", re.IGNORECASE),
        True,
    ),
    (re.compile(r"^(?P<show>.*?)\s+-\s+(?P<episode>\d{1,4})(?:v\d)?(?:\s|$)"), False),
    (re.compile(r"^(?P<show>.*?)\s+(?:E|Ep\.?|Episode)\s*(?P<episode>\d{1,4})(?:v\d)?\s*$", re.IGNORECASE), False),
    (re.compile(r"^(?P<show>.*?)\s+(?P<episode>\d{2,4})(?:v\d)?\s*$"), False),
)


class ParseError(ValueError):
    """Raised when a title carries no usable episode number."""


class BatchReleaseError(ParseError):
    """Raised for multi-episode batches, which never go down the auto-download path."""


@dataclass(frozen=True)
class ParsedRelease:
    show_guess: str
    episode: int
    resolution: Optional[int] = None
    group: str = UNKNOWN_GROUP
    season: Optional[int] = None
    checksum: Optional[str] = None
    extras: Tuple[str, ...] = ()


def detect_group(title: str) -> str:
    """
    Pull the release group out of a leading ``[Group]`` tag.

    Returns
    -------
    str
        The group name with its original casing, or ``"unknown"`` when the
        title does not start with a bracket.
    """

    match = _GROUP_RE.match(title or "")
    if not match or not match.group(1).strip():
        return UNKNOWN_GROUP
    return match.group(1).strip()


def parse_resolution_text(text: str) -> Optional[int]:
    match = _RESOLUTION_RE.search(text)
    if match:
        return int(match.group(1))
    match = _DIMENSIONS_RE.search(text)
    if match:
        return int(match.group(1))
    if _UHD_RE.search(text):
        return 2160
    return None


def _split_tags(text: str) -> Tuple[str, List[str]]:
    tags = [(square or round_).strip() for square, round_ in _TAG_RE.findall(text)]
    core = _TAG_RE.sub(" ", text)
    return " ".join(core.split()), [tag for tag in tags if tag]


def _is_batch_range(text: str) -> bool:
    for match in _RANGE_RE.finditer(text):
        first, last = int(match.group(1)), int(match.group(2))
        if last > first:
            return True
    return False


def parse_release(title: str) -> ParsedRelease:
    """
    Extract show, episode, and friends from a release title.

    Parameters
    ----------
    title : str
        Raw title, e.g. ``"[SubsPlease] One Piece - 1060 (1080p) [37A98D45].mkv"``.

    Returns
    -------
    ParsedRelease
        Parsed fields. Resolution, season, checksum, and extras stay empty when
        the title doesn't mention them.

    Raises
    ------
    BatchReleaseError
        If the title describes an episode range or a batch.
    ParseError
        If no episode number can be found.
    """

    text = _EXTENSION_RE.sub("", (title or "").strip())
    group = detect_group(text)
    if group != UNKNOWN_GROUP:
        text = _GROUP_RE.sub("", text, count=1)

    core, tags = _split_tags(text)

    resolution = None
    checksum = None
    extras: List[str] = []
    for tag in tags:
        if _CHECKSUM_RE.match(tag):
            checksum = tag.upper()
            continue
        if _BATCH_WORD_RE.search(tag) or _is_batch_range(tag):
            raise BatchReleaseError(f"Batch release: {title}")
        tag_resolution = parse_resolution_text(tag)
        if tag_resolution is not None and resolution is None:
            resolution = tag_resolution
            leftover = _RESOLUTION_RE.sub("", tag).strip()
            if leftover:
                extras.append(leftover)
            continue
        extras.append(tag)

    # Bare resolution tokens outside brackets ("Show - 05 1080p").
    if resolution is None:
        resolution = parse_resolution_text(core)
    core = " ".join(_UHD_RE.sub(" ", _DIMENSIONS_RE.sub(" ", _RESOLUTION_RE.sub(" ", core))).split())

    if _BATCH_WORD_RE.search(core) or _is_batch_range(core):
        raise BatchReleaseError(f"Batch release: {title}")

    for pattern, has_season in _EPISODE_PATTERNS:
        match = pattern.match(core)
        if not match:
            continue
        show = match.group("show").strip(" -_.")
        if not show:
            continue
        return ParsedRelease(
            show_guess=show,
            episode=int(match.group("episode")),
            resolution=resolution,
            group=group,
            season=int(match.group("season")) if has_season else None,
            checksum=checksum,
            extras=tuple(extras),
        )

    raise ParseError(f"No episode number in: {title}")


def format_release(
    show: str,
    episode: int,
    group: Optional[str] = None,
    resolution: Optional[int] = None,
    season: Optional[int] = None,
    bracket: str = "()",
) -> str:
    """
    Build a release title the way the big fansub groups do.

    The inverse of :func:`parse_release` for well-behaved inputs; mostly handy
    in tests.
    """

    parts = []
    if group:
        parts.append(f"[{group}]")
    name = f"{show} S{season}" if season is not None else show
    parts.append(f"{name} - {episode:02d}")
    if resolution is not None:
        opening, closing = bracket[0], bracket[-1]
        parts.append(f"{opening}{resolution}p{closing}")
    return " ".join(parts)
