from __future__ import annotations

"""
Feed source adapters.

Turns RSS feeds and scraped HTML listings into one boring, uniform list of
RawItem objects, so nothing downstream has to care where a release came from.
"""

import base64
import logging
import re
import threading
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Iterator, List, Optional
from urllib.parse import quote, quote_plus, urljoin

import requests
from bs4 import BeautifulSoup

from .config import FeedSourceConfig
from .models import FeedKind, RawItem, TrackedShow
from .parser import detect_group

NYAA_NS = "https://nyaa.si/xmlns/nyaa"
_BTIH_RE = re.compile(r"urn:btih:([0-9A-Za-z]+)", re.IGNORECASE)
_NYAA_VIEW_RE = re.compile(r"nyaa\.si/view/(\d+)")


class FetchError(Exception):
    """Raised when a feed is unreachable or its document cannot be read at all."""


@dataclass
class FeedBatch:
    """Items from one fetch, plus how many entries were too broken to keep."""

    source: str
    items: List[RawItem] = field(default_factory=list)
    skipped: int = 0

    def __iter__(self) -> Iterator[RawItem]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)


def extract_info_hash(magnet: Optional[str]) -> Optional[str]:
    """
    Pull the info-hash from a magnet link as lower-case hex.

    Base32 hashes get converted, because two spellings of the same torrent
    should not count as two torrents.
    """

    if not magnet:
        return None
    match = _BTIH_RE.search(magnet)
    if not match:
        return None
    value = match.group(1)
    if len(value) == 40 and re.fullmatch(r"[0-9A-Fa-f]{40}", value):
        return value.lower()
    if len(value) == 32:
        try:
            return base64.b32decode(value.upper()).hex()
        except ValueError:
            return None
    return None


def build_magnet(info_hash: str, title: str) -> str:
    return f"magnet:?xt=urn:btih:{info_hash}&dn={quote(title)}"


def content_id_for(item: RawItem) -> str:
    """Stable identity for a release: its info-hash when we know it, its link otherwise."""

    if item.info_hash:
        return item.info_hash.lower()
    from_magnet = extract_info_hash(item.link)
    if from_magnet:
        return from_magnet
    return f"link:{item.link}"


def download_link_for(item: RawItem) -> str:
    """Prefer a magnet (rebuilt from the hash if need be) over a .torrent URL."""

    if item.link.lower().startswith("magnet:"):
        return item.link
    if item.info_hash:
        return build_magnet(item.info_hash, item.title)
    return item.link


def build_query(show: TrackedShow) -> str:
    return f"{show.search_group} {show.search_title()}".strip()


def _safe_int(value) -> Optional[int]:
    try:
        return int(str(value).replace(",", "").strip())
    except (TypeError, ValueError):
        return None


def _parse_pub_date(text: Optional[str]) -> Optional[datetime]:
    if not text:
        return None
    try:
        return parsedate_to_datetime(text.strip())
    except (TypeError, ValueError, IndexError, OverflowError):
        return None


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    stamp = _safe_int(value)
    if stamp is None:
        return None
    try:
        return datetime.fromtimestamp(stamp, tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        logging.debug("Ignoring out-of-range timestamp %r", value)
        return None


class FeedClient:
    """Fetches release listings over a per-thread requests.Session."""

    def __init__(self):
        self._session_local = threading.local()

    def _get_session(self) -> requests.Session:
        """Return a thread-local session instance."""

        session = getattr(self._session_local, "session", None)
        if session is None:
            session = requests.Session()
            session.headers.update({"Accept-Language": "en-US,en;q=0.7"})
            self._session_local.session = session
        return session

    @staticmethod
    def build_url(source: FeedSourceConfig, query: Optional[str] = None) -> str:
        """
        Expand a source URL template.

        Parameters
        ----------
        source : FeedSourceConfig
            The feed whose ``url`` may contain ``{quality}`` and ``{query}``.
        query : str, optional
            Search text for per-show sources.

        Raises
        ------
        FetchError
            If a per-show source is fetched without a query.
        """

        url = source.url
        if "{quality}" in url:
            url = url.replace("{quality}", (source.quality or "1080").lower().rstrip("p"))
        if "{query}" in url:
            if not query:
                raise FetchError(f"Feed {source.name} needs a search query")
            url = url.replace("{query}", quote_plus(query))
        return url

    def fetch(self, source: FeedSourceConfig, query: Optional[str] = None) -> FeedBatch:
        """
        Fetch and normalize one feed.

        Parameters
        ----------
        source : FeedSourceConfig
            Which feed to hit and how to read it.
        query : str, optional
            Search text, required for per-show sources.

        Returns
        -------
        FeedBatch
            The usable items plus a count of entries that were skipped.

        Raises
        ------
        FetchError
            On network errors, non-200 responses, or unreadable documents.
        """

        url = self.build_url(source, query)
        session = self._get_session()
        headers = {"User-Agent": source.user_agent}
        logging.debug("Fetching %s feed: %s", source.name, url)

        try:
            response = session.get(url, headers=headers, timeout=source.request_timeout)
        except requests.RequestException as exc:
            raise FetchError(f"{source.name}: request failed: {exc}") from exc

        if response.status_code != 200:
            raise FetchError(f"{source.name}: HTTP {response.status_code} head: {response.text[:200]!r}")

        if source.kind is FeedKind.SCRAPE:
            batch = self.parse_listing(response.text, source.name, base_url=url)
        else:
            batch = self.parse_rss(response.content, source.name)

        logging.debug("%s: %d items, %d skipped", source.name, len(batch.items), batch.skipped)
        return batch

    @classmethod
    def parse_rss(cls, document: bytes | str, origin: str) -> FeedBatch:
        """
        Parse an RSS document (nyaa.si and SubsPlease flavours).

        Raises
        ------
        FetchError
            If the document is not XML.
        """

        try:
            root = ET.fromstring(document)
        except ET.ParseError as exc:
            raise FetchError(f"{origin}: malformed feed: {exc}") from exc

        batch = FeedBatch(source=origin)
        for element in root.iter("item"):
            try:
                item = cls._rss_item(element, origin)
            except (ValueError, TypeError) as exc:
                logging.debug("%s: skipping unreadable item: %s", origin, exc)
                item = None
            if item is None:
                batch.skipped += 1
                continue
            batch.items.append(item)
        return batch

    @staticmethod
    def _rss_item(element, origin: str) -> Optional[RawItem]:
        title = (element.findtext("title") or "").strip()
        link = FeedClient._extract_link(element)
        if not title or not link:
            logging.debug("Skipping feed item without title or link: %r", title)
            return None

        info_hash = (element.findtext(f"{{{NYAA_NS}}}infoHash") or "").strip().lower() or None
        return RawItem(
            title=title,
            link=link,
            origin=origin,
            kind=FeedKind.RSS,
            published=_parse_pub_date(element.findtext("pubDate")),
            info_hash=info_hash,
            group=detect_group(title),
            seeders=_safe_int(element.findtext(f"{{{NYAA_NS}}}seeders")),
            leechers=_safe_int(element.findtext(f"{{{NYAA_NS}}}leechers")),
            size=(element.findtext(f"{{{NYAA_NS}}}size") or "").strip() or None,
        )

    @staticmethod
    def _extract_link(element) -> Optional[str]:
        """
        Find the best download link on an RSS item.

        Magnet links win wherever they appear; SubsPlease's ``nyaa.si/view/<id>``
        links are rewritten to the matching ``.torrent`` download.
        """

        enclosure = element.find("enclosure")
        if enclosure is not None:
            url = (enclosure.get("url") or "").strip()
            if url.lower().startswith("magnet:"):
                return url

        link = (element.findtext("link") or "").strip()
        guid = (element.findtext("guid") or "").strip()
        for candidate in (link, guid):
            if candidate.lower().startswith("magnet:"):
                return candidate

        if link:
            view = _NYAA_VIEW_RE.search(link)
            if view:
                return f"https://nyaa.si/download/{view.group(1)}.torrent"
            return link

        if enclosure is not None and enclosure.get("url"):
            return enclosure.get("url").strip()
        return None

    @staticmethod
    def parse_listing(html: str, origin: str, base_url: str = "https://nyaa.si/") -> FeedBatch:
        """
        Scrape a nyaa.si-style HTML results table.

        Rows without a title or any download link are skipped and counted.
        """

        soup = BeautifulSoup(html, "html.parser")
        rows = soup.select("table tbody tr")
        if not rows and soup.find("table") is None:
            raise FetchError(f"{origin}: no listing table in page")

        batch = FeedBatch(source=origin)
        for row in rows:
            try:
                item = FeedClient._listing_item(row, origin, base_url)
            except (ValueError, TypeError, KeyError) as exc:
                logging.debug("%s: skipping unreadable row: %s", origin, exc)
                item = None
            if item is None:
                batch.skipped += 1
                continue
            batch.items.append(item)
        return batch

    @staticmethod
    def _listing_item(row, origin: str, base_url: str) -> Optional[RawItem]:
        title_link = None
        for anchor in row.select("a[href^='/view/']"):
            if "#comments" in anchor.get("href", "") or "comments" in (anchor.get("class") or []):
                continue
            title_link = anchor
        magnet = row.select_one("a[href^='magnet:']")
        torrent = row.select_one("a[href$='.torrent']")

        title = ""
        if title_link is not None:
            title = (title_link.get("title") or title_link.get_text() or "").strip()
        if magnet is not None:
            link = magnet["href"].strip()
        elif torrent is not None:
            link = urljoin(base_url, torrent["href"].strip())
        else:
            link = ""

        if not title or not link:
            return None

        stamp_cell = row.select_one("td[data-timestamp]")
        published = _parse_timestamp(stamp_cell.get("data-timestamp")) if stamp_cell is not None else None

        cells = row.find_all("td")
        seeders = _safe_int(cells[-3].get_text()) if len(cells) >= 3 else None
        leechers = _safe_int(cells[-2].get_text()) if len(cells) >= 3 else None

        return RawItem(
            title=title,
            link=link,
            origin=origin,
            kind=FeedKind.SCRAPE,
            published=published,
            info_hash=extract_info_hash(link),
            group=detect_group(title),
            seeders=seeders,
            leechers=leechers,
        )
