from __future__ import annotations

"""
The tracker loop.

Wakes up a few times a day, pulls the feeds, and walks every tracked show
through parse, filter, select and dispatch. One show falling over never takes
the others with it, and the watermark only moves on confirmed downloads.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional

from .config import AppConfig, FeedSourceConfig
from .dispatcher import DEFAULT_DOWNLOAD_ROOT, AlreadyDownloadedError, DispatchError, DownloadDispatcher
from .feeds import FeedClient, FetchError, build_query, content_id_for, download_link_for
from .filters import FilterEngine
from .models import PollCycleResult, RawItem, ReleaseCandidate, TrackedShow
from .parser import UNKNOWN_GROUP, ParseError, parse_release
from .selector import MatchSelector, NeedsConfirmation, NoCandidateError
from .store import SqliteStore
from .transmission import TransmissionController

LOGGER = logging.getLogger(__name__)

FALLBACK_HOURS = (5, 17)
RECHECK_SECONDS = 60.0


class TrackerState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    PARSING = "parsing"
    FILTERING = "filtering"
    SELECTING = "selecting"
    DISPATCHING = "dispatching"


def next_run_time(
    now: datetime,
    polls_per_day: int,
    enabled: bool = True,
    last_poll: Optional[datetime] = None,
) -> datetime:
    """
    When the next poll is due.

    Parameters
    ----------
    now : datetime
        Current time, timezone-aware. Its zone decides what "05:00" means.
    polls_per_day : int
        Evenly spaced polls per day when polling is enabled.
    enabled : bool
        ``False`` (or ``polls_per_day == 0``) falls back to polling at 05:00 and
        17:00.
    last_poll : datetime, optional
        When the previous cycle finished. Without one an interval schedule is
        due right away.

    Returns
    -------
    datetime
        The due time; anything not after ``now`` means "go".
    """

    if enabled and polls_per_day > 0:
        if last_poll is None:
            return now
        return last_poll + timedelta(hours=24) / polls_per_day

    reference = (last_poll or now).astimezone(now.tzinfo)
    for day in (0, 1):
        base = reference + timedelta(days=day)
        for hour in FALLBACK_HOURS:
            slot = base.replace(hour=hour, minute=0, second=0, microsecond=0)
            if slot > reference:
                return slot
    raise ValueError("No fallback slot found")  # unreachable with two slots a day


def _merge_candidates(shared: List[ReleaseCandidate], extra: Iterable[ReleaseCandidate]) -> List[ReleaseCandidate]:
    """Shared candidates first; per-show ones only if the same torrent wasn't already listed."""

    seen = {candidate.content_id for candidate in shared}
    merged = list(shared)
    for candidate in extra:
        if candidate.content_id in seen:
            continue
        seen.add(candidate.content_id)
        merged.append(candidate)
    return merged


class TrackerLoop:
    """Drives poll cycles for every enabled show."""

    def __init__(
        self,
        config: AppConfig,
        store: SqliteStore,
        feeds: FeedClient,
        dispatcher: DownloadDispatcher,
        selector: Optional[MatchSelector] = None,
    ):
        self.config = config
        self.store = store
        self.feeds = feeds
        self.dispatcher = dispatcher
        self.selector = selector or MatchSelector(
            config.tracker.source_priority, config.tracker.confidence_threshold
        )
        self.state = TrackerState.IDLE
        self.shows: List[TrackedShow] = []
        self._cycle_lock = asyncio.Lock()
        self._stop_event: Optional[asyncio.Event] = None

    def _set_state(self, state: TrackerState) -> None:
        if state is not self.state:
            LOGGER.debug("Tracker %s -> %s", self.state.value, state.value)
        self.state = state

    def _stopping(self) -> bool:
        return self._stop_event is not None and self._stop_event.is_set()

    def load_shows(self) -> List[TrackedShow]:
        """
        Sync shows and filter rules from the configuration into the store, then
        load the enabled shows with their watermarks.

        Rules come from the config when it has a ``filters`` section; otherwise
        the defaults are seeded into an empty rule table.
        """

        for show in self.config.shows:
            self.store.upsert_show(show)
        if self.config.filters is not None:
            count = self.store.replace_rules(self.config.filters)
            LOGGER.info("Loaded %d filter rules from configuration", count)
        else:
            self.store.seed_default_rules()

        self.shows = self.store.list_shows(enabled_only=True)
        LOGGER.info("Tracking %d shows", len(self.shows))
        return self.shows

    async def reload(self, config: AppConfig) -> None:
        """
        Swap in a new configuration between cycles and re-sync shows and rules.

        Changed Transmission settings get a fresh controller, and with it a
        fresh session handshake.
        """

        async with self._cycle_lock:
            if config.transmission != self.config.transmission:
                LOGGER.info("Transmission settings changed; reconnecting to %s", config.transmission.url)
                self.dispatcher.transmission = TransmissionController(config.transmission)
            self.config = config
            self.selector = MatchSelector(config.tracker.source_priority, config.tracker.confidence_threshold)
            self.dispatcher.download_root = config.transmission.download_dir or DEFAULT_DOWNLOAD_ROOT
            self.load_shows()
        LOGGER.info("Configuration reloaded")

    async def _fetch(self, source: FeedSourceConfig, result: PollCycleResult, query: Optional[str] = None) -> List[RawItem]:
        loop = asyncio.get_running_loop()
        try:
            batch = await asyncio.wait_for(
                loop.run_in_executor(None, self.feeds.fetch, source, query),
                timeout=self.config.tracker.fetch_timeout,
            )
        except asyncio.TimeoutError:
            LOGGER.warning("%s: no answer within %.0fs", source.name, self.config.tracker.fetch_timeout)
            result.add_error(source.name, "fetch timed out")
            return []
        except FetchError as exc:
            LOGGER.warning("Feed fetch failed: %s", exc)
            result.add_error(source.name, exc)
            return []
        except Exception as exc:
            LOGGER.exception("%s: unexpected error while reading the feed", source.name)
            result.add_error(source.name, exc)
            return []

        result.fetch_skipped += batch.skipped
        result.seen += len(batch)
        return list(batch)

    def _parse(self, items: Iterable[RawItem], result: PollCycleResult, start: int = 0) -> List[ReleaseCandidate]:
        candidates: List[ReleaseCandidate] = []
        for item in items:
            try:
                parsed = parse_release(item.title)
            except ParseError as exc:
                result.parse_skipped += 1
                LOGGER.debug("Skipping %r: %s", item.title, exc)
                continue
            candidates.append(
                ReleaseCandidate(
                    title=item.title,
                    content_id=content_id_for(item),
                    link=download_link_for(item),
                    show_guess=parsed.show_guess,
                    episode=parsed.episode,
                    group=item.group if parsed.group == UNKNOWN_GROUP else parsed.group,
                    resolution=parsed.resolution,
                    season=parsed.season,
                    checksum=parsed.checksum,
                    extras=parsed.extras,
                    origin=item.origin,
                    kind=item.kind,
                    published=item.published,
                    seen_order=start + len(candidates),
                )
            )
        return candidates

    async def run_cycle(self, stop_event: Optional[asyncio.Event] = None) -> PollCycleResult:
        """
        Run one poll cycle over every enabled show.

        Parameters
        ----------
        stop_event : asyncio.Event, optional
            Checked before each dispatch; once set, no new downloads start and
            the cycle winds down.

        Returns
        -------
        PollCycleResult
            What was seen, accepted, downloaded, and what went wrong.
        """

        async with self._cycle_lock:
            self._stop_event = stop_event
            result = PollCycleResult(started_at=datetime.now(timezone.utc))
            self.shows = self.store.list_shows(enabled_only=True)
            engine = FilterEngine(self.store.list_rules())
            sources = [source for source in self.config.feeds if source.enabled]

            self._set_state(TrackerState.FETCHING)
            shared_sources = [source for source in sources if not source.per_show]
            batches = await asyncio.gather(*(self._fetch(source, result) for source in shared_sources))
            shared_items = [item for batch in batches for item in batch]

            self._set_state(TrackerState.PARSING)
            shared = self._parse(shared_items, result)

            per_show_sources = [source for source in sources if source.per_show]
            semaphore = asyncio.Semaphore(max(1, self.config.tracker.max_parallel_shows))
            await asyncio.gather(
                *(self._process_show(show, shared, per_show_sources, engine, result, semaphore) for show in self.shows)
            )

            self._set_state(TrackerState.IDLE)
            result.finished_at = datetime.now(timezone.utc)
            self.store.mark_polled(result.finished_at)
            self._stop_event = None

        LOGGER.info("Poll cycle finished: %s", result.summary())
        return result

    async def _process_show(
        self,
        show: TrackedShow,
        shared: List[ReleaseCandidate],
        per_show_sources: List[FeedSourceConfig],
        engine: FilterEngine,
        result: PollCycleResult,
        semaphore: asyncio.Semaphore,
    ) -> None:
        async with semaphore:
            if self._stopping():
                return
            try:
                await self._track_show(show, shared, per_show_sources, engine, result)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOGGER.exception("Processing %s failed", show.title)
                result.add_error(show.title, exc)

    async def _track_show(
        self,
        show: TrackedShow,
        shared: List[ReleaseCandidate],
        per_show_sources: List[FeedSourceConfig],
        engine: FilterEngine,
        result: PollCycleResult,
    ) -> None:
        candidates = shared
        if per_show_sources:
            self._set_state(TrackerState.FETCHING)
            query = build_query(show)
            extra: List[RawItem] = []
            for source in per_show_sources:
                extra.extend(await self._fetch(source, result, query))
            self._set_state(TrackerState.PARSING)
            candidates = _merge_candidates(shared, self._parse(extra, result, start=len(shared)))

        self._set_state(TrackerState.FILTERING)
        fresh = [candidate for candidate in candidates if candidate.episode > show.last_downloaded_episode]
        by_episode: Dict[int, List[ReleaseCandidate]] = defaultdict(list)
        scores: Dict[str, int] = {}
        for candidate, decision in engine.accepted(fresh, show, self.config.tracker.min_resolution):
            by_episode[candidate.episode].append(candidate)
            scores[candidate.content_id] = decision.score
        result.accepted += sum(len(group) for group in by_episode.values())

        loop = asyncio.get_running_loop()
        for episode in sorted(by_episode):
            self._set_state(TrackerState.SELECTING)
            try:
                best = self.selector.select(by_episode[episode], show, scores)
            except NeedsConfirmation as exc:
                LOGGER.info("Leaving %s episode %d for manual confirmation: %s", show.title, episode, exc)
                result.pending_confirmation.append((show.show_id, episode))
                continue
            except NoCandidateError:
                continue

            if self._stopping():
                LOGGER.info("Stop requested; %s episode %d left for the next run", show.title, episode)
                return

            self._set_state(TrackerState.DISPATCHING)
            try:
                record = await loop.run_in_executor(None, self.dispatcher.submit, best, show)
            except AlreadyDownloadedError as exc:
                LOGGER.debug("Skipping %s: %s", best.title, exc)
                continue
            except DispatchError as exc:
                result.failed.append(exc.record)
                result.add_error(show.title, exc)
                # Later episodes wait so the failed one is retried first.
                return
            result.downloaded.append(record)

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        """
        Poll on schedule until ``stop_event`` is set.

        Sleeps in short slices so a reload that changes the cadence, or a stop
        request, takes effect without waiting out the old interval.
        """

        self.load_shows()
        while not stop_event.is_set():
            now = datetime.now().astimezone()
            tracker = self.config.tracker
            due = next_run_time(now, tracker.polls_per_day, tracker.enabled, self.store.last_poll_time())
            delay = (due - now).total_seconds()
            if delay > 0:
                LOGGER.debug("Next poll due at %s", due.isoformat(timespec="seconds"))
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=min(delay, RECHECK_SECONDS))
                except asyncio.TimeoutError:
                    pass
                continue

            try:
                await self.run_cycle(stop_event)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOGGER.warning("Poll cycle failed: %s", exc, exc_info=True)
                self.store.mark_polled()
        LOGGER.info("Tracker stopped")
