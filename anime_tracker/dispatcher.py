from __future__ import annotations

"""
Download dispatch.

Hands the chosen release to Transmission and writes down what happened. The
history table and the watermark only ever move together, and only after
Transmission said yes.
"""

import logging
import threading
from pathlib import PurePosixPath
from typing import Dict, Optional

from .models import DownloadOutcome, DownloadRecord, ReleaseCandidate, TrackedShow
from .store import SqliteStore, StoreError
from .transmission import TransmissionController, TransmissionError

DEFAULT_DOWNLOAD_ROOT = "/data/Anime"


class DispatchError(Exception):
    """Transmission refused or never answered. The failed attempt is in ``record``."""

    def __init__(self, message: str, record: DownloadRecord):
        super().__init__(message)
        self.record = record


class AlreadyDownloadedError(Exception):
    """The episode (or this exact torrent) was already downloaded successfully."""


class DownloadDispatcher:
    """Submits releases to Transmission, at most once per (show, episode)."""

    def __init__(
        self,
        store: SqliteStore,
        transmission: TransmissionController,
        download_root: Optional[str] = None,
    ):
        self.store = store
        self.transmission = transmission
        self.download_root = download_root or DEFAULT_DOWNLOAD_ROOT
        self._locks: Dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, show_id: int) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(show_id)
            if lock is None:
                lock = self._locks[show_id] = threading.Lock()
            return lock

    def download_dir_for(self, candidate: ReleaseCandidate, show: TrackedShow) -> str:
        """``show.download_dir`` if set, else ``<root>/<title>/Season <n>``."""

        if show.download_dir:
            return show.download_dir
        path = PurePosixPath(self.download_root) / show.title.replace("/", "-").strip()
        season = candidate.season or show.season
        if season:
            path = path / f"Season {season}"
        return str(path)

    def submit(self, candidate: ReleaseCandidate, show: TrackedShow) -> DownloadRecord:
        """
        Send ``candidate`` to Transmission and record the outcome.

        Parameters
        ----------
        candidate : ReleaseCandidate
            The selected release.
        show : TrackedShow
            The show it belongs to.

        Returns
        -------
        DownloadRecord
            The successful record; the show's watermark now covers the episode.

        Raises
        ------
        AlreadyDownloadedError
            If the episode or content id already has a successful download.
            Nothing is sent to Transmission.
        DispatchError
            If Transmission failed. A failed record is stored and the watermark
            is untouched, so the next cycle tries again.
        """

        with self._lock_for(show.show_id):
            if self.store.successful_download(show.show_id, candidate.episode) is not None:
                raise AlreadyDownloadedError(f"{show.title} episode {candidate.episode} already downloaded")
            if self.store.content_downloaded(candidate.content_id):
                raise AlreadyDownloadedError(f"{candidate.title} already downloaded")

            download_dir = self.download_dir_for(candidate, show)
            try:
                self.transmission.add(candidate.link, download_dir=download_dir)
            except TransmissionError as exc:
                record = self.store.record_failure(
                    DownloadRecord(
                        show_id=show.show_id,
                        episode=candidate.episode,
                        content_id=candidate.content_id,
                        outcome=DownloadOutcome.FAILED,
                        link=candidate.link,
                        error=str(exc),
                    )
                )
                logging.warning("Failed to queue %s: %s", candidate.title, exc)
                raise DispatchError(f"{show.title} episode {candidate.episode}: {exc}", record) from exc

            record = DownloadRecord(
                show_id=show.show_id,
                episode=candidate.episode,
                content_id=candidate.content_id,
                outcome=DownloadOutcome.SUCCESS,
                link=candidate.link,
            )
            try:
                watermark = self.store.commit_success(record)
            except StoreError as exc:
                raise AlreadyDownloadedError(str(exc)) from exc

        show.last_downloaded_episode = watermark
        logging.info("Queued %s into %s", candidate.title, download_dir)
        return record
