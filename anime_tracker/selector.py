from __future__ import annotations

"""
Match selection.

Several groups release the same episode within the hour; this module picks
the single release we actually want, and does it the same way every time.
"""

import logging
from typing import Dict, List, Optional, Sequence, Tuple

from .models import FeedKind, ReleaseCandidate, TrackedShow

# How sure we are of a pick, by the ranking criterion that separated the winner
# from the runner-up.
CRITERION_CONFIDENCE: Tuple[float, ...] = (1.0, 0.9, 0.75, 0.6, 0.5, 0.25)
CRITERIA = ("preferred group", "resolution", "source", "filter score", "first seen", "content id")


class NoCandidateError(LookupError):
    """Nothing acceptable turned up for this episode. Happens all the time; not a failure."""


class NeedsConfirmation(NoCandidateError):
    """The pick was too close to call and a human should make it."""

    def __init__(self, message: str, ranked: List[ReleaseCandidate], confidence: float):
        super().__init__(message)
        self.ranked = ranked
        self.confidence = confidence


class MatchSelector:
    """Ranks competing releases for one (show, episode) and crowns the winner."""

    def __init__(
        self,
        source_priority: Optional[Sequence[str]] = None,
        confidence_threshold: float = 0.0,
    ):
        """
        Parameters
        ----------
        source_priority : sequence of str, optional
            Feed kinds, most trusted first. Defaults to RSS before scraped
            listings, since the RSS feeds are the canonical ones.
        confidence_threshold : float
            Picks below this confidence raise :class:`NeedsConfirmation`.
            ``0`` disables the check.
        """

        order = list(source_priority or (FeedKind.RSS.value, FeedKind.SCRAPE.value))
        self._source_rank: Dict[str, int] = {kind: index for index, kind in enumerate(order)}
        self.confidence_threshold = confidence_threshold

    def rank_key(
        self,
        candidate: ReleaseCandidate,
        show: TrackedShow,
        scores: Optional[Dict[str, int]] = None,
    ) -> Tuple:
        """Sort key, lowest first. One slot per criterion in :data:`CRITERIA`."""

        preferred = show.preferred_group
        group_rank = 0 if preferred and candidate.group.casefold() == preferred.casefold() else 1
        source_rank = self._source_rank.get(candidate.kind.value, len(self._source_rank))
        score = (scores or {}).get(candidate.content_id, 0)
        return (
            group_rank,
            -(candidate.resolution or 0),
            source_rank,
            -score,
            candidate.seen_order,
            candidate.content_id,
        )

    def rank(
        self,
        candidates: Sequence[ReleaseCandidate],
        show: TrackedShow,
        scores: Optional[Dict[str, int]] = None,
    ) -> List[ReleaseCandidate]:
        return sorted(candidates, key=lambda candidate: self.rank_key(candidate, show, scores))

    def deciding_criterion(
        self,
        ranked: Sequence[ReleaseCandidate],
        show: TrackedShow,
        scores: Optional[Dict[str, int]] = None,
    ) -> Optional[int]:
        """Index into :data:`CRITERIA` of the first slot where winner and runner-up differ."""

        if len(ranked) < 2:
            return None
        best = self.rank_key(ranked[0], show, scores)
        runner_up = self.rank_key(ranked[1], show, scores)
        for index, (left, right) in enumerate(zip(best, runner_up)):
            if left != right:
                return index
        return len(CRITERIA)

    def confidence(
        self,
        ranked: Sequence[ReleaseCandidate],
        show: TrackedShow,
        scores: Optional[Dict[str, int]] = None,
    ) -> float:
        if len(ranked) < 2:
            return 1.0
        index = self.deciding_criterion(ranked, show, scores)
        if index is None or index >= len(CRITERION_CONFIDENCE):
            return 0.0
        return CRITERION_CONFIDENCE[index]

    def select(
        self,
        candidates: Sequence[ReleaseCandidate],
        show: TrackedShow,
        scores: Optional[Dict[str, int]] = None,
    ) -> ReleaseCandidate:
        """
        Pick the best release among accepted candidates for one episode.

        Parameters
        ----------
        candidates : sequence of ReleaseCandidate
            Accepted releases, all for the same (show, episode).
        show : TrackedShow
            Supplies the preferred release group.
        scores : dict[str, int], optional
            Filter prefer-points keyed by content id.

        Returns
        -------
        ReleaseCandidate
            The winner.

        Raises
        ------
        NoCandidateError
            If ``candidates`` is empty.
        NeedsConfirmation
            If the pick falls below the configured confidence threshold.
        """

        if not candidates:
            raise NoCandidateError(f"No accepted release for {show.title}")

        ranked = self.rank(candidates, show, scores)
        confidence = self.confidence(ranked, show, scores)
        if self.confidence_threshold and confidence < self.confidence_threshold:
            raise NeedsConfirmation(
                f"{show.title} episode {ranked[0].episode}: {len(ranked)} releases, confidence {confidence:.2f}",
                ranked,
                confidence,
            )

        best = ranked[0]
        index = self.deciding_criterion(ranked, show, scores)
        logging.debug(
            "Selected %s for %s episode %d out of %d (decided by %s, confidence %.2f)",
            best.title,
            show.title,
            best.episode,
            len(ranked),
            CRITERIA[index] if index is not None and index < len(CRITERIA) else "only candidate",
            confidence,
        )
        return best
