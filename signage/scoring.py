"""
Demographic targeting: spot scoring, ranking and the playback queue.
"""
from __future__ import annotations
from typing import List, Optional
import logging
import math

from signage.models import DemographicCounts, ScoredSpot, Spot

logger = logging.getLogger(__name__)

PERFECT_MATCH = 10
WILDCARD_MATCH = 5
PARTIAL_MATCH = 3
NO_MATCH = -5
JUST_PLAYED_PENALTY = -3


def dominant_gender(d: DemographicCounts) -> str:
    # ties go to male
    return "male" if d.male >= d.female else "female"


def dominant_age(d: DemographicCounts) -> str:
    if d.kid >= d.young and d.kid >= d.adult:
        return "kid"
    if d.adult > d.young and d.adult > d.kid:
        return "adult"
    return "young"


def score_spot(spot: Spot, demographics: DemographicCounts,
               last_played_id: Optional[str] = None) -> ScoredSpot:
    """
    Score a spot against the dominant audience.

    +10 exact gender and age, +5 both satisfied through a wildcard, +3 one exact match,
    -5 no match, and -3 more when the spot is the one that just played.
    """
    g, a = dominant_gender(demographics), dominant_age(demographics)
    gender_ok = spot.target_gender in (g, "all")
    age_ok = spot.target_age in (a, "all")
    reasons: List[str] = []

    if spot.target_gender == g and spot.target_age == a:
        score = PERFECT_MATCH
        reasons.append(f"perfect match: {g} + {a}")
    elif gender_ok and age_ok:
        score = WILDCARD_MATCH
        reasons.append("matches both criteria")
    elif spot.target_gender == g:
        score = PARTIAL_MATCH
        reasons.append(f"matches {g}")
    elif spot.target_age == a:
        score = PARTIAL_MATCH
        reasons.append(f"matches {a}")
    else:
        score = NO_MATCH
        reasons.append("no match")

    if last_played_id is not None and spot.id == last_played_id:
        score += JUST_PLAYED_PENALTY
        reasons.append(f"just played ({JUST_PLAYED_PENALTY})")
    return ScoredSpot(spot=spot, score=score, reasons=reasons)


def rank_spots(catalog: List[Spot], demographics: DemographicCounts,
               last_played_id: Optional[str] = None) -> List[ScoredSpot]:
    """Score every spot, highest first; equal scores keep catalog order."""
    scored = [score_spot(s, demographics, last_played_id) for s in catalog]
    return sorted(scored, key=lambda s: s.score, reverse=True)


def with_capture_window(spot: Spot, start_percent: float, end_percent: float) -> Spot:
    return spot.model_copy(update={
        "capture_start": math.floor(spot.duration * start_percent / 100),
        "capture_end": math.floor(spot.duration * end_percent / 100),
    })


def in_capture_window(spot: Spot, t: float) -> bool:
    if spot.capture_start is None or spot.capture_end is None:
        return False
    return spot.capture_start <= t <= spot.capture_end


class AdQueue:
    """
    Short playback queue re-ranked from capture summaries.

    In manual mode a fixed playlist is cycled in order and ranking is ignored.
    """

    def __init__(self, catalog: List[Spot], start_percent: float = 60, end_percent: float = 100,
                 size: int = 2):
        self.start_percent = float(start_percent)
        self.end_percent = float(end_percent)
        self.size = max(1, int(size))
        self.catalog = [with_capture_window(s, self.start_percent, self.end_percent) for s in catalog]
        self.queue: List[Spot] = list(self.catalog)
        self.last_played_id: Optional[str] = None
        self.played: List[str] = []
        self.last_ranking: List[ScoredSpot] = []
        self.manual_playlist: List[Spot] = []
        self._manual_index = 0

    @property
    def manual_mode(self) -> bool:
        return bool(self.manual_playlist)

    def set_catalog(self, catalog: List[Spot]) -> None:
        self.catalog = [with_capture_window(s, self.start_percent, self.end_percent) for s in catalog]
        self.queue = list(self.catalog)

    def set_manual_playlist(self, spots: List[Spot]) -> None:
        self.manual_playlist = [with_capture_window(s, self.start_percent, self.end_percent) for s in spots]
        self._manual_index = 0

    def reorder(self, demographics: DemographicCounts) -> List[ScoredSpot]:
        ranking = rank_spots(self.catalog, demographics, self.last_played_id)
        self.last_ranking = ranking
        self.queue = [s.spot for s in ranking[:self.size]]
        if ranking:
            logger.info(f"[queue] reordered for {dominant_gender(demographics)}/{dominant_age(demographics)}: "
                        + " > ".join(f"{s.spot.title}({s.score})" for s in ranking[:self.size]))
        return ranking

    def next_spot(self) -> Optional[Spot]:
        """Pick the next spot to play and rotate the queue."""
        if self.manual_playlist:
            idx = self._manual_index % len(self.manual_playlist)
            spot = self.manual_playlist[idx]
            self._manual_index = (idx + 1) % len(self.manual_playlist)
            self._mark_played(spot)
            return spot

        if not self.queue:
            # refill from the full catalog
            self.queue = list(self.catalog)
            self.played = []
            self.last_played_id = None
            if not self.queue:
                return None
            spot = self.queue[0]
            self._mark_played(spot)
            return spot

        spot = self.queue[0]
        if spot.id == self.last_played_id and len(self.queue) > 1:
            spot = self.queue[1]
            self.queue = [self.queue[1]] + [s for i, s in enumerate(self.queue) if i != 1]
        else:
            self.queue = self.queue[1:] + self.queue[:1]
        self._mark_played(spot)
        return spot

    def _mark_played(self, spot: Spot) -> None:
        self.played = [spot.id] + self.played[:4]
        self.last_played_id = spot.id
        logger.info(f"[queue] playing {spot.id} '{spot.title}'")
