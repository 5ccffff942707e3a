"""
Capture-window viewer aggregation.

While a spot's capture window is open, every stable track seen in a cycle is folded into
one ViewerAggregate per track id. Closing the window filters out fleeting or low-confidence
viewers and yields a read-only CaptureSummary.
"""
from __future__ import annotations
from typing import Dict, Optional
import logging
import time

from signage.models import AGE_GROUPS, CaptureSummary, DemographicCounts, ViewerAggregate
from signage.tracker import stable_age_group, stable_gender

logger = logging.getLogger(__name__)

MIN_FRAMES_FOR_SESSION = 2


class CaptureSession:
    def __init__(self, started_at: float):
        self.started_at = started_at
        self.frame_count = 0
        self.viewers: Dict[int, ViewerAggregate] = {}


class CaptureSessionAggregator:
    """Owns at most one open CaptureSession at a time."""

    def __init__(self, min_demographic_confidence: float = 0.75,
                 min_vote_confidence: float = 0.65,
                 min_frames: int = MIN_FRAMES_FOR_SESSION):
        self.min_demographic_confidence = float(min_demographic_confidence)
        self.min_vote_confidence = float(min_vote_confidence)
        self.min_frames = int(min_frames)
        self.session: Optional[CaptureSession] = None

    @property
    def is_open(self) -> bool:
        return self.session is not None

    def open(self, now: Optional[float] = None) -> CaptureSession:
        if self.session is not None:
            logger.warning("[session] open() while a session is active; discarding previous session")
        self.session = CaptureSession(time.time() if now is None else now)
        logger.debug(f"[session] opened at {self.session.started_at:.2f}")
        return self.session

    def tick(self) -> None:
        if self.session is not None:
            self.session.frame_count += 1

    def observe(self, track_id: int, gender: str, age_group: str,
                confidence: float, face_score: float) -> None:
        """Fold one sighting of a stable track into the open session (no-op when closed)."""
        if self.session is None:
            return
        viewer = self.session.viewers.get(track_id)
        if viewer is None:
            # first sighting seeds the votes unconditionally
            viewer = ViewerAggregate(track_id=track_id, seen_frames=1,
                                     best_confidence=confidence, best_face_score=face_score,
                                     final_gender=gender, final_age_group=age_group)
            viewer.gender_votes[gender] = confidence
            viewer.age_votes[age_group] = confidence
            self.session.viewers[track_id] = viewer
            return

        if confidence >= self.min_vote_confidence:
            viewer.gender_votes[gender] += confidence
            viewer.age_votes[age_group] += confidence
        viewer.seen_frames += 1
        viewer.best_face_score = max(viewer.best_face_score, face_score)
        viewer.best_confidence = max(viewer.best_confidence, confidence)
        viewer.final_gender = stable_gender(viewer.gender_votes, viewer.final_gender)
        viewer.final_age_group = stable_age_group(viewer.age_votes, viewer.final_age_group)

    def close(self, now: Optional[float] = None) -> Optional[CaptureSummary]:
        """Finalize the open session; returns None when no session was open."""
        session = self.session
        if session is None:
            return None
        self.session = None

        viewers = [v for v in session.viewers.values()
                   if v.seen_frames >= self.min_frames and v.best_confidence >= self.min_demographic_confidence]
        counts = DemographicCounts()
        for v in viewers:
            setattr(counts, v.final_gender, getattr(counts, v.final_gender) + 1)
            if v.final_age_group in AGE_GROUPS:
                setattr(counts, v.final_age_group, getattr(counts, v.final_age_group) + 1)

        summary = CaptureSummary(
            started_at=session.started_at,
            ended_at=time.time() if now is None else now,
            total_frames=session.frame_count,
            unique_viewers=len(viewers),
            demographics=counts,
            viewers=viewers,
        )
        logger.info(f"[session] closed frames={summary.total_frames} viewers={summary.unique_viewers} "
                    f"(of {len(session.viewers)} seen) demographics={counts.model_dump()}")
        return summary

    def discard(self) -> None:
        if self.session is not None:
            logger.debug("[session] discarded without summary")
        self.session = None
