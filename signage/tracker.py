# signage/tracker.py
"""
Cross-frame identity tracking with confidence-weighted demographic votes.

Each track carries accumulated gender / age votes. The reported ("stable") labels only
move when the vote total and the winning margin clear fixed floors, so a single noisy
classification cannot flip what consumers see.
"""
from __future__ import annotations

import itertools
import logging
import time
from typing import Dict, List, Optional, Tuple

from signage.boxes import center_distance, iou
from signage.config import DetectionProfile
from signage.models import AGE_GROUPS, ClassifiedDetection, DemographicCounts, FaceBox, TrackedFace

logger = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Matching / voting knobs
# -----------------------------------------------------------------------------
IOU_WEIGHT = 0.6
DISTANCE_WEIGHT = 0.4
DISTANCE_SCALE = 200.0
ACCEPT_IOU = 0.2
ACCEPT_DISTANCE = 80.0
BOX_ALPHA = 0.7               # weight of the incoming box
VOTE_MIN_TOTAL = 0.9
VOTE_MIN_MARGIN = 0.25
CORRECTION_WEIGHT = 100.0


def stable_gender(votes: Dict[str, float], previous: str,
                  min_total: float = VOTE_MIN_TOTAL, min_margin: float = VOTE_MIN_MARGIN) -> str:
    """Switch label only on enough evidence with a clear margin; otherwise keep ``previous``."""
    male, female = votes.get("male", 0.0), votes.get("female", 0.0)
    if male + female < min_total:
        return previous
    if abs(female - male) < min_margin:
        return previous
    return "female" if female > male else "male"


def stable_age_group(votes: Dict[str, float], previous: str,
                     min_total: float = VOTE_MIN_TOTAL, min_margin: float = VOTE_MIN_MARGIN) -> str:
    if sum(votes.get(k, 0.0) for k in AGE_GROUPS) < min_total:
        return previous
    ranked = sorted(AGE_GROUPS, key=lambda k: votes.get(k, 0.0), reverse=True)
    if votes.get(ranked[0], 0.0) - votes.get(ranked[1], 0.0) < min_margin:
        return previous
    return ranked[0]


def vote_weight(confidence: float, face_score: float) -> float:
    return confidence * min(face_score, 1.0)


def female_vote_multiplier(confidence: float, boost_factor: float) -> float:
    """Full boost at confidence 0.5, none at 1.0."""
    return 1.0 + boost_factor * max(0.0, 1.0 - (confidence - 0.5) * 2.0)


class Track:
    """One tracked face. Owned by TemporalTracker."""

    def __init__(self, track_id: int, det: ClassifiedDetection, now: float):
        self.id = track_id
        self.box = det.box.model_copy()
        self.vx = 0.0
        self.vy = 0.0
        self.consecutive_hits = 1
        self.missed_frames = 0
        self.gender_votes: Dict[str, float] = {"male": 0.0, "female": 0.0}
        self.age_votes: Dict[str, float] = {k: 0.0 for k in AGE_GROUPS}
        self.stable_gender = det.gender
        self.stable_age_group = det.age_group
        self.confidence = det.gender_confidence
        self.face_score = det.detection_score
        self.is_user_corrected = False
        self.first_seen_at = now
        self.last_seen_at = now

    def state(self, min_hits: int) -> str:
        # provisional / stable / stale; removal happens in the tracker
        if self.missed_frames > 0:
            return "stale"
        return "provisional" if self.consecutive_hits < min_hits else "stable"

    def is_stable(self, min_hits: int) -> bool:
        return self.consecutive_hits >= min_hits

    def predicted_box(self) -> FaceBox:
        return FaceBox(x=self.box.x + self.vx, y=self.box.y + self.vy,
                       width=self.box.width, height=self.box.height)

    def add_votes(self, det: ClassifiedDetection, min_vote_confidence: float, boost_factor: float) -> None:
        if self.is_user_corrected or det.gender_confidence < min_vote_confidence:
            return
        w = vote_weight(det.gender_confidence, det.detection_score)
        if det.gender == "female":
            self.gender_votes["female"] += w * female_vote_multiplier(det.gender_confidence, boost_factor)
        else:
            self.gender_votes["male"] += w
        self.age_votes[det.age_group] += w

    def view(self) -> TrackedFace:
        return TrackedFace(
            track_id=self.id,
            box=self.box.model_copy(),
            gender=self.stable_gender,
            age_group=self.stable_age_group,
            confidence=1.0 if self.is_user_corrected else self.confidence,
            face_score=1.0 if self.is_user_corrected else self.face_score,
            is_user_corrected=self.is_user_corrected,
        )


class TemporalTracker:
    """
    Greedy IoU + distance association with velocity prediction and a miss budget.

    Not thread-safe: the detection loop is the only writer.
    """

    def __init__(self, profile: DetectionProfile, boost_factor: float = 0.15,
                 min_vote_confidence: float = 0.65):
        self.profile = profile
        self.boost_factor = float(boost_factor)
        self.min_vote_confidence = float(min_vote_confidence)
        self.tracks: Dict[int, Track] = {}
        self._ids = itertools.count(1)

    # ---- lifecycle ----
    def reset(self) -> None:
        self.tracks.clear()

    def set_profile(self, profile: DetectionProfile) -> None:
        self.profile = profile

    # ---- matching ----
    def _match_score(self, track: Track, box: FaceBox) -> Optional[Tuple[float, float, float]]:
        """(score, iou, effective distance) or None when the jump is impossible."""
        overlap = iou(box, track.box)
        dist = min(center_distance(box, track.box), center_distance(box, track.predicted_box()))
        if dist > self.profile.max_velocity_px:
            return None
        score = IOU_WEIGHT * overlap + DISTANCE_WEIGHT * max(0.0, 1.0 - dist / DISTANCE_SCALE)
        return score, overlap, dist

    def _apply_match(self, track: Track, det: ClassifiedDetection, now: float) -> None:
        old = track.box
        new = det.box
        dx, dy = new.x - old.x, new.y - old.y
        track.box = FaceBox(
            x=old.x * (1 - BOX_ALPHA) + new.x * BOX_ALPHA,
            y=old.y * (1 - BOX_ALPHA) + new.y * BOX_ALPHA,
            width=old.width * (1 - BOX_ALPHA) + new.width * BOX_ALPHA,
            height=old.height * (1 - BOX_ALPHA) + new.height * BOX_ALPHA,
        )
        track.vx = track.vx * 0.5 + dx * 0.5
        track.vy = track.vy * 0.5 + dy * 0.5
        track.consecutive_hits += 1
        track.missed_frames = 0
        track.last_seen_at = now
        if track.is_user_corrected:
            return
        track.confidence = det.gender_confidence
        track.face_score = det.detection_score
        track.add_votes(det, self.min_vote_confidence, self.boost_factor)
        track.stable_gender = stable_gender(track.gender_votes, track.stable_gender)
        track.stable_age_group = stable_age_group(track.age_votes, track.stable_age_group)

    def update(self, detections: List[ClassifiedDetection],
               now: Optional[float] = None) -> List[Tuple[Track, ClassifiedDetection, int]]:
        """
        Fold one cycle of detections into the track table.

        Returns (track, detection, hits_before_match) for every matched existing track,
        so callers can tell which tracks were already stable when seen.
        """
        now = time.time() if now is None else now
        used: set[int] = set()
        matched: List[Tuple[Track, ClassifiedDetection, int]] = []
        matched_ids: set[int] = set()

        for tid, track in self.tracks.items():
            best_i, best_score = None, 0.0
            for i, det in enumerate(detections):
                if i in used:
                    continue
                res = self._match_score(track, det.box)
                if res is None:
                    continue
                score, overlap, dist = res
                if score > best_score and (overlap > ACCEPT_IOU or dist < ACCEPT_DISTANCE):
                    best_i, best_score = i, score
            if best_i is not None:
                used.add(best_i)
                matched_ids.add(tid)
                hits_before = track.consecutive_hits
                self._apply_match(track, detections[best_i], now)
                matched.append((track, detections[best_i], hits_before))

        for tid in list(self.tracks):
            if tid in matched_ids:
                continue
            track = self.tracks[tid]
            track.missed_frames += 1
            # coast on half the velocity through the first half of the hold budget
            if track.missed_frames <= self.profile.hold_frames / 2:
                track.box = FaceBox(x=track.box.x + track.vx * 0.5, y=track.box.y + track.vy * 0.5,
                                    width=track.box.width, height=track.box.height)
            if track.missed_frames > self.profile.hold_frames:
                logger.debug(f"[tracker] drop track={tid} missed={track.missed_frames}")
                del self.tracks[tid]

        for i, det in enumerate(detections):
            if i in used:
                continue
            track = Track(next(self._ids), det, now)
            track.add_votes(det, self.min_vote_confidence, self.boost_factor)
            self.tracks[track.id] = track

        logger.debug(f"[tracker] dets={len(detections)} matched={len(matched)} tracks={len(self.tracks)}")
        return matched

    # ---- reporting ----
    def stable_tracks(self) -> List[Track]:
        return [t for t in self.tracks.values() if t.is_stable(self.profile.min_consecutive_frames)]

    def stable_views(self) -> List[TrackedFace]:
        return [t.view() for t in self.stable_tracks()]

    def demographics(self, min_confidence: float) -> DemographicCounts:
        """Count confident stable tracks."""
        counts = DemographicCounts()
        for face in self.stable_views():
            if face.confidence < min_confidence:
                continue
            setattr(counts, face.gender, getattr(counts, face.gender) + 1)
            setattr(counts, face.age_group, getattr(counts, face.age_group) + 1)
        return counts

    # ---- operator corrections ----
    def correct(self, track_id: int, gender: str, age_group: str) -> Track:
        """Pin a track's labels; automatic votes are ignored for the rest of its life."""
        track = self.tracks.get(track_id)
        if track is None:
            raise KeyError(f"Unknown track: {track_id}")
        track.gender_votes = {"male": 0.0, "female": 0.0}
        track.gender_votes[gender] = CORRECTION_WEIGHT
        track.age_votes = {k: 0.0 for k in AGE_GROUPS}
        track.age_votes[age_group] = CORRECTION_WEIGHT
        track.stable_gender = gender
        track.stable_age_group = age_group
        track.is_user_corrected = True
        track.confidence = 1.0
        track.face_score = 1.0
        logger.info(f"[tracker] track={track_id} corrected to {gender}/{age_group}")
        return track

    def mark_false_positive(self, track_id: int) -> None:
        if track_id not in self.tracks:
            raise KeyError(f"Unknown track: {track_id}")
        del self.tracks[track_id]
        logger.info(f"[tracker] track={track_id} removed as false positive")
