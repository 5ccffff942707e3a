"""
Post-merge candidate filtering: score floor, size, frame share, aspect, bounds, texture.
"""
from __future__ import annotations
from typing import List, Optional, Tuple
import logging
import numpy as np

from signage.config import DetectionProfile
from signage.models import FaceBox, RawCandidate

logger = logging.getLogger(__name__)

MAX_FACE_PERCENT = 35.0       # larger boxes are walls / background
EDGE_STEP = 3
EDGE_DIFF = 50
MIN_EDGE_RATIO = 0.03


def has_texture_variation(frame: np.ndarray, box: FaceBox) -> bool:
    """
    Reject uniform surfaces: sample every 3rd pixel and count colour jumps > 50
    between pixels two columns apart. Needs more than 3% edges.
    """
    H, W = frame.shape[:2]
    x0, y0 = int(round(box.x)), int(round(box.y))
    x1, y1 = min(W, int(round(box.x + box.width))), min(H, int(round(box.y + box.height)))
    chip = frame[y0:y1, x0:x1]
    if chip.size == 0 or chip.shape[1] < 3:
        return False
    left = chip[::EDGE_STEP, 0:-2:EDGE_STEP, :3].astype(np.int32)
    right = chip[::EDGE_STEP, 2::EDGE_STEP, :3].astype(np.int32)
    n = min(left.shape[1], right.shape[1])
    if n == 0 or left.shape[0] == 0:
        return False
    diff = np.abs(left[:, :n] - right[:, :n]).sum(axis=2)
    ratio = float((diff > EDGE_DIFF).mean())
    return ratio > MIN_EDGE_RATIO


def rejection_reason(candidate: RawCandidate,
                     frame_size: Tuple[int, int],
                     profile: DetectionProfile,
                     frame: Optional[np.ndarray] = None) -> Optional[str]:
    """Return why a candidate fails, or None when it passes. ``frame_size`` is (width, height)."""
    W, H = frame_size
    b = candidate.box
    required = max(profile.hard_min_face_score, profile.min_face_score)
    if b.width <= 0 or b.height <= 0:
        return "degenerate"
    if candidate.score < required:
        return "low_score"
    if b.width < profile.min_face_size_px or b.height < profile.min_face_size_px:
        return "too_small_px"
    percent = (b.width * b.height) / float(W * H) * 100.0
    if percent < profile.min_face_size_percent:
        return "too_small_percent"
    if percent > MAX_FACE_PERCENT:
        return "too_large"
    aspect = b.height / b.width
    if aspect < profile.aspect_ratio_min or aspect > profile.aspect_ratio_max:
        return "bad_aspect"
    if b.x < 0 or b.y < 0 or b.x + b.width > W or b.y + b.height > H:
        return "out_of_bounds"
    if profile.require_face_texture and frame is not None and not has_texture_variation(frame, b):
        return "no_texture"
    return None


def passes_filter(candidate: RawCandidate,
                  frame_size: Tuple[int, int],
                  profile: DetectionProfile,
                  frame: Optional[np.ndarray] = None) -> bool:
    reason = rejection_reason(candidate, frame_size, profile, frame)
    if reason is not None:
        logger.debug(f"[filter] reject {reason} score={candidate.score:.2f} "
                     f"box=({_box_repr(candidate.box)})")
        return False
    return True


def filter_candidates(candidates: List[RawCandidate],
                      frame_size: Tuple[int, int],
                      profile: DetectionProfile,
                      frame: Optional[np.ndarray] = None) -> List[RawCandidate]:
    kept = [c for c in candidates if passes_filter(c, frame_size, profile, frame)]
    logger.debug(f"[filter] {len(kept)}/{len(candidates)} passed")
    return kept


def _box_repr(box: FaceBox) -> str:
    return f"{box.x:.0f},{box.y:.0f},{box.width:.0f},{box.height:.0f}"
