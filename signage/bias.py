"""
Gender bias correction for uncertain classifications.

The upstream classifier leans toward "male" when unsure. For confidences inside the
uncertain band the female probability is lifted by a configurable factor, scaled by a
best-effort hair / face-shape signal sampled from the frame around the face box.
"""
from __future__ import annotations
from typing import Tuple
import logging
import numpy as np

from signage.models import FaceBox

logger = logging.getLogger(__name__)

UNCERTAIN_BAND = (0.45, 0.70)
MAX_FEMALE_PROB = 0.95
DARK_THRESHOLD = 120
SAMPLE_STEP = 4
NEUTRAL_HAIR = 0.5


def apply_female_boost(gender: str,
                       confidence: float,
                       boost_factor: float,
                       hair_score: float = NEUTRAL_HAIR) -> Tuple[str, float]:
    """
    Returns the (possibly flipped) gender label and its confidence.

    Outside [0.45, 0.70] the input is returned unchanged.
    """
    lo, hi = UNCERTAIN_BAND
    if confidence < lo or confidence > hi:
        return gender, confidence
    female_prob = confidence if gender == "female" else 1.0 - confidence
    female_prob = min(MAX_FEMALE_PROB, female_prob + boost_factor * (0.3 + 0.7 * hair_score))
    if female_prob > 0.5:
        return "female", female_prob
    return "male", 1.0 - female_prob


def _dark_count(region: np.ndarray) -> Tuple[int, int]:
    """(dark, sampled) over every 4th pixel of a BGR region."""
    if region.size == 0:
        return 0, 0
    pixels = region.reshape(-1, region.shape[-1])[::SAMPLE_STEP, :3].astype(np.float32)
    brightness = pixels.mean(axis=1)
    return int((brightness < DARK_THRESHOLD).sum()), int(pixels.shape[0])


def _slice(frame: np.ndarray, x: float, y: float, w: float, h: float) -> np.ndarray:
    H, W = frame.shape[:2]
    x0, y0 = max(0, int(round(x))), max(0, int(round(y)))
    x1, y1 = min(W, int(round(x + w))), min(H, int(round(y + h)))
    if x1 <= x0 or y1 <= y0:
        return frame[0:0, 0:0]
    return frame[y0:y1, x0:x1]


def analyze_hair_region(frame: np.ndarray, box: FaceBox) -> float:
    """
    Score in [0, 1] for visible hair: dark pixels above the head (weight 0.4) and beside
    the face (weight 0.6), plus a 0.1 offset. Neutral 0.5 when nothing can be sampled.
    """
    try:
        H, W = frame.shape[:2]
        above_h = box.height * 0.4
        above_x = max(0.0, box.x - box.width * 0.2)
        above_y = max(0.0, box.y - above_h)
        above = _slice(frame, above_x, above_y, box.width * 1.4, above_h)
        dark_above, total = _dark_count(above)
        if total == 0:
            logger.warning("[bias] hair region empty; using neutral score")
            return NEUTRAL_HAIR

        side_w, side_h = box.width * 0.4, box.height * 0.8
        dark_sides = 0
        if side_w > 5:
            left_x = max(0.0, box.x - box.width * 0.5)
            left = _slice(frame, left_x, box.y, min(side_w, box.x), side_h)
            right_x = min(W - 10, box.x + box.width)
            right = _slice(frame, right_x, box.y, side_w, side_h)
            dark_sides = _dark_count(left)[0] + _dark_count(right)[0]

        above_ratio = dark_above / total
        side_ratio = dark_sides / max(1.0, total * 0.5)
        return min(1.0, above_ratio * 0.4 + side_ratio * 0.6 + 0.1)
    except (ValueError, IndexError) as e:
        logger.warning(f"[bias] hair analysis failed: {e}")
        return NEUTRAL_HAIR


def analyze_face_shape(box: FaceBox) -> float:
    """Height/width ratio mapped to 0..1; oval faces score higher."""
    if box.width <= 0:
        return NEUTRAL_HAIR
    ratio = box.height / box.width
    if ratio < 1.0:
        return 0.2
    if ratio < 1.15:
        return 0.35
    if ratio < 1.25:
        return 0.5
    if ratio < 1.35:
        return 0.65
    return 0.8


def heuristic_score(frame: np.ndarray | None, box: FaceBox, enabled: bool) -> float:
    if not enabled or frame is None:
        return NEUTRAL_HAIR
    return 0.6 * analyze_hair_region(frame, box) + 0.4 * analyze_face_shape(box)


def correct_gender(frame: np.ndarray | None,
                   box: FaceBox,
                   gender: str,
                   confidence: float,
                   boost_factor: float,
                   hair_heuristics: bool = True) -> Tuple[str, float]:
    """Bias correction entry point used by the classification stage."""
    if boost_factor <= 0:
        return gender, confidence
    hair = heuristic_score(frame, box, hair_heuristics)
    new_gender, new_conf = apply_female_boost(gender, confidence, boost_factor, hair)
    if new_gender != gender:
        logger.debug(f"[bias] flipped {gender}->{new_gender} boost={boost_factor} hair={hair:.2f}")
    return new_gender, new_conf
