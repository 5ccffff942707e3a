"""
Box geometry shared by the merger, the filter and the tracker.
"""
from __future__ import annotations
import math

from signage.models import FaceBox


def intersection_area(a: FaceBox, b: FaceBox) -> float:
    ix0, iy0 = max(a.x, b.x), max(a.y, b.y)
    ix1 = min(a.x + a.width, b.x + b.width)
    iy1 = min(a.y + a.height, b.y + b.height)
    iw, ih = max(0.0, ix1 - ix0), max(0.0, iy1 - iy0)
    return iw * ih


def iou(a: FaceBox, b: FaceBox) -> float:
    """Intersection over union, in [0, 1]. Degenerate boxes give 0."""
    inter = intersection_area(a, b)
    if inter <= 0:
        return 0.0
    union = a.area + b.area - inter
    if union <= 0:
        return 0.0
    return min(1.0, inter / union)


def containment(candidate: FaceBox, other: FaceBox) -> float:
    """Fraction of ``candidate`` covered by ``other``."""
    if candidate.area <= 0:
        return 0.0
    return intersection_area(candidate, other) / candidate.area


def center_distance(a: FaceBox, b: FaceBox) -> float:
    ax, ay = a.center
    bx, by = b.center
    return math.hypot(ax - bx, ay - by)


def pad_box(box: FaceBox, ratio: float, frame_w: int, frame_h: int) -> tuple[int, int, int, int]:
    """Expand a box by ``ratio`` on every side and clip to the frame; returns (x0, y0, x1, y1)."""
    pad_x, pad_y = box.width * ratio, box.height * ratio
    x0 = int(max(0, box.x - pad_x))
    y0 = int(max(0, box.y - pad_y))
    x1 = int(min(frame_w, box.x + box.width + pad_x))
    y1 = int(min(frame_h, box.y + box.height + pad_y))
    return x0, y0, x1, y1
