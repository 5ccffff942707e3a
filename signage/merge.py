"""
Greedy, score-ordered suppression of duplicate face candidates.
"""
from __future__ import annotations
from typing import Callable, List, TypeVar

from signage.boxes import iou, containment

C = TypeVar("C")


def merge_candidates(candidates: List[C],
                     iou_threshold: float = 0.55,
                     containment_threshold: float = 0.85,
                     score: Callable[[C], float] = lambda c: c.score) -> List[C]:
    """
    Keep the highest-scoring box per physical face.

    A candidate is dropped when its IoU with an already-kept box reaches ``iou_threshold``
    or when that box covers at least ``containment_threshold`` of it. Works on anything
    exposing ``.box``; ``score`` picks the ranking value.
    """
    if not candidates:
        return []
    ordered = sorted(candidates, key=score, reverse=True)
    kept: List[C] = []
    for cand in ordered:
        dupe = False
        for k in kept:
            if iou(cand.box, k.box) >= iou_threshold or containment(cand.box, k.box) >= containment_threshold:
                dupe = True
                break
        if not dupe:
            kept.append(cand)
    return kept
