"""
Ground-truth labelling and accuracy metrics for the classifier.

Operators label live detections (correct / wrong / not a face). Labels accumulate in an
EvaluationLog for the life of the detection loop; metrics and a confusion matrix are computed
over any list of entries.
"""
from __future__ import annotations
from typing import Dict, List
import time
import uuid

from pydantic import BaseModel, Field

from signage.models import AGE_GROUPS, FaceBox, Gender, AgeGroup


class GroundTruthEntry(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: float = Field(default_factory=time.time)
    box: FaceBox
    detected_gender: Gender
    detected_age_group: AgeGroup
    detected_confidence: float
    detected_face_score: float
    actual_gender: Gender
    actual_age_group: AgeGroup
    is_false_positive: bool = False
    track_id: int | None = None


class EvaluationMetrics(BaseModel):
    total_samples: int = 0
    gender_accuracy: float = 0.0
    male_recall: float = 0.0
    female_recall: float = 0.0
    male_precision: float = 0.0
    female_precision: float = 0.0
    age_accuracy: float = 0.0
    kid_accuracy: float = 0.0
    young_accuracy: float = 0.0
    adult_accuracy: float = 0.0
    false_positive_rate: float = 0.0
    true_detection_rate: float = 0.0
    avg_confidence_correct: float = 0.0
    avg_confidence_incorrect: float = 0.0


def _ratio(num: int, den: int) -> float:
    return num / den if den > 0 else 0.0


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def compute_metrics(entries: List[GroundTruthEntry]) -> EvaluationMetrics:
    if not entries:
        return EvaluationMetrics()

    real = [e for e in entries if not e.is_false_positive]
    false_pos = len(entries) - len(real)

    gender_ok = [e for e in real if e.detected_gender == e.actual_gender]
    gender_bad = [e for e in real if e.detected_gender != e.actual_gender]

    def recall(g: str) -> float:
        actual = [e for e in real if e.actual_gender == g]
        return _ratio(sum(1 for e in actual if e.detected_gender == g), len(actual))

    def precision(g: str) -> float:
        detected = [e for e in real if e.detected_gender == g]
        return _ratio(sum(1 for e in detected if e.actual_gender == g), len(detected))

    def age_acc(a: str) -> float:
        actual = [e for e in real if e.actual_age_group == a]
        return _ratio(sum(1 for e in actual if e.detected_age_group == a), len(actual))

    fp_rate = _ratio(false_pos, len(entries))
    return EvaluationMetrics(
        total_samples=len(entries),
        gender_accuracy=_ratio(len(gender_ok), len(real)),
        male_recall=recall("male"),
        female_recall=recall("female"),
        male_precision=precision("male"),
        female_precision=precision("female"),
        age_accuracy=_ratio(sum(1 for e in real if e.detected_age_group == e.actual_age_group), len(real)),
        kid_accuracy=age_acc("kid"),
        young_accuracy=age_acc("young"),
        adult_accuracy=age_acc("adult"),
        false_positive_rate=fp_rate,
        true_detection_rate=1.0 - fp_rate,
        avg_confidence_correct=_mean([e.detected_confidence for e in gender_ok]),
        avg_confidence_incorrect=_mean([e.detected_confidence for e in gender_bad]),
    )


def confusion_matrix(entries: List[GroundTruthEntry]) -> Dict[str, Dict[str, Dict[str, int]]]:
    """Counts keyed [predicted][actual] for gender and age; false positives excluded."""
    genders = ("male", "female")
    out = {
        "gender": {p: {a: 0 for a in genders} for p in genders},
        "age": {p: {a: 0 for a in AGE_GROUPS} for p in AGE_GROUPS},
    }
    for e in entries:
        if e.is_false_positive:
            continue
        out["gender"][e.detected_gender][e.actual_gender] += 1
        out["age"][e.detected_age_group][e.actual_age_group] += 1
    return out


class EvaluationLog:
    """Operator labels in arrival order."""

    def __init__(self):
        self.entries: List[GroundTruthEntry] = []

    def add(self, entry: GroundTruthEntry) -> GroundTruthEntry:
        self.entries.append(entry)
        return entry

    def clear(self) -> None:
        self.entries = []

    def metrics(self) -> EvaluationMetrics:
        return compute_metrics(self.entries)

    def __len__(self) -> int:
        return len(self.entries)
