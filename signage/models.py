"""
Pydantic data models shared by the pipeline and the API.
"""
from __future__ import annotations
from enum import Enum
from pydantic import BaseModel, Field
from typing import Dict, List, Optional, Literal

Gender = Literal["male", "female"]
AgeGroup = Literal["kid", "young", "adult"]
TargetGender = Literal["male", "female", "all"]
TargetAge = Literal["kid", "young", "adult", "all"]

AGE_GROUPS: tuple[str, ...] = ("kid", "young", "adult")


class DetectorSource(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


class FaceBox(BaseModel):
    x: float
    y: float
    width: float
    height: float

    @property
    def area(self) -> float:
        return max(0.0, self.width) * max(0.0, self.height)

    @property
    def center(self) -> tuple[float, float]:
        return self.x + self.width / 2.0, self.y + self.height / 2.0


class RawCandidate(BaseModel):
    box: FaceBox
    score: float
    pass_id: int = 1
    source: DetectorSource = DetectorSource.PRIMARY


class Classification(BaseModel):
    """Classifier output for one face crop: estimated age plus gender label and its probability."""
    age: float
    gender: Gender
    probability: float


class ClassifiedDetection(BaseModel):
    box: FaceBox
    gender: Gender
    age_group: AgeGroup
    gender_confidence: float
    detection_score: float
    age: Optional[float] = None


class DemographicCounts(BaseModel):
    male: int = 0
    female: int = 0
    kid: int = 0
    young: int = 0
    adult: int = 0


class Spot(BaseModel):
    id: str
    title: str
    filename: str = ""
    target_gender: TargetGender = "all"
    target_age: TargetAge = "all"
    duration: float = 30.0
    capture_start: Optional[float] = None
    capture_end: Optional[float] = None
    video_url: str = ""


class ScoredSpot(BaseModel):
    spot: Spot
    score: float
    reasons: List[str] = Field(default_factory=list)


class ViewerAggregate(BaseModel):
    track_id: int
    gender_votes: Dict[str, float] = Field(default_factory=lambda: {"male": 0.0, "female": 0.0})
    age_votes: Dict[str, float] = Field(default_factory=lambda: {"kid": 0.0, "young": 0.0, "adult": 0.0})
    seen_frames: int = 0
    best_confidence: float = 0.0
    best_face_score: float = 0.0
    final_gender: Gender = "male"
    final_age_group: AgeGroup = "adult"


class CaptureSummary(BaseModel):
    started_at: float
    ended_at: float
    total_frames: int
    unique_viewers: int
    demographics: DemographicCounts
    viewers: List[ViewerAggregate] = Field(default_factory=list)


class TrackedFace(BaseModel):
    """Read-only view of a stable track, as reported to consumers."""
    track_id: int
    box: FaceBox
    gender: Gender
    age_group: AgeGroup
    confidence: float
    face_score: float
    is_user_corrected: bool = False
    labeled: bool = False


class DebugInfo(BaseModel):
    fps: float = 0.0
    latency_ms: float = 0.0
    raw_count: int = 0
    filtered_count: int = 0
    tracked_count: int = 0
    pass_used: int = 0
    upscaled: bool = False
    preprocessing: bool = False
    skipped_cycles: int = 0
    timed_out: bool = False
    failed: bool = False


class LiveSnapshot(BaseModel):
    ts: float
    source_id: str = ""
    detections: List[TrackedFace] = Field(default_factory=list)
    demographics: DemographicCounts = Field(default_factory=DemographicCounts)
    debug: DebugInfo = Field(default_factory=DebugInfo)


class LiveStatus(BaseModel):
    running: bool
    started_at: float | None = None
    last_snapshot: LiveSnapshot | None = None
