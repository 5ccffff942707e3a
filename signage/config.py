"""
Configuration for the detection and targeting pipeline.
"""
from __future__ import annotations
from typing import Literal
from pydantic import BaseModel, Field
import os


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, float(value)))


def _env_bool(name: str, default: str) -> bool:
    return (os.getenv(name, default) or default).strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """
    Runtime settings with environment-variable overrides.
    """
    SENSITIVITY: float = float(os.getenv("SENSITIVITY", "0.35"))
    HARD_MIN_FACE_SCORE: float = float(os.getenv("HARD_MIN_FACE_SCORE", "0.18"))
    MIN_DEMOGRAPHIC_CONFIDENCE: float = float(os.getenv("MIN_DEMOGRAPHIC_CONFIDENCE", "0.75"))
    MIN_VOTE_CONFIDENCE: float = float(os.getenv("MIN_VOTE_CONFIDENCE", "0.65"))
    FEMALE_BOOST_FACTOR: float = float(os.getenv("FEMALE_BOOST_FACTOR", "0.15"))
    ENABLE_HAIR_HEURISTICS: bool = _env_bool("ENABLE_HAIR_HEURISTICS", "true")
    REQUIRE_FACE_TEXTURE: bool = _env_bool("REQUIRE_FACE_TEXTURE", "false")
    DETECTOR_TIER: str = os.getenv("DETECTOR_TIER", "dual")
    ENABLE_ENHANCED_RESCUE: bool = _env_bool("ENABLE_ENHANCED_RESCUE", "false")
    MODE: str = os.getenv("MODE", "accurate")
    VIDEO_QUALITY: str = os.getenv("VIDEO_QUALITY", "hd")
    CAPTURE_START_PERCENT: float = float(os.getenv("CAPTURE_START_PERCENT", "60"))
    CAPTURE_END_PERCENT: float = float(os.getenv("CAPTURE_END_PERCENT", "100"))

    CYCLE_INTERVAL: float = float(os.getenv("CYCLE_INTERVAL", "0.8"))
    CYCLE_TIMEOUT: float = float(os.getenv("CYCLE_TIMEOUT", "12"))
    CAMERA_INDEX: int = int(os.getenv("CAMERA_INDEX", "0"))
    PRIMARY_DETECTOR: str = os.getenv("PRIMARY_DETECTOR", "opencv")
    SECONDARY_DETECTOR: str = os.getenv("SECONDARY_DETECTOR", "ssd")
    QUEUE_SIZE: int = int(os.getenv("QUEUE_SIZE", "2"))

    def __init__(self, **data):
        super().__init__(**data)
        # Clamp numeric knobs into their supported ranges
        object.__setattr__(self, "SENSITIVITY", _clamp(self.SENSITIVITY, 0.15, 0.5))
        object.__setattr__(self, "HARD_MIN_FACE_SCORE", _clamp(self.HARD_MIN_FACE_SCORE, 0.10, 0.70))
        object.__setattr__(self, "MIN_DEMOGRAPHIC_CONFIDENCE", _clamp(self.MIN_DEMOGRAPHIC_CONFIDENCE, 0.55, 0.90))
        object.__setattr__(self, "MIN_VOTE_CONFIDENCE", _clamp(self.MIN_VOTE_CONFIDENCE, 0.0, 1.0))
        object.__setattr__(self, "FEMALE_BOOST_FACTOR", _clamp(self.FEMALE_BOOST_FACTOR, 0.0, 0.30))
        object.__setattr__(self, "CAPTURE_START_PERCENT", _clamp(self.CAPTURE_START_PERCENT, 0, 100))
        object.__setattr__(self, "CAPTURE_END_PERCENT", _clamp(self.CAPTURE_END_PERCENT, 0, 100))
        object.__setattr__(self, "QUEUE_SIZE", max(1, int(self.QUEUE_SIZE)))

        # Normalize enumerations: lower-case first word, fall back to defaults
        tier = (self.DETECTOR_TIER or "dual").strip().split()[0].lower()
        if tier not in ("single", "dual"):
            tier = "dual"
        object.__setattr__(self, "DETECTOR_TIER", tier)

        mode = (self.MODE or "accurate").strip().split()[0].lower()
        if mode not in ("fast", "accurate", "max"):
            mode = "accurate"
        object.__setattr__(self, "MODE", mode)

        quality = (self.VIDEO_QUALITY or "hd").strip()
        if quality not in ("hd", "lowQuality", "nightIR", "crowd"):
            quality = "hd"
        object.__setattr__(self, "VIDEO_QUALITY", quality)


# ---------------------------------------------------------------------------
# Detection profiles
# ---------------------------------------------------------------------------
class Enhancement(BaseModel):
    gamma: float = 1.0
    contrast: float = 1.0
    sharpen: float = 0.0
    denoise: bool = False

    def is_identity(self) -> bool:
        return self.gamma == 1.0 and self.contrast == 1.0 and self.sharpen <= 0 and not self.denoise


class RegionOfInterest(BaseModel):
    """Fractional crop window (0..1 of frame width/height)."""
    enabled: bool = False
    x: float = 0.0
    y: float = 0.0
    width: float = 1.0
    height: float = 1.0


ENHANCEMENT_PRESETS: dict[str, Enhancement] = {
    "none": Enhancement(),
    "indoor": Enhancement(gamma=1.2, contrast=1.3, sharpen=0.3),
    "outdoor": Enhancement(gamma=1.0, contrast=1.1, sharpen=0.2),
    "nightIR": Enhancement(gamma=1.5, contrast=1.5, sharpen=0.4, denoise=True),
    "lowLight": Enhancement(gamma=1.8, contrast=1.4, sharpen=0.5, denoise=True),
    "lowQuality": Enhancement(gamma=1.4, contrast=1.5, sharpen=0.5, denoise=True),
    "crowd": Enhancement(gamma=1.3, contrast=1.4, sharpen=0.4, denoise=True),
}


class DetectionProfile(BaseModel):
    """Resolved per-source tuning consumed by the orchestrator, filter and tracker."""
    source_type: Literal["recorded", "interactive"] = "recorded"
    tier: Literal["single", "dual"] = "dual"
    sensitivity: float = 0.35
    enhancement: Enhancement = Field(default_factory=Enhancement)
    upscale: float = 2.0
    roi: RegionOfInterest = Field(default_factory=RegionOfInterest)

    min_face_score: float = 0.10
    hard_min_face_score: float = 0.18
    min_face_size_px: int = 12
    min_face_size_percent: float = 0.05
    aspect_ratio_min: float = 0.25
    aspect_ratio_max: float = 4.0
    require_face_texture: bool = False
    enhanced_rescue: bool = False

    min_consecutive_frames: int = 2
    hold_frames: int = 8
    max_velocity_px: float = 250.0


def _base_profile(source_type: str) -> dict:
    if source_type == "interactive":
        # webcam style sources: single detector, no enhancement
        return {
            "source_type": "interactive",
            "tier": "single",
            "enhancement": Enhancement(),
            "upscale": 1.0,
            "min_face_score": 0.15,
            "min_face_size_px": 12,
            "min_face_size_percent": 0.1,
            "min_consecutive_frames": 2,
            "hold_frames": 3,
            "max_velocity_px": 250.0,
        }
    return {
        "source_type": "recorded",
        "tier": "dual",
        "enhancement": Enhancement(gamma=1.4, contrast=1.5, sharpen=0.4, denoise=True),
        "upscale": 2.0,
        "min_face_score": 0.10,
        "min_face_size_px": 12,
        "min_face_size_percent": 0.05,
        "min_consecutive_frames": 2,
        "hold_frames": 8,
        "max_velocity_px": 250.0,
    }


def build_profile(settings: Settings,
                  source_type: str = "recorded",
                  roi: RegionOfInterest | None = None) -> DetectionProfile:
    """
    Resolve a DetectionProfile from the source preset, detection mode and video quality.

    Interactive sources always run the single-detector tier.
    """
    values = _base_profile(source_type)
    s = settings.SENSITIVITY

    if settings.MODE == "fast":
        values.update(upscale=1.0, min_consecutive_frames=1, min_face_size_px=30)
    elif settings.MODE == "max":
        values.update(upscale=2.5, min_consecutive_frames=1, min_face_size_px=8,
                      min_face_score=max(s - 0.1, 0.08))

    if settings.VIDEO_QUALITY in ("lowQuality", "nightIR"):
        values["upscale"] = max(values["upscale"], 2.0)
        values["enhancement"] = (Enhancement(gamma=1.3, contrast=1.4, sharpen=0.4, denoise=True)
                                 if settings.VIDEO_QUALITY == "lowQuality"
                                 else Enhancement(gamma=1.6, contrast=1.5, sharpen=0.5, denoise=True))
    elif settings.VIDEO_QUALITY == "crowd":
        values.update(min_face_size_px=12, min_face_size_percent=0.02)

    if values["source_type"] == "recorded":
        values["tier"] = settings.DETECTOR_TIER

    return DetectionProfile(
        sensitivity=s,
        roi=roi or RegionOfInterest(),
        hard_min_face_score=settings.HARD_MIN_FACE_SCORE,
        require_face_texture=settings.REQUIRE_FACE_TEXTURE,
        enhanced_rescue=settings.ENABLE_ENHANCED_RESCUE,
        **values,
    )
