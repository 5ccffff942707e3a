import pytest
import numpy as np

from signage.config import Settings, build_profile
from signage.models import ClassifiedDetection, FaceBox, RawCandidate


@pytest.fixture
def settings():
    # explicit values so environment overrides never leak into tests
    return Settings(SENSITIVITY=0.35, HARD_MIN_FACE_SCORE=0.18, MIN_DEMOGRAPHIC_CONFIDENCE=0.75,
                    MIN_VOTE_CONFIDENCE=0.65, FEMALE_BOOST_FACTOR=0.15, ENABLE_HAIR_HEURISTICS=False,
                    REQUIRE_FACE_TEXTURE=False, DETECTOR_TIER="dual", ENABLE_ENHANCED_RESCUE=False,
                    MODE="accurate", VIDEO_QUALITY="hd", CYCLE_INTERVAL=0.8, CYCLE_TIMEOUT=12,
                    CAPTURE_START_PERCENT=60, CAPTURE_END_PERCENT=100, QUEUE_SIZE=2)


@pytest.fixture
def recorded_profile(settings):
    return build_profile(settings, "recorded")


@pytest.fixture
def frame():
    return np.zeros((480, 640, 3), dtype=np.uint8)


@pytest.fixture
def make_box():
    def _make(x=200.0, y=150.0, w=100.0, h=120.0):
        return FaceBox(x=x, y=y, width=w, height=h)
    return _make


@pytest.fixture
def make_candidate(make_box):
    def _make(x=200.0, y=150.0, w=100.0, h=120.0, score=0.9, pass_id=1):
        return RawCandidate(box=make_box(x, y, w, h), score=score, pass_id=pass_id)
    return _make


@pytest.fixture
def make_detection(make_box):
    def _make(x=200.0, y=150.0, w=100.0, h=120.0, gender="male", age_group="young",
              confidence=0.9, score=0.9):
        return ClassifiedDetection(box=make_box(x, y, w, h), gender=gender, age_group=age_group,
                                   gender_confidence=confidence, detection_score=score)
    return _make
