import numpy as np
import pytest

from signage.filters import rejection_reason, filter_candidates, has_texture_variation
from signage.models import FaceBox

FRAME_SIZE = (640, 480)


def test_good_candidate_passes(make_candidate, recorded_profile):
    assert rejection_reason(make_candidate(), FRAME_SIZE, recorded_profile) is None


@pytest.mark.parametrize("kwargs,reason", [
    (dict(w=0), "degenerate"),
    (dict(score=0.15), "low_score"),
    (dict(w=10), "too_small_px"),
    (dict(w=12, h=12), "too_small_percent"),
    (dict(x=10, y=10, w=400, h=300), "too_large"),
    (dict(w=200, h=30), "bad_aspect"),
    (dict(x=600), "out_of_bounds"),
])
def test_rejection_reasons(make_candidate, recorded_profile, kwargs, reason):
    assert rejection_reason(make_candidate(**kwargs), FRAME_SIZE, recorded_profile) == reason


def test_hard_floor_wins_over_lower_profile_score(make_candidate, recorded_profile):
    profile = recorded_profile.model_copy(update={"min_face_score": 0.05, "hard_min_face_score": 0.4})
    assert rejection_reason(make_candidate(score=0.3), FRAME_SIZE, profile) == "low_score"


def test_texture_check_rejects_flat_region(make_candidate, recorded_profile, frame):
    profile = recorded_profile.model_copy(update={"require_face_texture": True})
    assert rejection_reason(make_candidate(), FRAME_SIZE, profile, frame) == "no_texture"

    noisy = np.random.default_rng(0).integers(0, 256, size=frame.shape, dtype=np.uint8)
    assert rejection_reason(make_candidate(), FRAME_SIZE, profile, noisy) is None


def test_texture_variation_on_empty_chip(frame):
    assert not has_texture_variation(frame, FaceBox(x=700, y=10, width=20, height=20))


def test_filter_candidates_keeps_order(make_candidate, recorded_profile):
    a = make_candidate(x=10, score=0.5)
    bad = make_candidate(x=300, score=0.01)
    b = make_candidate(x=400, score=0.8)
    assert filter_candidates([a, bad, b], FRAME_SIZE, recorded_profile) == [a, b]
