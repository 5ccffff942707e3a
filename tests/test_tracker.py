import random
import pytest

from signage.config import DetectionProfile
from signage.models import ClassifiedDetection, FaceBox
from signage.tracker import (TemporalTracker, stable_gender, stable_age_group,
                             female_vote_multiplier, vote_weight)


@pytest.fixture
def tracker(recorded_profile, settings):
    return TemporalTracker(recorded_profile, settings.FEMALE_BOOST_FACTOR, settings.MIN_VOTE_CONFIDENCE)


def _only(tracker):
    assert len(tracker.tracks) == 1
    return next(iter(tracker.tracks.values()))


def test_new_track_is_provisional_until_min_hits(tracker, make_detection):
    tracker.update([make_detection()], now=1.0)
    t = _only(tracker)
    assert t.state(2) == "provisional"
    assert tracker.stable_tracks() == []

    matched = tracker.update([make_detection(x=205)], now=2.0)
    assert [(m[0].id, m[2]) for m in matched] == [(t.id, 1)]
    assert t.state(2) == "stable"
    assert [v.track_id for v in tracker.stable_views()] == [t.id]


def test_box_smoothing_and_velocity(tracker, make_detection):
    tracker.update([make_detection(x=200)])
    tracker.update([make_detection(x=210)])
    t = _only(tracker)
    assert t.box.x == pytest.approx(207.0)
    assert t.vx == pytest.approx(5.0)


def test_votes_weighted_by_confidence_and_face_score(tracker, make_detection):
    tracker.update([make_detection(confidence=0.9, score=0.9)])
    t = _only(tracker)
    assert t.gender_votes["male"] == pytest.approx(0.81)
    assert t.age_votes["young"] == pytest.approx(0.81)

    tracker.update([make_detection(confidence=0.6)])
    assert t.gender_votes["male"] == pytest.approx(0.81)


def test_vote_helpers():
    assert vote_weight(0.8, 1.5) == pytest.approx(0.8)
    assert female_vote_multiplier(0.7, 0.15) == pytest.approx(1.09)
    assert female_vote_multiplier(1.0, 0.15) == pytest.approx(1.0)


def test_stable_label_requires_total_and_margin():
    assert stable_gender({"male": 0.3, "female": 0.5}, "male") == "male"      # total < 0.9
    assert stable_gender({"male": 0.8, "female": 1.0}, "male") == "male"      # margin < 0.25
    assert stable_gender({"male": 0.5, "female": 1.0}, "male") == "female"
    assert stable_age_group({"kid": 0.1, "young": 0.5, "adult": 0.6}, "kid") == "kid"
    assert stable_age_group({"kid": 0.0, "young": 0.2, "adult": 1.0}, "kid") == "adult"


def test_gender_never_flips_inside_margin():
    rng = random.Random(11)
    tracker = TemporalTracker(DetectionProfile(), boost_factor=0.0, min_vote_confidence=0.65)
    box = FaceBox(x=100, y=100, width=80, height=100)
    for step in range(300):
        det = ClassifiedDetection(box=box, gender=rng.choice(["male", "female"]), age_group="adult",
                                  gender_confidence=rng.uniform(0.5, 1.0), detection_score=rng.uniform(0.3, 1.0))
        before = {t.id: t.stable_gender for t in tracker.tracks.values()}
        tracker.update([det], now=float(step))
        for t in tracker.tracks.values():
            if t.id not in before:
                continue
            margin = abs(t.gender_votes["female"] - t.gender_votes["male"])
            total = t.gender_votes["female"] + t.gender_votes["male"]
            if margin < 0.25 or total < 0.9:
                assert t.stable_gender == before[t.id]


def test_hold_budget_and_coasting(recorded_profile, make_detection):
    profile = recorded_profile.model_copy(update={"hold_frames": 3})
    tracker = TemporalTracker(profile)
    tracker.update([make_detection(x=200)])
    tracker.update([make_detection(x=220)])
    t = _only(tracker)
    assert t.box.x == pytest.approx(214.0) and t.vx == pytest.approx(10.0)

    tracker.update([])
    assert t.state(2) == "stale"
    assert t.box.x == pytest.approx(219.0)
    tracker.update([])
    assert t.box.x == pytest.approx(219.0)
    tracker.update([])
    assert len(tracker.tracks) == 1
    tracker.update([])
    assert tracker.tracks == {}


def test_impossible_jump_spawns_new_track(tracker, make_detection):
    tracker.update([make_detection(x=100)])
    tracker.update([make_detection(x=450)])
    assert len(tracker.tracks) == 2


def test_reacquire_within_hold_keeps_identity(tracker, make_detection):
    tracker.update([make_detection()])
    tid = _only(tracker).id
    tracker.update([])
    tracker.update([])
    tracker.update([make_detection(x=210)])
    t = _only(tracker)
    assert t.id == tid and t.missed_frames == 0


def test_user_correction_pins_labels(tracker, make_detection):
    tracker.update([make_detection()])
    tid = _only(tracker).id
    tracker.correct(tid, "female", "adult")
    for _ in range(5):
        tracker.update([make_detection(gender="male", age_group="young", confidence=0.99, score=1.0)])
    t = tracker.tracks[tid]
    assert (t.stable_gender, t.stable_age_group) == ("female", "adult")
    view = t.view()
    assert view.confidence == 1.0 and view.is_user_corrected


def test_correction_not_inherited_by_new_track(recorded_profile, make_detection):
    tracker = TemporalTracker(recorded_profile)
    tracker.update([make_detection()])
    tracker.correct(_only(tracker).id, "female", "adult")
    for _ in range(recorded_profile.hold_frames + 1):
        tracker.update([])
    tracker.update([make_detection()])
    t = _only(tracker)
    assert not t.is_user_corrected
    assert t.stable_gender == "male"


def test_unknown_track_operations_raise(tracker):
    with pytest.raises(KeyError):
        tracker.correct(99, "male", "adult")
    with pytest.raises(KeyError):
        tracker.mark_false_positive(99)


def test_false_positive_removed(tracker, make_detection):
    tracker.update([make_detection()])
    tracker.mark_false_positive(_only(tracker).id)
    assert tracker.tracks == {}


def test_demographics_counts_confident_stable_tracks(tracker, make_detection):
    a = make_detection(x=50, gender="female", age_group="adult", confidence=0.9)
    b = make_detection(x=400, gender="male", age_group="kid", confidence=0.7)
    tracker.update([a, b])
    assert tracker.demographics(0.75).model_dump() == {"male": 0, "female": 0, "kid": 0, "young": 0, "adult": 0}
    tracker.update([a, b])
    assert tracker.demographics(0.75).model_dump() == {"male": 0, "female": 1, "kid": 0, "young": 0, "adult": 1}


def test_reset_clears_tracks(tracker, make_detection):
    tracker.update([make_detection()])
    tracker.reset()
    assert tracker.tracks == {}
