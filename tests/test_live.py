import threading
import time
import numpy as np
import pytest

from signage.live import CycleSlot, DetectionLoop, SignageController
from signage.orchestrator import CycleResult
from signage.scoring import AdQueue
from signage.models import Spot


class DummySource:
    source_type = "recorded"

    def __init__(self, source_id="cam-test"):
        self.source_id = source_id
        self.released = False
        self.frame = np.zeros((480, 640, 3), dtype=np.uint8)

    def read(self):
        return self.frame

    def release(self):
        self.released = True


class ScriptedOrchestrator:
    """Returns one scripted CycleResult per call; repeats the last one when the script runs out."""

    def __init__(self, script=None, delay=0.0, gate=None):
        self.script = list(script or [[]])
        self.delay = delay
        self.gate = gate
        self.started = threading.Event()
        self.calls = 0

    def run_cycle(self, frame, profile, token=None):
        self.started.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.delay:
            time.sleep(self.delay)
        dets = self.script[min(self.calls, len(self.script) - 1)]
        self.calls += 1
        return CycleResult(detections=list(dets), raw_count=len(dets), filtered_count=len(dets), pass_used=1)


@pytest.fixture
def make_loop(settings):
    made = []

    def _make(orchestrator, source=None, s=None):
        loop = DetectionLoop(s or settings, orchestrator, source if source is not None else DummySource())
        made.append(loop)
        return loop
    yield _make
    for loop in made:
        loop.close()


def _cycle(loop):
    token = loop.slot.acquire()
    assert token is not None
    try:
        return loop.run_cycle(token)
    finally:
        loop.slot.release(token)


def test_cycle_slot_single_flight():
    slot = CycleSlot()
    token = slot.acquire()
    assert slot.busy
    assert slot.acquire() is None
    slot.release(token)
    assert not slot.busy

    token = slot.acquire()
    assert slot.cancel()
    assert token.cancelled and token.reason == "superseded"
    assert not slot.busy
    assert not slot.cancel()


def test_tick_is_skipped_while_cycle_in_flight(make_loop):
    loop = make_loop(ScriptedOrchestrator())
    held = loop.slot.acquire()
    assert loop.tick() is False
    assert loop.skipped_cycles == 1
    loop.slot.release(held)


def test_tick_runs_cycle_in_background(make_loop, make_detection):
    loop = make_loop(ScriptedOrchestrator([[make_detection()]]))
    assert loop.tick() is True
    deadline = time.time() + 5
    while loop.status() is None and time.time() < deadline:
        time.sleep(0.01)
    assert loop.status() is not None
    assert len(loop.tracker.tracks) == 1


def test_timeout_commits_empty_result(make_loop, settings, make_detection):
    fast_timeout = settings.model_copy(update={"CYCLE_TIMEOUT": 0.05})
    loop = make_loop(ScriptedOrchestrator([[make_detection()]], delay=0.5), s=fast_timeout)
    token = loop.slot.acquire()
    snap = loop.run_cycle(token)
    loop.slot.release(token)

    assert token.reason == "timeout"
    assert snap is not None and snap.debug.timed_out
    assert snap.demographics.model_dump() == {"male": 0, "female": 0, "kid": 0, "young": 0, "adult": 0}
    assert loop.tracker.tracks == {}


def test_source_switch_drops_in_flight_result(make_loop, make_detection):
    gate = threading.Event()
    orch = ScriptedOrchestrator([[make_detection()]], gate=gate)
    old = DummySource("old")
    loop = make_loop(orch, old)
    loop.open_capture()

    token = loop.slot.acquire()
    out = {}
    worker = threading.Thread(target=lambda: out.setdefault("snap", loop.run_cycle(token)))
    worker.start()
    assert orch.started.wait(timeout=5)

    new = DummySource("new")
    loop.switch_source(new)
    gate.set()
    worker.join(timeout=5)

    assert out["snap"] is None
    assert token.cancelled and token.reason == "superseded"
    assert loop.tracker.tracks == {}
    assert not loop.sessions.is_open
    assert old.released and not new.released
    assert loop.status() is None
    assert not loop.slot.busy


def test_single_late_sighting_is_not_a_viewer(make_loop, make_detection):
    strong = make_detection(gender="male", age_group="young", confidence=0.95, score=0.95)
    loop = make_loop(ScriptedOrchestrator([[], [], [], [], [strong]]))
    loop.open_capture()
    for _ in range(5):
        _cycle(loop)
    summary = loop.close_capture()
    assert summary.total_frames == 5
    assert summary.unique_viewers == 0


def test_steady_viewer_is_counted_once_stable(make_loop, make_detection):
    face = make_detection(gender="female", age_group="adult", confidence=0.9, score=0.9)
    loop = make_loop(ScriptedOrchestrator([[face]]))
    loop.open_capture()
    for _ in range(4):
        snap = _cycle(loop)
    summary = loop.close_capture()
    assert summary.unique_viewers == 1
    assert summary.demographics.female == 1
    assert snap.demographics.female == 1
    assert snap.debug.tracked_count == 1


def test_empty_cycle_reports_zero_demographics_while_tracks_hold(make_loop, make_detection):
    face = make_detection(confidence=0.9)
    loop = make_loop(ScriptedOrchestrator([[face], [face], []]))
    _cycle(loop)
    assert _cycle(loop).demographics.male == 1
    snap = _cycle(loop)
    assert snap.demographics.male == 0
    assert len(loop.tracker.tracks) == 1


def test_label_track_records_entry_and_corrects(make_loop, make_detection):
    face = make_detection(gender="male", age_group="young", confidence=0.9)
    loop = make_loop(ScriptedOrchestrator([[face]]))
    _cycle(loop)
    _cycle(loop)
    tid = next(iter(loop.tracker.tracks))

    entry = loop.label_track(tid, "female", "adult")
    assert (entry.detected_gender, entry.actual_gender) == ("male", "female")
    assert len(loop.labels) == 1
    assert tid in loop.labeled_track_ids
    assert loop.status().detections[0].gender == "female"

    with pytest.raises(KeyError):
        loop.label_track(999, "male", "adult")

    loop.label_track(tid, "male", "adult", is_false_positive=True)
    assert loop.tracker.tracks == {}
    assert loop.labels.metrics().false_positive_rate == 0.5

    loop.switch_source(DummySource("other"))
    assert loop.labeled_track_ids == set()
    assert len(loop.labels) == 2


def test_controller_reorders_queue_after_capture_window(make_loop, make_detection):
    face = make_detection(gender="female", age_group="adult", confidence=0.9)
    loop = make_loop(ScriptedOrchestrator([[face]]))
    spots = [Spot(id="m", title="M", target_gender="male", target_age="young", duration=10),
             Spot(id="f", title="F", target_gender="female", target_age="adult", duration=10)]
    ctl = SignageController(loop, AdQueue(spots, 60, 100, size=2))

    assert ctl.play_next().id == "m"
    assert ctl.on_playback_time(3) is None
    assert not loop.sessions.is_open
    ctl.on_playback_time(6)
    assert loop.sessions.is_open
    for _ in range(4):
        _cycle(loop)
    summary = ctl.on_playback_time(11)
    assert summary.unique_viewers == 1
    assert [s.id for s in ctl.queue.queue] == ["f", "m"]
    assert ctl.summaries == [summary]


def test_controller_leaves_queue_when_nobody_watched(make_loop):
    loop = make_loop(ScriptedOrchestrator([[]]))
    spots = [Spot(id="a", title="A", duration=10), Spot(id="b", title="B", duration=10)]
    ctl = SignageController(loop, AdQueue(spots))
    ctl.play_next()
    ctl.on_playback_time(7)
    _cycle(loop)
    before = [s.id for s in ctl.queue.queue]
    summary = ctl.on_playback_time(10.5)
    assert summary.unique_viewers == 0
    assert [s.id for s in ctl.queue.queue] == before


def test_manual_mode_never_opens_capture(make_loop):
    loop = make_loop(ScriptedOrchestrator())
    queue = AdQueue([Spot(id="a", title="A", duration=10)])
    queue.set_manual_playlist([Spot(id="a", title="A", duration=10)])
    ctl = SignageController(loop, queue)
    ctl.play_next()
    ctl.on_playback_time(8)
    assert not loop.sessions.is_open


class FailingOrchestrator(ScriptedOrchestrator):
    """Serves the script for the first `good` calls, then raises like a dead backend."""

    def __init__(self, script, good=1):
        super().__init__(script)
        self.good = good

    def run_cycle(self, frame, profile, token=None):
        if self.calls >= self.good:
            self.calls += 1
            raise RuntimeError("backend died")
        return super().run_cycle(frame, profile, token)


def test_failed_cycles_commit_empty_and_age_tracks(make_loop, make_detection, caplog):
    loop = make_loop(FailingOrchestrator([[make_detection()]], good=2))
    _cycle(loop)
    assert len(_cycle(loop).detections) == 1

    for _ in range(loop.profile.hold_frames + 2):
        token = loop.slot.acquire()
        loop._run_guarded(token)

    assert loop.tracker.tracks == {}
    snap = loop.status()
    assert snap.debug.failed and not snap.debug.timed_out
    assert snap.demographics.model_dump() == {"male": 0, "female": 0, "kid": 0, "young": 0, "adult": 0}
    assert not loop.slot.busy
    assert "detection failed" in caplog.text


def test_labeled_tracks_are_flagged_in_snapshot(make_loop, make_detection):
    a = make_detection(x=50, confidence=0.9)
    b = make_detection(x=400, confidence=0.9)
    loop = make_loop(ScriptedOrchestrator([[a, b]]))
    _cycle(loop)
    _cycle(loop)
    tid = min(loop.tracker.tracks)

    loop.label_track(tid, "female", "adult")
    flags = {v.track_id: v.labeled for v in loop.status().detections}
    assert flags[tid] is True
    assert list(flags.values()).count(True) == 1

    snap = _cycle(loop)
    assert {v.track_id for v in snap.detections if v.labeled} == {tid}

    loop.open_capture()
    loop.close_capture()
    assert not any(v.labeled for v in _cycle(loop).detections)


def test_close_joins_scheduler_thread(make_loop, settings, make_detection):
    slow_ticks = settings.model_copy(update={"CYCLE_INTERVAL": 5.0})
    loop = make_loop(ScriptedOrchestrator([[make_detection()]]), s=slow_ticks)
    loop.start()
    deadline = time.time() + 5
    while loop.status() is None and time.time() < deadline:
        time.sleep(0.01)

    t0 = time.time()
    loop.close()
    assert time.time() - t0 < 2.0
    assert not loop._thread.is_alive()
    assert not loop.running


class HangingOrchestrator(ScriptedOrchestrator):
    """The first `hang` calls block until released; later calls answer immediately."""

    def __init__(self, script, hang=2):
        super().__init__(script)
        self.hang = hang
        self.release = threading.Event()
        self.entered = 0

    def run_cycle(self, frame, profile, token=None):
        self.entered += 1
        if self.entered <= self.hang:
            self.release.wait(timeout=10)
            return CycleResult()
        return super().run_cycle(frame, profile, token)


def test_hung_detect_calls_do_not_starve_later_cycles(make_loop, settings, make_detection, caplog):
    fast_timeout = settings.model_copy(update={"CYCLE_TIMEOUT": 0.1})
    orch = HangingOrchestrator([[make_detection()]], hang=2)
    loop = make_loop(orch, s=fast_timeout)
    try:
        assert _cycle(loop).debug.timed_out
        assert _cycle(loop).debug.timed_out

        snap = _cycle(loop)
        assert not snap.debug.timed_out
        assert len(loop.tracker.tracks) == 1
        assert "detect pool saturated" in caplog.text
    finally:
        orch.release.set()
