# signage/live.py
"""
Live (real-time) detection loop and signage controller.

A scheduler thread ticks every CYCLE_INTERVAL seconds. Each tick claims the single cycle
slot; when the previous cycle is still running the tick is skipped, never queued. The
cycle runs detection on a worker thread under a hard timeout and then commits into the
tracker and the open capture session. The loop is the only writer of that state;
readers get immutable LiveSnapshot values.

SignageController follows spot playback time: it opens a capture session when the
playing spot enters its capture window, closes it when the window ends and re-ranks
the queue from the summary.
"""
from __future__ import annotations

import itertools
import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from typing import List, Optional, Protocol, Union

import cv2
import numpy as np

from signage.config import DetectionProfile, RegionOfInterest, Settings, build_profile
from signage.evaluation import EvaluationLog, GroundTruthEntry
from signage.models import CaptureSummary, DebugInfo, DemographicCounts, LiveSnapshot, Spot, TrackedFace
from signage.orchestrator import CycleResult, DetectionOrchestrator
from signage.scoring import AdQueue, in_capture_window
from signage.session import CaptureSessionAggregator
from signage.tracker import TemporalTracker

logger = logging.getLogger(__name__)

# A cycle that times out leaves its detection call running; with one cycle in flight at
# a time this leaves room for one abandoned call before the pool is replaced.
DETECT_WORKERS = 2


# -----------------------------------------------------------------------------
# Single-slot cycle guard
# -----------------------------------------------------------------------------
class CycleToken:
    """Cancellation token for one detection cycle."""
    def __init__(self, cycle_id: int):
        self.cycle_id = cycle_id
        self.cancelled = False
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "superseded") -> None:
        if not self.cancelled:
            self.cancelled = True
            self.reason = reason


class CycleSlot:
    """
    At most one cycle in flight.

    acquire() returns a token, or None when busy. cancel() cancels the active token and
    frees the slot so the next tick can start a fresh cycle.
    """
    def __init__(self):
        self._lock = threading.Lock()
        self._active: Optional[CycleToken] = None
        self._ids = itertools.count(1)

    @property
    def busy(self) -> bool:
        with self._lock:
            return self._active is not None

    def acquire(self) -> Optional[CycleToken]:
        with self._lock:
            if self._active is not None:
                return None
            self._active = CycleToken(next(self._ids))
            return self._active

    def release(self, token: CycleToken) -> None:
        with self._lock:
            if self._active is token:
                self._active = None

    def cancel(self) -> bool:
        with self._lock:
            token, self._active = self._active, None
        if token is None:
            return False
        token.cancel("superseded")
        return True


# -----------------------------------------------------------------------------
# Frame sources
# -----------------------------------------------------------------------------
class FrameSource(Protocol):
    source_id: str
    source_type: str

    def read(self) -> Optional[np.ndarray]: ...

    def release(self) -> None: ...


class OpenCVFrameSource:
    """
    Camera index or video file read through cv2.VideoCapture.

    Files are treated as recorded footage and sampled at wall-clock position, so a slow
    cycle skips frames instead of lagging behind.
    """
    def __init__(self, source: Union[int, str]):
        self.source = source
        self.is_file = isinstance(source, str)
        self.source_id = str(source)
        self.source_type = "recorded" if self.is_file else "interactive"
        if self.is_file and not os.path.exists(source):
            raise FileNotFoundError(f"Video not found: {source}")
        self._cap = cv2.VideoCapture(source)
        if not self._cap.isOpened():
            raise RuntimeError(f"Could not open video source: {source}")
        self._fps = (self._cap.get(cv2.CAP_PROP_FPS) or 25.0) if self.is_file else 0.0
        self._opened_at = time.time()

    def read(self) -> Optional[np.ndarray]:
        if self.is_file:
            idx = int((time.time() - self._opened_at) * self._fps)
            self._cap.set(cv2.CAP_PROP_POS_FRAMES, idx)
        ok, frame = self._cap.read()
        return frame if ok else None

    def release(self) -> None:
        self._cap.release()


# -----------------------------------------------------------------------------
# Detection loop
# -----------------------------------------------------------------------------
class DetectionLoop:
    """Owns the tracker and the capture session; the only writer of both."""

    def __init__(self, settings: Settings, orchestrator: DetectionOrchestrator,
                 source: Optional[FrameSource] = None,
                 roi: Optional[RegionOfInterest] = None):
        self.s = settings
        self.orchestrator = orchestrator
        self.source = source
        self.roi = roi
        self.profile: DetectionProfile = build_profile(settings, self._source_type(source), roi)
        self.tracker = TemporalTracker(self.profile, settings.FEMALE_BOOST_FACTOR, settings.MIN_VOTE_CONFIDENCE)
        self.sessions = CaptureSessionAggregator(settings.MIN_DEMOGRAPHIC_CONFIDENCE, settings.MIN_VOTE_CONFIDENCE)
        self.labels = EvaluationLog()
        self.labeled_track_ids: set[int] = set()
        self.slot = CycleSlot()
        self.skipped_cycles = 0

        self._commit_lock = threading.Lock()
        self._cycle_pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="cycle")
        self._detect_pool = ThreadPoolExecutor(max_workers=DETECT_WORKERS, thread_name_prefix="detect")
        self._detect_pending: set = set()
        self._snapshot: Optional[LiveSnapshot] = None
        self._last_commit_at: Optional[float] = None
        self._run = False
        self._wake = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._started_at: Optional[float] = None

    @staticmethod
    def _source_type(source: Optional[FrameSource]) -> str:
        return getattr(source, "source_type", "interactive") if source is not None else "interactive"

    # ---- lifecycle ----
    def start(self):
        if self._run:
            return
        self._run = True
        self._wake.clear()
        self._started_at = time.time()
        self._thread = threading.Thread(target=self._schedule_loop, daemon=True)
        self._thread.start()

    def stop(self):
        self._run = False
        self._wake.set()
        self.slot.cancel()

    def close(self):
        self.stop()
        # the scheduler must be out of tick() before the pools refuse new work
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.s.CYCLE_INTERVAL + 1.0)
            if thread.is_alive():
                logger.warning("[live] scheduler thread did not exit before close")
        self._cycle_pool.shutdown(wait=False)
        self._detect_pool.shutdown(wait=False)
        if self.source is not None:
            self.source.release()

    @property
    def running(self) -> bool:
        return self._run

    @property
    def started_at(self) -> Optional[float]:
        return self._started_at

    def status(self) -> LiveSnapshot | None:
        return self._snapshot

    def _schedule_loop(self):
        while self._run:
            t0 = time.time()
            self.tick()
            self._wake.wait(max(0.0, self.s.CYCLE_INTERVAL - (time.time() - t0)))

    # ---- cycles ----
    def tick(self) -> bool:
        """Start a cycle in the background; False when skipped because one is in flight."""
        token = self.slot.acquire()
        if token is None:
            self.skipped_cycles += 1
            logger.debug(f"[live] tick skipped, cycle in flight (skipped={self.skipped_cycles})")
            return False
        self._cycle_pool.submit(self._run_guarded, token)
        return True

    def _run_guarded(self, token: CycleToken) -> None:
        try:
            self.run_cycle(token)
        except Exception:
            logger.exception(f"[live] cycle {token.cycle_id} failed")
        finally:
            self.slot.release(token)

    def run_cycle(self, token: CycleToken) -> Optional[LiveSnapshot]:
        """
        Run one detection cycle synchronously.

        Returns the committed snapshot, or None when the cycle was superseded by a
        source switch (nothing is committed in that case). A cycle whose detection
        times out or raises commits as an empty cycle so tracks keep ageing.
        """
        source = self.source
        frame = source.read() if source is not None else None
        failed = False
        if frame is None:
            result = CycleResult()
        else:
            future = self._submit_detect(frame, token)
            try:
                result = future.result(timeout=self.s.CYCLE_TIMEOUT)
            except FuturesTimeout:
                token.cancel("timeout")
                logger.warning(f"[live] cycle {token.cycle_id} timed out after {self.s.CYCLE_TIMEOUT}s; "
                               f"committing empty result")
                result = CycleResult()
            except Exception:
                logger.exception(f"[live] cycle {token.cycle_id} detection failed; committing empty result")
                failed = True
                result = CycleResult()
        return self._commit(token, result, failed=failed)

    def _submit_detect(self, frame: np.ndarray, token: CycleToken):
        self._detect_pending = {f for f in self._detect_pending if not f.done()}
        if len(self._detect_pending) >= DETECT_WORKERS:
            # every worker is stuck on an abandoned call; later cycles would only queue behind them
            logger.warning(f"[live] detect pool saturated by {len(self._detect_pending)} hung calls; "
                           f"starting a fresh pool")
            self._detect_pool.shutdown(wait=False)
            self._detect_pool = ThreadPoolExecutor(max_workers=DETECT_WORKERS, thread_name_prefix="detect")
            self._detect_pending = set()
        future = self._detect_pool.submit(self.orchestrator.run_cycle, frame, self.profile, token)
        self._detect_pending.add(future)
        return future

    def _commit(self, token: CycleToken, result: CycleResult, failed: bool = False) -> Optional[LiveSnapshot]:
        with self._commit_lock:
            if token.cancelled and token.reason != "timeout":
                logger.debug(f"[live] cycle {token.cycle_id} superseded; dropping result")
                return None

            detections = [] if token.reason == "timeout" else result.detections
            matched = self.tracker.update(detections)
            if self.sessions.is_open:
                self.sessions.tick()
                min_hits = self.profile.min_consecutive_frames
                for track, det, hits_before in matched:
                    if hits_before < min_hits or track.id not in self.tracker.tracks:
                        continue
                    if track.is_user_corrected:
                        self.sessions.observe(track.id, track.stable_gender, track.stable_age_group, 1.0, 1.0)
                    else:
                        self.sessions.observe(track.id, det.gender, det.age_group,
                                              det.gender_confidence, det.detection_score)

            now = time.time()
            fps = 1.0 / (now - self._last_commit_at) if self._last_commit_at and now > self._last_commit_at else 0.0
            self._last_commit_at = now
            self._snapshot = self._build_snapshot(now, result, bool(detections), fps,
                                                  timed_out=token.reason == "timeout", failed=failed)
            return self._snapshot

    def _views(self) -> List[TrackedFace]:
        return [v.model_copy(update={"labeled": v.track_id in self.labeled_track_ids})
                for v in self.tracker.stable_views()]

    def _build_snapshot(self, now: float, result: CycleResult, had_detections: bool,
                        fps: float, timed_out: bool = False, failed: bool = False) -> LiveSnapshot:
        views = self._views()
        demographics = (self.tracker.demographics(self.s.MIN_DEMOGRAPHIC_CONFIDENCE)
                        if had_detections else DemographicCounts())
        return LiveSnapshot(
            ts=now,
            source_id=getattr(self.source, "source_id", ""),
            detections=views,
            demographics=demographics,
            debug=DebugInfo(
                fps=round(fps, 2),
                latency_ms=round(result.latency_ms, 1),
                raw_count=result.raw_count,
                filtered_count=result.filtered_count,
                tracked_count=len(views),
                pass_used=result.pass_used,
                upscaled=result.upscaled,
                preprocessing=result.preprocessing,
                skipped_cycles=self.skipped_cycles,
                timed_out=timed_out,
                failed=failed,
            ),
        )

    # ---- source / session control ----
    def switch_source(self, source: Optional[FrameSource]) -> None:
        """Cancel the in-flight cycle and drop all per-source state."""
        self.slot.cancel()
        with self._commit_lock:
            old = self.source
            self.source = source
            self.profile = build_profile(self.s, self._source_type(source), self.roi)
            self.tracker.set_profile(self.profile)
            self.tracker.reset()
            self.sessions.discard()
            self.labeled_track_ids.clear()
            self._snapshot = None
            self._last_commit_at = None
        if old is not None and old is not source:
            old.release()
        logger.info(f"[live] switched source -> {getattr(source, 'source_id', None)} ({self.profile.source_type})")

    def open_capture(self) -> None:
        with self._commit_lock:
            self.sessions.open()

    def close_capture(self) -> Optional[CaptureSummary]:
        with self._commit_lock:
            self.labeled_track_ids.clear()
            return self.sessions.close()

    # ---- operator labels ----
    def label_track(self, track_id: int, gender: str, age_group: str,
                    is_false_positive: bool = False) -> GroundTruthEntry:
        """Record ground truth for a live track and apply it as a correction."""
        with self._commit_lock:
            track = self.tracker.tracks.get(track_id)
            if track is None:
                raise KeyError(f"Unknown track: {track_id}")
            view = track.view()
            entry = self.labels.add(GroundTruthEntry(
                box=view.box, detected_gender=view.gender, detected_age_group=view.age_group,
                detected_confidence=view.confidence, detected_face_score=view.face_score,
                actual_gender=gender, actual_age_group=age_group,
                is_false_positive=is_false_positive, track_id=track_id,
            ))
            if is_false_positive:
                self.tracker.mark_false_positive(track_id)
            else:
                self.tracker.correct(track_id, gender, age_group)
            self.labeled_track_ids.add(track_id)
            if self._snapshot is not None:
                self._snapshot = self._snapshot.model_copy(update={"detections": self._views()})
            return entry


# -----------------------------------------------------------------------------
# Playback-driven capture windows
# -----------------------------------------------------------------------------
class SignageController:
    """Ties spot playback to capture sessions and queue reordering."""

    def __init__(self, loop: DetectionLoop, queue: AdQueue):
        self.loop = loop
        self.queue = queue
        self.current: Optional[Spot] = None
        self.summaries: List[CaptureSummary] = []

    def play_next(self) -> Optional[Spot]:
        if self.loop.sessions.is_open:
            self._finish_capture()
        self.current = self.queue.next_spot()
        return self.current

    def on_playback_time(self, t: float) -> Optional[CaptureSummary]:
        """Advance to playback position ``t`` (seconds into the current spot)."""
        if self.current is None or self.queue.manual_mode:
            return None
        inside = in_capture_window(self.current, t)
        if inside and not self.loop.sessions.is_open:
            logger.info(f"[signage] capture started for {self.current.id} at t={t:.1f}s")
            self.loop.open_capture()
            return None
        if not inside and self.loop.sessions.is_open:
            return self._finish_capture()
        return None

    def _finish_capture(self) -> Optional[CaptureSummary]:
        summary = self.loop.close_capture()
        if summary is None:
            return None
        self.summaries.append(summary)
        d = summary.demographics
        if d.male + d.female > 0:
            self.queue.reorder(d)
        else:
            logger.info("[signage] no confident viewers; queue left unchanged")
        return summary
