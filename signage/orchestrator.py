# signage/orchestrator.py
"""
Multi-pass face detection and classification for one frame.

Pass 1 always runs: concurrent gateway calls over a resolution ladder.
Pass 2 (recorded footage, dual tier) re-detects an enhanced, upscaled frame when
Pass 1 found few faces or rescue is forced.
Pass 3 (rescue only) casts a very wide net on a maximally enhanced frame and then
self-filters hard before merging.

Every gateway result is mapped back to source-frame coordinates at the call boundary,
so merging and filtering never see processed-frame pixels.
"""
from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence, Tuple

import numpy as np
from pydantic import BaseModel, Field

from signage.bias import correct_gender
from signage.boxes import pad_box
from signage.config import DetectionProfile, Enhancement, Settings
from signage.enhance import prepare_frame
from signage.filters import filter_candidates
from signage.gateway import ModelGateway
from signage.merge import merge_candidates
from signage.models import ClassifiedDetection, DetectorSource, FaceBox, RawCandidate

logger = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Pass tuning
# -----------------------------------------------------------------------------
RECORDED_LADDER: Tuple[int, ...] = (320, 416, 512, 608)
INTERACTIVE_LADDER: Tuple[int, ...] = (416, 512)

PASS2_MIN_CANDIDATES = 3
PASS3_MIN_CANDIDATES = 5

PASS3_ENHANCEMENT = Enhancement(gamma=1.8, contrast=2.0, sharpen=0.6, denoise=True)
PASS3_UPSCALE = 2.5
PASS3_RAW_THRESHOLD = 0.08
PASS3_INPUT_SIZE = 608
PASS3_MIN_SCORE = 0.20
PASS3_MAX_AREA_FRACTION = 0.30

FINAL_IOU = 0.6
FINAL_CONTAINMENT = 0.9
CROP_PADDING = 0.2


def pass1_threshold(sensitivity: float) -> float:
    return max(max(sensitivity - 0.05, 0.15) - 0.05, 0.10)


def pass2_threshold(sensitivity: float) -> float:
    return max(sensitivity - 0.05, 0.12)


def age_group(age: float) -> str:
    if age < 13:
        return "kid"
    if age < 35:
        return "young"
    return "adult"


class PassResult(BaseModel):
    candidates: List[RawCandidate] = Field(default_factory=list)
    raw_count: int = 0
    pass_used: int = 1
    upscaled: bool = False
    preprocessing: bool = False
    cancelled: bool = False


class CycleResult(BaseModel):
    detections: List[ClassifiedDetection] = Field(default_factory=list)
    raw_count: int = 0
    filtered_count: int = 0
    pass_used: int = 0
    upscaled: bool = False
    preprocessing: bool = False
    cancelled: bool = False
    latency_ms: float = 0.0


def _is_cancelled(token) -> bool:
    return token is not None and token.cancelled


class DetectionOrchestrator:
    """Runs the detection passes and the classification stage against a ModelGateway."""

    def __init__(self, gateway: ModelGateway, settings: Settings, max_workers: int = 5):
        self.gateway = gateway
        self.s = settings
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="gateway")

    def close(self) -> None:
        self._pool.shutdown(wait=False)

    # ---- gateway calls ----
    def _call(self, frame: np.ndarray, input_size: int, threshold: float, source: DetectorSource,
              pass_id: int, offset: Tuple[int, int], scale: float) -> List[RawCandidate]:
        try:
            dets = self.gateway.detect(frame, input_size, threshold, source)
        except Exception as e:
            logger.warning(f"[orchestrator] pass{pass_id} {source.value}@{input_size} failed: {e}")
            return []
        ox, oy = offset
        out: List[RawCandidate] = []
        for box, score in dets:
            mapped = FaceBox(x=box.x / scale + ox, y=box.y / scale + oy,
                             width=box.width / scale, height=box.height / scale)
            out.append(RawCandidate(box=mapped, score=float(score), pass_id=pass_id, source=source))
        return out

    def _run_pass(self, frame: np.ndarray, ladder: Sequence[int], threshold: float, dual: bool,
                  pass_id: int, offset: Tuple[int, int] = (0, 0), scale: float = 1.0) -> List[RawCandidate]:
        jobs = [(size, DetectorSource.PRIMARY) for size in ladder]
        if dual:
            jobs.append((max(ladder), DetectorSource.SECONDARY))
        futures = [self._pool.submit(self._call, frame, size, threshold, src, pass_id, offset, scale)
                   for size, src in jobs]
        out: List[RawCandidate] = []
        for f in futures:
            out.extend(f.result())
        logger.debug(f"[orchestrator] pass{pass_id} calls={len(jobs)} thr={threshold:.2f} raw={len(out)}")
        return out

    # ---- detection ----
    def detect_candidates(self, frame: np.ndarray, profile: DetectionProfile, token=None) -> PassResult:
        recorded = profile.source_type == "recorded"
        dual = profile.tier == "dual"
        ladder = RECORDED_LADDER if recorded else INTERACTIVE_LADDER
        result = PassResult()

        raw = self._run_pass(frame, ladder, pass1_threshold(profile.sensitivity), dual, pass_id=1)
        result.raw_count += len(raw)
        merged = merge_candidates(raw)

        rescue_allowed = recorded and profile.tier != "single"
        if _is_cancelled(token):
            result.candidates, result.cancelled = merged, True
            return result

        if rescue_allowed and (len(merged) < PASS2_MIN_CANDIDATES or profile.enhanced_rescue):
            base = profile.enhancement
            opts = Enhancement(gamma=max(base.gamma, 1.5), contrast=max(base.contrast, 1.6),
                               sharpen=max(base.sharpen, 0.5), denoise=True)
            processed, offset, scale = prepare_frame(frame, opts, profile.upscale, profile.roi)
            raw2 = self._run_pass(processed, ladder, pass2_threshold(profile.sensitivity), dual,
                                  pass_id=2, offset=offset, scale=scale)
            result.raw_count += len(raw2)
            merged = merge_candidates(merged + raw2)
            result.pass_used, result.preprocessing = 2, True
            result.upscaled = scale > 1.0

            if _is_cancelled(token):
                result.candidates, result.cancelled = merged, True
                return result

        if rescue_allowed and profile.enhanced_rescue and len(merged) < PASS3_MIN_CANDIDATES:
            processed, offset, scale = prepare_frame(frame, PASS3_ENHANCEMENT, PASS3_UPSCALE, profile.roi)
            raw3 = self._run_pass(processed, (PASS3_INPUT_SIZE,), PASS3_RAW_THRESHOLD, dual,
                                  pass_id=3, offset=offset, scale=scale)
            result.raw_count += len(raw3)
            H, W = frame.shape[:2]
            strict = [c for c in raw3 if self._pass3_keep(c, profile, W, H)]
            logger.debug(f"[orchestrator] pass3 kept {len(strict)}/{len(raw3)} after self-filter")
            merged = merge_candidates(merged + strict, FINAL_IOU, FINAL_CONTAINMENT)
            result.pass_used, result.preprocessing, result.upscaled = 3, True, True

        result.candidates = merged
        return result

    @staticmethod
    def _pass3_keep(c: RawCandidate, profile: DetectionProfile, frame_w: int, frame_h: int) -> bool:
        b = c.box
        if c.score < max(profile.min_face_score, profile.hard_min_face_score, PASS3_MIN_SCORE):
            return False
        if b.width < profile.min_face_size_px or b.height < profile.min_face_size_px:
            return False
        if b.area > PASS3_MAX_AREA_FRACTION * frame_w * frame_h:
            return False
        aspect = b.height / b.width
        return profile.aspect_ratio_min <= aspect <= profile.aspect_ratio_max

    # ---- classification ----
    def _classify(self, frame: np.ndarray, cand: RawCandidate) -> ClassifiedDetection:
        H, W = frame.shape[:2]
        x0, y0, x1, y1 = pad_box(cand.box, CROP_PADDING, W, H)
        chip = frame[y0:y1, x0:x1]
        try:
            cls = self.gateway.classify(chip)
            age, gender, prob = cls.age, cls.gender, cls.probability
        except Exception as e:
            # below the vote floor, so a fallback never votes
            logger.warning(f"[orchestrator] classify failed, using fallback: {e}")
            age, gender, prob = 40.0, "male", 0.5

        gender, prob = correct_gender(frame, cand.box, gender, prob,
                                      self.s.FEMALE_BOOST_FACTOR, self.s.ENABLE_HAIR_HEURISTICS)
        return ClassifiedDetection(box=cand.box, gender=gender, age_group=age_group(age),
                                   gender_confidence=prob, detection_score=cand.score, age=age)

    def run_cycle(self, frame: np.ndarray, profile: DetectionProfile, token=None) -> CycleResult:
        """Detect, filter, classify and de-duplicate the faces in one frame."""
        t0 = time.time()
        found = self.detect_candidates(frame, profile, token)
        H, W = frame.shape[:2]
        kept = filter_candidates(found.candidates, (W, H), profile, frame)

        detections: List[ClassifiedDetection] = []
        for cand in kept:
            if _is_cancelled(token):
                break
            detections.append(self._classify(frame, cand))
        detections = merge_candidates(detections, FINAL_IOU, FINAL_CONTAINMENT,
                                      score=lambda d: d.detection_score)

        out = CycleResult(
            detections=detections,
            raw_count=found.raw_count,
            filtered_count=len(kept),
            pass_used=found.pass_used,
            upscaled=found.upscaled,
            preprocessing=found.preprocessing,
            cancelled=found.cancelled or _is_cancelled(token),
            latency_ms=(time.time() - t0) * 1000.0,
        )
        logger.debug(f"[orchestrator] cycle raw={out.raw_count} filtered={out.filtered_count} "
                     f"final={len(detections)} pass={out.pass_used} {out.latency_ms:.0f}ms")
        return out
