# signage/pipeline.py
from __future__ import annotations
from typing import Dict, List, Optional
import logging
import os

import cv2
import numpy as np

from signage.catalog import sample_catalog
from signage.config import Settings
from signage.gateway import DeepFaceGateway, ModelGateway
from signage.live import DetectionLoop
from signage.models import Spot
from signage.orchestrator import DetectionOrchestrator
from signage.scoring import AdQueue

logger = logging.getLogger(__name__)


class SampledVideoSource:
    """Recorded clip read sequentially, one frame per cycle interval."""
    source_type = "recorded"

    def __init__(self, video_path: str, interval_s: float):
        self.source_id = video_path
        self._cap = cv2.VideoCapture(video_path)
        if not self._cap.isOpened():
            raise RuntimeError(f"Could not open video: {video_path}")
        self.fps = self._cap.get(cv2.CAP_PROP_FPS) or 25.0
        self.step = max(1, int(self.fps * float(interval_s)))
        self._index = 0
        # one frame of lookahead so callers know when the clip is done
        self._next = self._grab()

    @property
    def exhausted(self) -> bool:
        return self._next is None

    def _grab(self) -> Optional[np.ndarray]:
        while True:
            ok, img = self._cap.read()
            if not ok:
                return None
            take = self._index % self.step == 0
            self._index += 1
            if take:
                return img

    def read(self) -> Optional[np.ndarray]:
        frame = self._next
        if frame is not None:
            self._next = self._grab()
        return frame

    def release(self) -> None:
        self._cap.release()


def analyze_recorded_video(video_path: str,
                           settings: Settings,
                           catalog: Optional[List[Spot]] = None,
                           gateway: Optional[ModelGateway] = None) -> Dict:
    """
    Treat a whole clip as one capture window: sample a frame every CYCLE_INTERVAL seconds,
    track viewers across samples, then rank the catalog for the resulting audience.
    """
    if not os.path.exists(video_path):
        raise FileNotFoundError(f"Video not found: {video_path}")

    logger.debug(f"[pipeline] analyze_recorded_video start video_path={video_path}")
    source = SampledVideoSource(video_path, settings.CYCLE_INTERVAL)
    orchestrator = DetectionOrchestrator(gateway or DeepFaceGateway(settings), settings)
    loop = DetectionLoop(settings, orchestrator, source)
    queue = AdQueue(catalog if catalog is not None else sample_catalog(),
                    settings.CAPTURE_START_PERCENT, settings.CAPTURE_END_PERCENT, settings.QUEUE_SIZE)

    cycles = 0
    try:
        loop.open_capture()
        while not source.exhausted:
            token = loop.slot.acquire()
            try:
                snap = loop.run_cycle(token)
            finally:
                loop.slot.release(token)
            cycles += 1
            if snap is not None:
                logger.debug(f"[pipeline] cycle={cycles} tracked={snap.debug.tracked_count} "
                             f"raw={snap.debug.raw_count} pass={snap.debug.pass_used}")
        summary = loop.close_capture()
    finally:
        loop.close()
        orchestrator.close()

    ranking = queue.reorder(summary.demographics)
    payload = {
        "video": os.path.basename(video_path),
        "cycles": cycles,
        "fps": source.fps,
        "summary": summary.model_dump(),
        "ranking": [s.model_dump() for s in ranking],
        "queue": [s.model_dump() for s in queue.queue],
    }
    logger.debug(f"[pipeline] analyze_recorded_video finished viewers={summary.unique_viewers}")
    return payload
