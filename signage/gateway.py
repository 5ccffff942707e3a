"""
Model gateway: the detector / classifier seam.

The orchestrator only talks to the ``ModelGateway`` protocol. ``DeepFaceGateway`` is the
production adapter; DeepFace is imported lazily so tests can swap ``sys.modules['deepface']``.
"""
from __future__ import annotations
from typing import Dict, List, Protocol, Tuple
import logging
import cv2
import numpy as np

from signage.config import Settings
from signage.models import Classification, DetectorSource, FaceBox

logger = logging.getLogger(__name__)

Detection = Tuple[FaceBox, float]


class GatewayError(RuntimeError):
    """Raised when the underlying model backend fails or returns garbage."""


class ModelGateway(Protocol):
    def detect(self, frame: np.ndarray, input_size: int, score_threshold: float,
               source: DetectorSource = DetectorSource.PRIMARY) -> List[Detection]: ...

    def classify(self, face_crop: np.ndarray) -> Classification: ...


def _resize_for_detect(img: np.ndarray, input_size: int) -> Tuple[np.ndarray, float]:
    """Fit the longer side to ``input_size``; returns (image, scale)."""
    H, W = img.shape[:2]
    longest = max(H, W)
    if longest == 0:
        raise GatewayError("empty frame")
    scale = input_size / float(longest)
    if abs(scale - 1.0) < 1e-6:
        return img, 1.0
    interp = cv2.INTER_AREA if scale < 1.0 else cv2.INTER_LINEAR
    resized = cv2.resize(img, (max(1, int(W * scale)), max(1, int(H * scale))), interpolation=interp)
    return resized, scale


def _gender_from_result(r: Dict) -> Tuple[str, float]:
    probs = r.get("gender")
    dom = r.get("dominant_gender")
    if isinstance(probs, dict) and probs:
        if not dom:
            dom = max(probs, key=probs.get)
        p = float(probs.get(dom, 0.0))
        p = p / 100.0 if p > 1.0 else p
    else:
        p = 0.5
    label = "female" if str(dom).lower() in ("woman", "female") else "male"
    return label, max(0.0, min(1.0, p))


class DeepFaceGateway:
    """DeepFace-backed detector and age/gender classifier."""

    def __init__(self, settings: Settings):
        self.s = settings
        self._backends = {
            DetectorSource.PRIMARY: settings.PRIMARY_DETECTOR,
            DetectorSource.SECONDARY: settings.SECONDARY_DETECTOR,
        }

    def detect(self, frame: np.ndarray, input_size: int, score_threshold: float,
               source: DetectorSource = DetectorSource.PRIMARY) -> List[Detection]:
        from deepface import DeepFace

        small, scale = _resize_for_detect(frame, input_size)
        backend = self._backends[source]
        try:
            dets = DeepFace.extract_faces(
                img_path=small,
                detector_backend=backend,
                enforce_detection=False,
                align=False,
            )
        except Exception as e:
            raise GatewayError(f"{backend} detect failed at {input_size}: {e}") from e

        out: List[Detection] = []
        for d in dets or []:
            fa = (d or {}).get("facial_area") or {}
            w, h = float(fa.get("w", 0) or 0), float(fa.get("h", 0) or 0)
            if w <= 0 or h <= 0:
                continue
            score = float(d.get("confidence") or 0.0)
            if score < score_threshold:
                continue
            box = FaceBox(x=float(fa.get("x", 0)) / scale, y=float(fa.get("y", 0)) / scale,
                          width=w / scale, height=h / scale)
            out.append((box, score))
        logger.debug(f"[gateway] {backend}@{input_size} thr={score_threshold:.2f} -> {len(out)}")
        return out

    def classify(self, face_crop: np.ndarray) -> Classification:
        from deepface import DeepFace

        if face_crop is None or face_crop.size == 0:
            raise GatewayError("empty face crop")
        try:
            res = DeepFace.analyze(
                face_crop,
                actions=["age", "gender"],
                enforce_detection=False,
                detector_backend="skip",
            )
        except Exception as e:
            raise GatewayError(f"classify failed: {e}") from e
        res = res if isinstance(res, list) else [res]
        if not res or not isinstance(res[0], dict):
            raise GatewayError("classifier returned no result")
        r0 = res[0]
        gender, prob = _gender_from_result(r0)
        return Classification(age=float(r0.get("age") or 0.0), gender=gender, probability=prob)
