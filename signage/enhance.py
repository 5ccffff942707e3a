"""Frame enhancement for difficult footage.

- enhance_frame: gamma curve, contrast stretch, denoise, sharpen (in that order)
- prepare_frame: ROI crop + upscale + enhancement, with the mapping needed to
  bring detections back into source-frame coordinates

All transforms are deterministic and operate on BGR uint8 frames.
"""
from __future__ import annotations
import cv2
import numpy as np
from typing import Optional, Tuple

from signage.config import Enhancement, RegionOfInterest, ENHANCEMENT_PRESETS


def gamma_lut(gamma: float) -> np.ndarray:
    idx = np.arange(256, dtype=np.float64) / 255.0
    return np.clip(np.round(255.0 * np.power(idx, 1.0 / gamma)), 0, 255).astype(np.uint8)


def apply_gamma(frame: np.ndarray, gamma: float) -> np.ndarray:
    if gamma == 1.0:
        return frame
    return cv2.LUT(frame, gamma_lut(gamma))


def apply_contrast(frame: np.ndarray, contrast: float) -> np.ndarray:
    """Linear stretch around mid-grey: out = contrast * (v - 128) + 128."""
    if contrast == 1.0:
        return frame
    out = contrast * (frame.astype(np.float32) - 128.0) + 128.0
    return np.clip(np.round(out), 0, 255).astype(np.uint8)


def apply_denoise(frame: np.ndarray) -> np.ndarray:
    return cv2.blur(frame, (3, 3))


def apply_sharpen(frame: np.ndarray, strength: float) -> np.ndarray:
    if strength <= 0:
        return frame
    kernel = np.array([[0, -strength, 0],
                       [-strength, 1 + 4 * strength, -strength],
                       [0, -strength, 0]], dtype=np.float32)
    return cv2.filter2D(frame, -1, kernel)


def enhance_frame(frame: np.ndarray, opts: Enhancement) -> np.ndarray:
    """Apply the enhancement chain; an identity config returns the frame untouched."""
    if opts.is_identity():
        return frame
    out = apply_gamma(frame, opts.gamma)
    out = apply_contrast(out, opts.contrast)
    # denoise before sharpening so noise is not amplified
    if opts.denoise:
        out = apply_denoise(out)
    return apply_sharpen(out, opts.sharpen)


def roi_bounds(frame_w: int, frame_h: int, roi: Optional[RegionOfInterest]) -> Tuple[int, int, int, int]:
    """Pixel window (x, y, w, h) for a fractional ROI, or the full frame when disabled."""
    if roi is None or not roi.enabled:
        return 0, 0, frame_w, frame_h
    x = int(round(roi.x * frame_w)); y = int(round(roi.y * frame_h))
    x = max(0, min(x, frame_w - 1)); y = max(0, min(y, frame_h - 1))
    w = int(round(roi.width * frame_w)); h = int(round(roi.height * frame_h))
    w = max(1, min(w, frame_w - x)); h = max(1, min(h, frame_h - y))
    return x, y, w, h


def prepare_frame(frame: np.ndarray,
                  opts: Enhancement,
                  scale: float = 1.0,
                  roi: Optional[RegionOfInterest] = None) -> Tuple[np.ndarray, Tuple[int, int], float]:
    """
    Crop to ROI, upscale, then enhance.

    Returns:
        (processed_frame, (offset_x, offset_y), scale) where a box found in the processed
        frame maps back as ``x / scale + offset_x``.
    """
    H, W = frame.shape[:2]
    x, y, w, h = roi_bounds(W, H, roi)
    out = frame[y:y + h, x:x + w]
    if scale != 1.0:
        out = cv2.resize(out, (max(1, int(round(w * scale))), max(1, int(round(h * scale)))),
                         interpolation=cv2.INTER_CUBIC)
    out = enhance_frame(out, opts)
    return out, (x, y), float(scale)


def get_preset(name: str) -> Enhancement:
    return ENHANCEMENT_PRESETS.get(name, ENHANCEMENT_PRESETS["none"])
