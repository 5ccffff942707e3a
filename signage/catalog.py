"""
Spot catalogs: the built-in sample list and JSON catalog files.
"""
from __future__ import annotations
from typing import List
import json
import logging
import os

from signage.models import Spot

logger = logging.getLogger(__name__)

_SAMPLE_BASE = "https://storage.googleapis.com/gtv-videos-bucket/sample/"

SAMPLE_SPOTS: List[Spot] = [
    Spot(id="ad-001", title="TechPro Gadgets", filename="tech-gadgets.mp4",
         target_gender="male", target_age="young", duration=15,
         video_url=_SAMPLE_BASE + "ForBiggerBlazes.mp4"),
    Spot(id="ad-002", title="Elegance Fashion", filename="luxury-fashion.mp4",
         target_gender="female", target_age="adult", duration=15,
         video_url=_SAMPLE_BASE + "ForBiggerEscapes.mp4"),
    Spot(id="ad-003", title="PowerBoost Energy", filename="sports-energy.mp4",
         target_gender="male", target_age="young", duration=60,
         video_url=_SAMPLE_BASE + "ForBiggerFun.mp4"),
    Spot(id="ad-004", title="GlowUp Skincare", filename="skincare-premium.mp4",
         target_gender="female", target_age="young", duration=15,
         video_url=_SAMPLE_BASE + "ForBiggerJoyrides.mp4"),
    Spot(id="ad-005", title="WealthGuard Insurance", filename="financial-services.mp4",
         target_gender="all", target_age="adult", duration=53,
         video_url=_SAMPLE_BASE + "ForBiggerMeltdowns.mp4"),
    Spot(id="ad-006", title="NexGen Gaming", filename="gaming-console.mp4",
         target_gender="all", target_age="young", duration=60,
         video_url=_SAMPLE_BASE + "ElephantsDream.mp4"),
]


def sample_catalog() -> List[Spot]:
    return [s.model_copy() for s in SAMPLE_SPOTS]


def load_catalog(path: str) -> List[Spot]:
    """
    Load spots from a JSON file holding either a list of spots or {"spots": [...]}.

    Raises:
        FileNotFoundError: path does not exist.
        ValueError: the document is not a spot list.
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Catalog not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        doc = json.load(f)
    items = doc.get("spots") if isinstance(doc, dict) else doc
    if not isinstance(items, list):
        raise ValueError(f"Catalog {path} must contain a list of spots")
    spots = [Spot(**item) for item in items]
    logger.debug(f"[catalog] loaded {len(spots)} spots from {path}")
    return spots
