"""
REST endpoints for audience analysis and spot targeting.
"""
from typing import List, Literal, Optional
from fastapi import APIRouter, UploadFile, File, HTTPException, Form
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import logging

from signage.catalog import sample_catalog
from signage.config import Settings
from signage.gateway import DeepFaceGateway
from signage.live import DetectionLoop, OpenCVFrameSource
from signage.models import DemographicCounts, LiveStatus, Spot
from signage.orchestrator import DetectionOrchestrator
from signage.pipeline import analyze_recorded_video
from signage.scoring import rank_spots

import tempfile
import shutil
import os


live_session: dict = {"loop": None}

router = APIRouter()
settings = Settings()
logger = logging.getLogger(__name__)


class ScoreRequest(BaseModel):
    demographics: DemographicCounts
    last_played_id: Optional[str] = None
    catalog: Optional[List[Spot]] = None


class LabelRequest(BaseModel):
    gender: Literal["male", "female"]
    age_group: Literal["kid", "young", "adult"]
    is_false_positive: bool = False


def build_live_loop(camera_index: int) -> DetectionLoop:
    source = OpenCVFrameSource(camera_index)
    orchestrator = DetectionOrchestrator(DeepFaceGateway(settings), settings)
    return DetectionLoop(settings, orchestrator, source)


@router.get("/catalog")
async def catalog():
    return [s.model_dump() for s in sample_catalog()]


@router.post("/queue/score")
async def queue_score(req: ScoreRequest):
    """
    Rank catalog spots for an audience.

    Args:
        req: demographics, optional last-played spot id and optional custom catalog.

    Returns:
        dict: full ranking plus the top QUEUE_SIZE spots.
    """
    spots = req.catalog if req.catalog else sample_catalog()
    ranking = rank_spots(spots, req.demographics, req.last_played_id)
    return {
        "ranking": [r.model_dump() for r in ranking],
        "queue": [r.spot.id for r in ranking[:settings.QUEUE_SIZE]],
    }


@router.post("/analyze/video")
async def analyze_video(
    file: UploadFile = File(...),
    cycle_interval: float | None = Form(None),
):
    """
    Analyze a recorded clip as one capture window and rank the catalog for its audience.

    Args:
        file: Uploaded video file.
        cycle_interval: Optional override for seconds between sampled frames.

    Returns:
        JSONResponse: capture summary, ranking and resulting queue.
    """
    logger.debug(f"[api] /analyze/video filename={file.filename} cycle_interval={cycle_interval}")
    run_settings = settings
    if cycle_interval is not None:
        run_settings = settings.model_copy(update={"CYCLE_INTERVAL": float(cycle_interval)})

    try:
        suffix = os.path.splitext(file.filename or "")[1] or ".mp4"
        with tempfile.NamedTemporaryFile(delete=False, suffix=suffix) as tmp:
            shutil.copyfileobj(file.file, tmp)
            tmp_path = tmp.name
    except Exception as e:
        logger.exception("[api] upload save failed")
        raise HTTPException(status_code=400, detail=f"Upload failed: {e}")

    try:
        logger.debug(f"[api] starting analyze_recorded_video tmp_path={tmp_path}")
        payload = analyze_recorded_video(tmp_path, run_settings)
        logger.debug("[api] analyze_recorded_video completed")
        return JSONResponse(payload)
    except FileNotFoundError as e:
        logger.exception("[api] analyze_recorded_video file not found")
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.exception("[api] analyze_recorded_video failed")
        raise HTTPException(status_code=500, detail=str(e))
    finally:
        try:
            os.unlink(tmp_path)
        except OSError:
            logger.warning(f"[api] failed to cleanup tmp file: {tmp_path}")


@router.post("/live/start")
async def live_start(camera_index: int | None = None):
    if live_session["loop"] is not None and live_session["loop"].running:
        return {"status": "already_running"}
    idx = settings.CAMERA_INDEX if camera_index is None else camera_index
    try:
        loop = build_live_loop(idx)
    except (RuntimeError, FileNotFoundError) as e:
        logger.exception("[api] live start failed")
        raise HTTPException(status_code=503, detail=str(e))
    loop.start()
    live_session["loop"] = loop
    return {"status": "started"}


@router.get("/live/status")
async def live_status():
    loop = live_session["loop"]
    if loop is None:
        return LiveStatus(running=False).model_dump()
    return LiveStatus(running=loop.running, started_at=loop.started_at,
                      last_snapshot=loop.status()).model_dump()


@router.post("/live/stop")
async def live_stop():
    loop = live_session["loop"]
    if loop is None or not loop.running:
        return {"status": "not_running"}
    loop.close()
    live_session["loop"] = None
    return {"status": "stopped"}


@router.post("/live/tracks/{track_id}/label")
async def live_label(track_id: int, req: LabelRequest):
    """Apply an operator label to a live track (correction or false positive)."""
    loop = live_session["loop"]
    if loop is None:
        raise HTTPException(status_code=409, detail="Live detection is not running")
    try:
        entry = loop.label_track(track_id, req.gender, req.age_group, req.is_false_positive)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"status": "labeled", "entry": entry.model_dump(), "metrics": loop.labels.metrics().model_dump()}
