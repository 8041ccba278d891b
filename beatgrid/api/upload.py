"""Upload and manual-BPM endpoints."""

import asyncio
import logging
import os
import tempfile

from fastapi import APIRouter, File, HTTPException, UploadFile

from beatgrid.analysis.engine import AnalysisEngine, apply_manual_bpm
from beatgrid.api.schemas import AnalysisResponse, ManualBpmRequest
from beatgrid.config import settings

logger = logging.getLogger(__name__)

router = APIRouter()

ALLOWED_EXTENSIONS = {".wav", ".mp3", ".flac", ".ogg", ".m4a", ".aac"}


def _extension(filename: str | None) -> str:
    if not filename or "." not in filename:
        return ""
    return "." + filename.rsplit(".", 1)[-1].lower()


@router.post("/analyze", response_model=AnalysisResponse)
async def analyze_file(file: UploadFile = File(...)):
    """Analyze an uploaded audio file for tempo, beats and fermatas."""
    suffix = _extension(file.filename)
    if suffix and suffix not in ALLOWED_EXTENSIONS:
        raise HTTPException(400, f"Unsupported format. Use: {', '.join(sorted(ALLOWED_EXTENSIONS))}")

    content = await file.read()
    if not content:
        raise HTTPException(400, "Empty file")
    if len(content) > settings.max_upload_mb * 1024 * 1024:
        raise HTTPException(400, f"File too large (max {settings.max_upload_mb} MB)")

    # Decoders need a real path for some formats
    with tempfile.NamedTemporaryFile(suffix=suffix, delete=False) as tmp:
        tmp.write(content)
        tmp_path = tmp.name

    try:
        engine = AnalysisEngine()
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, engine.analyze_file, tmp_path)
        return AnalysisResponse.from_result(result)
    except Exception as e:
        logger.exception(f"Analysis of {file.filename} failed")
        raise HTTPException(500, "Analysis failed") from e
    finally:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass


@router.post("/bpm", response_model=AnalysisResponse)
async def override_bpm(request: ManualBpmRequest):
    """Re-grid a previous analysis at a user-chosen BPM."""
    try:
        result = apply_manual_bpm(request.result.to_result(), request.bpm)
    except ValueError as e:
        raise HTTPException(400, str(e)) from e
    return AnalysisResponse.from_result(result)
