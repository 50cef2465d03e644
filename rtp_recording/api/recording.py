"""
Recording API endpoints.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, field_validator

from rtp_recording.services.recording_service import RecordingService

# Media router and producers are attached by the embedding media server
recording_service = RecordingService()

router = APIRouter()

ERROR_STATUS = {
    "InvalidBackendError": 400,
    "UnsupportedKindError": 400,
    "SessionStateError": 409,
    "SessionCancelledError": 409,
    "RouterUnavailableError": 503,
}


class StartRecordingRequest(BaseModel):
    backend: str = "ffmpeg"  # ffmpeg, gstreamer, external

    @field_validator("backend")
    @classmethod
    def normalize_backend(cls, v: str) -> str:
        return v.strip().lower()


class StopRecordingRequest(BaseModel):
    wait_seconds: float = 0.0


@router.post("/start", response_model=Dict[str, Any])
async def start_recording(request: StartRecordingRequest):
    """
    Start recording the registered producers.

    - **backend**: recorder to launch (ffmpeg, gstreamer or external)

    Returns once the recorder is ready and media flows to it. With the
    external backend this takes the whole countdown.
    """
    result = await recording_service.start_recording(request.backend)
    if not result["success"]:
        status_code = ERROR_STATUS.get(result.get("error_type"), 500)
        raise HTTPException(status_code=status_code, detail=result["error"])
    return result


@router.post("/stop", response_model=Dict[str, Any])
async def stop_recording(request: Optional[StopRecordingRequest] = None):
    """
    Stop the active recording. Always succeeds.

    - **wait_seconds**: optionally wait for the recorder to finalize its file
    """
    timeout = request.wait_seconds if request else None
    return await recording_service.stop_recording(timeout=timeout)


@router.get("/status", response_model=Dict[str, Any])
async def get_recording_status():
    """Current session state, sinks, recorder pid and output path."""
    return await recording_service.get_recording_status()


@router.get("/backends", response_model=Dict[str, Any])
async def get_backends():
    """
    Supported recorder backends and the container each one writes.
    """
    return {"success": True, "backends": recording_service.get_backends()}
