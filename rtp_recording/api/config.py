from fastapi import APIRouter, HTTPException

from rtp_recording.api.recording import recording_service
from rtp_recording.models.config import RecordingSettings, load_recording_settings, save_recording_settings
from rtp_recording.services.errors import SessionStateError

router = APIRouter()


@router.get("/", response_model=RecordingSettings)
def get_config() -> RecordingSettings:
    """Get the current recording configuration"""
    return recording_service.settings


@router.put("/", response_model=RecordingSettings)
def update_config(settings: RecordingSettings) -> RecordingSettings:
    """Update and persist the recording configuration (not while recording)"""
    try:
        recording_service.update_settings(settings)
    except SessionStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return save_recording_settings(settings)


@router.post("/reload", response_model=RecordingSettings)
def reload_config() -> RecordingSettings:
    """Re-read the configuration file from disk"""
    settings = load_recording_settings()
    try:
        recording_service.update_settings(settings)
    except SessionStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return settings
