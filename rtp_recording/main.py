"""
FastAPI application for the RTP recording backend.
"""

import logging
import os
import sys

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from rtp_recording.api import config, recording
from rtp_recording.services.errors import PreflightCheckError
from rtp_recording.services.recording_service import RecordingService

logger = logging.getLogger(__name__)

app = FastAPI(
    title="RTP Recording API",
    description="Hands live RTP media sessions off to FFmpeg, GStreamer or an external recorder",
    version="1.0.0"
)

# Reference to recording service for shutdown cleanup
recording_service: RecordingService = recording.recording_service

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def on_startup() -> None:
    settings = recording_service.settings
    settings.output_path.mkdir(parents=True, exist_ok=True)
    logger.info("Recordings are written to %s", settings.output_path)


# Graceful shutdown handler
@app.on_event("shutdown")
async def on_shutdown() -> None:
    """Interrupt the recorder so it can finalize its container before we exit."""
    try:
        await recording_service.shutdown()
    except Exception as e:
        logger.error("Error during shutdown cleanup: %s", e)


# Include routers
app.include_router(config.router, prefix="/api/config", tags=["config"])
app.include_router(recording.router, prefix="/api/recording", tags=["recording"])


@app.get("/")
async def root():
    return {
        "message": "RTP Recording API",
        "version": "1.0.0",
        "backends": [name for name in recording_service.get_backends()],
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy", "version": "1.0.0"}


def run() -> None:
    """Console entry point: FFmpeg preflight, then serve."""
    import uvicorn

    logging.basicConfig(
        level=os.environ.get("RTP_RECORDING_LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if recording_service.settings.preflight_on_startup:
        try:
            recording_service.preflight()
        except PreflightCheckError as e:
            logger.error("%s", e)
            sys.exit(1)

    uvicorn.run(
        app,
        host=os.environ.get("RTP_RECORDING_HOST", "127.0.0.1"),
        port=int(os.environ.get("RTP_RECORDING_PORT", "8000")),
    )


if __name__ == "__main__":
    run()
