"""
Setup script for the RTP Recording Backend
"""
from setuptools import setup, find_packages

setup(
    name="rtp-recording-backend",
    version="1.0.0",
    description="Records live RTP media sessions with FFmpeg, GStreamer or an external recorder",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=[
        "fastapi>=0.100",
        "pydantic>=2.0",
        "python-dotenv>=1.0",
        "uvicorn>=0.23",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
            "httpx>=0.24",
        ],
    },
    entry_points={
        "console_scripts": [
            "rtp-recording-backend=rtp_recording.main:run",
        ],
    },
)
