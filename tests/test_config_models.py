import json

import pytest
from pydantic import ValidationError

from rtp_recording.models.config import (
    RecorderEndpointSettings,
    RecordingSettings,
    load_recording_settings,
    save_recording_settings,
    settings_path,
)
from rtp_recording.models.session import MediaKind, RecorderEndpoint


@pytest.fixture
def config_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("RTP_RECORDING_CONFIG_DIR", str(tmp_path / "config"))
    return tmp_path / "config"


def test_default_endpoints():
    endpoints = RecorderEndpointSettings()

    assert endpoints.endpoint(MediaKind.AUDIO) == RecorderEndpoint("127.0.0.1", 5004, 5005)
    assert endpoints.endpoint(MediaKind.VIDEO) == RecorderEndpoint("127.0.0.1", 5006, 5007)


def test_ports_must_be_distinct():
    with pytest.raises(ValidationError, match="distinct"):
        RecorderEndpointSettings(video_port=5004)


def test_port_range():
    with pytest.raises(ValidationError):
        RecorderEndpointSettings(audio_rtcp_port=70000)


def test_payload_types_are_dynamic():
    with pytest.raises(ValidationError):
        RecordingSettings(vp8_payload_type=8)


def test_empty_program_rejected():
    with pytest.raises(ValidationError):
        RecordingSettings(ffmpeg_program="  ")


def test_output_path_expands_user():
    settings = RecordingSettings(output_dir="~/captures")

    assert "~" not in str(settings.output_path)
    assert settings.output_path.name == "captures"


def test_missing_file_gives_defaults(config_dir):
    assert load_recording_settings() == RecordingSettings()
    assert config_dir.is_dir()


def test_malformed_file_falls_back_to_defaults(config_dir, caplog):
    settings_path().write_text("{not json")

    assert load_recording_settings() == RecordingSettings()
    assert "Ignoring malformed" in caplog.text


def test_invalid_values_fall_back_to_defaults(config_dir):
    settings_path().write_text(json.dumps({"audio_payload_type": 0}))

    assert load_recording_settings().audio_payload_type == 111


def test_saved_settings_are_loaded(config_dir):
    settings = RecordingSettings(settle_delay_sec=2.0, gstreamer_log_level="3")

    save_recording_settings(settings)

    assert json.loads(settings_path().read_text())["settle_delay_sec"] == 2.0
    assert load_recording_settings() == settings
