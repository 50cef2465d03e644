"""
Error taxonomy for recording sessions.
"""


class RecordingError(Exception):
    """Base class for every recording session failure."""


class PreflightCheckError(RecordingError):
    """Recorder binary is missing or older than the supported minimum."""


class UnsupportedKindError(RecordingError):
    """Producer kind is neither audio nor video."""


class InvalidBackendError(RecordingError):
    """Unknown recorder backend name."""


class SessionStateError(RecordingError):
    """Operation is not valid in the session's current state."""


class SinkProvisionError(RecordingError):
    """The routing engine rejected transport or consumer creation."""


class RecorderLaunchError(RecordingError):
    """Recorder could not be spawned, or exited before it became ready."""


class SessionCancelledError(RecorderLaunchError):
    """stop() was called before the recorder became ready."""


class RouterUnavailableError(RecordingError):
    """No media router has been attached to the recording service."""


class UncleanExitWarning(UserWarning):
    """Recorder was killed by an unexpected signal; output may be truncated."""
