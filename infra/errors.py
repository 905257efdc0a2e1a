"""Custom exceptions for SpeakFlow."""


class SpeakFlowError(Exception):
    """Base class for SpeakFlow errors."""


class HealthCheckFailed(SpeakFlowError):
    """Raised when startup health checks fail."""


class StartupError(SpeakFlowError):
    """Raised for empty or invalid input before any session is created."""


class SynthesisError(SpeakFlowError):
    """Raised when the local speech engine reports a failure."""


class SynthesisTransientError(SynthesisError):
    """Non-fatal synthesis failure while looping; the watchdogs decide completion."""


class SynthesisFatalError(SynthesisError):
    """Synthesis failure that ends the session, even a looping one when the audio can never play."""


class SurrogateCommunicationError(SpeakFlowError):
    """Raised when a cross-context message cannot be delivered or answered in time."""


class DecodeError(SpeakFlowError):
    """Raised when encoded audio cannot be decoded into a playable buffer."""


class PlaybackDeviceError(SpeakFlowError):
    """Raised when an audio output refuses or fails to start playback."""


class RemoteSynthesisError(SpeakFlowError):
    """Raised for remote speech API failures (missing key, auth, quota, bad request)."""
