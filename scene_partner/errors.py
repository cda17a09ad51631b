"""Error taxonomy for speech sessions and partner playback."""


class RehearsalError(Exception):
    """Base class for recoverable rehearsal failures."""


class CredentialError(RehearsalError):
    """The speech-to-text access token could not be obtained."""


class MicrophonePermissionError(RehearsalError, PermissionError):
    """Microphone capture was denied or no input device is available."""


class TransportError(RehearsalError):
    """The speech-to-text stream failed to open or broke while listening."""


class PlaybackError(RehearsalError):
    """Synthesized partner audio could not be generated or played."""
