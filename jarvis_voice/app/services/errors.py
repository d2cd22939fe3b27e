class JarvisVoiceError(Exception):
    """Base class for errors raised by the voice session services."""


class DeviceError(JarvisVoiceError, OSError):
    """Capture device could not be initialized or could not enter recording state."""


class AudioReadError(DeviceError):
    """A block read from the capture device failed or returned no samples."""


class ModelError(JarvisVoiceError):
    """Speech model is missing or could not be loaded."""


class RecognizerError(JarvisVoiceError):
    """Recognition engine failed to start or reported a runtime failure."""


class ParseError(JarvisVoiceError, ValueError):
    """Hypothesis payload from the recognizer is malformed."""
