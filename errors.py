"""Error types raised by the putt detector."""


class DetectorError(Exception):
    """Base class for detector failures."""


class PermissionDenied(DetectorError):
    """Microphone access was refused by the platform or the user."""


class ResourceUnavailable(DetectorError):
    """The audio input could not be opened (busy, missing, unsupported format)."""


class InvalidFrame(DetectorError):
    """An audio frame was empty or held non-finite samples."""


class ConfigurationError(DetectorError, ValueError):
    """A configuration value is out of range; the previous configuration stays active."""
