# src/utils/errors.py


class ArchDetectorError(Exception):
    """Base class for all arch detector errors"""


class ConfigurationError(ArchDetectorError, ValueError):
    """Raised when tracker parameters would produce an unusable state space."""


class GeometryError(ArchDetectorError, ValueError):
    """Raised when image dimensions cannot support the line transform tables."""
