# src/detection/base.py

from abc import ABC, abstractmethod
from utils.types import DetectionFrame
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar('T')  # detector-specific payload

class DetectionResult(Generic[T]):
    """Outcome of running a detector on one frame.

    A result that is not valid still carries a payload so callers can draw
    or log it; the reason for the failure is kept under metadata['error'].
    """
    def __init__(self,
                 is_valid: bool,
                 data: T,
                 metadata: Optional[Dict[str, Any]] = None):
        self.is_valid = is_valid
        self.data = data
        self.metadata = metadata or {}

    @classmethod
    def failed(cls, data: T, error: str, metadata: Optional[Dict[str, Any]] = None) -> 'DetectionResult[T]':
        metadata = dict(metadata or {})
        metadata['error'] = error
        return cls(is_valid=False, data=data, metadata=metadata)

    @property
    def error(self) -> Optional[str]:
        return self.metadata.get('error')

    def __repr__(self):
        state = 'valid' if self.is_valid else f'invalid: {self.error}'
        return f"{type(self).__name__}({state})"

class Detector(ABC):
    """Frame-by-frame detector with internal state carried between frames."""

    @abstractmethod
    def process_frame(self, frame: DetectionFrame) -> DetectionResult:
        """Run detection on one frame.

        Args:
            frame: DetectionFrame holding the image and its capture info

        Returns:
            DetectionResult; invalid frames give an invalid result rather
            than an exception so a stream keeps running
        """

    @abstractmethod
    def reset(self):
        """Forget everything learned from previous frames."""

    @abstractmethod
    def get_config(self) -> Dict[str, Any]:
        """Current parameters as a plain dictionary."""
