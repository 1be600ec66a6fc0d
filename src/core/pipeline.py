# src/core/pipeline.py

import logging
import numpy as np
import cv2
from typing import Callable, List, Optional, Sequence

logger = logging.getLogger("FramePipeline")

# A stage takes one frame and returns the transformed frame
FrameStage = Callable[[np.ndarray], np.ndarray]


class Undistorter:
    """Removes lens distortion from frames with a known camera model.

    The camera matrix and distortion coefficients come from an external
    calibration; the rectification maps are computed once for the first
    frame size seen and reused afterwards.
    """

    def __init__(self, camera_matrix: np.ndarray, dist_coeffs: np.ndarray):
        self.camera_matrix = np.asarray(camera_matrix, dtype=np.float64)
        self.dist_coeffs = np.asarray(dist_coeffs, dtype=np.float64)
        if self.camera_matrix.shape != (3, 3):
            raise ValueError(f"camera_matrix must be 3x3, got {self.camera_matrix.shape}")

        self._maps = None
        self._size = None

    def __call__(self, frame: np.ndarray) -> np.ndarray:
        size = (frame.shape[1], frame.shape[0])
        if self._maps is None or self._size != size:
            self._maps = cv2.initUndistortRectifyMap(
                self.camera_matrix, self.dist_coeffs, None,
                self.camera_matrix, size, cv2.CV_16SC2)
            self._size = size
        return cv2.remap(frame, self._maps[0], self._maps[1], cv2.INTER_LINEAR)


class FramePipeline:
    """Runs a fixed sequence of frame stages in order."""

    def __init__(self, stages: Optional[Sequence[FrameStage]] = None):
        self.stages: List[FrameStage] = list(stages or [])

    def add_stage(self, stage: FrameStage) -> "FramePipeline":
        self.stages.append(stage)
        return self

    def process(self, frame: np.ndarray) -> np.ndarray:
        """Transform one frame through every stage.

        Raises:
            ValueError: if a stage returns no frame
        """
        for stage in self.stages:
            frame = stage(frame)
            if frame is None:
                raise ValueError(f"Stage {stage!r} returned no frame")
        return frame

    def __len__(self) -> int:
        return len(self.stages)
