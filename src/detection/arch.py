# src/detection/arch.py

import logging
import time
import cv2
import numpy as np
from typing import Any, Dict, Optional
from .base import Detector, DetectionResult
from .arch_tracker import ArchTracker, StateSpaceTable
from .horizon import HorizonEstimator
from .line_transform import LineTransform
from .markers import MarkerDetector
from core.pipeline import FramePipeline
from utils.config import ArchDetectorConfig
from utils.types import ArchDetectionData, DetectionFrame, TrackerPhase

logger = logging.getLogger("ArchDetector")

class ArchDetector(Detector):
    """Detects the arch in every frame of a video stream.

    Each frame goes through:
    1. Optional preprocessing stages (e.g. undistortion)
    2. Marker detection, giving the plate centroids
    3. Horizon estimation, giving the expected arch orientation
    4. Line transform of the centroids
    5. Arch tracking by dynamic programming over the candidate arches

    The line transform and the state space table depend only on the frame
    size and the configuration; they are built here once and reused by
    every tracker this detector creates.
    """

    def __init__(self, frame_width: int = 320, frame_height: int = 240,
                 config: Optional[ArchDetectorConfig] = None,
                 preprocess: Optional[FramePipeline] = None,
                 marker_config: Optional[Dict[str, Any]] = None):
        """Initialize detector tables.

        Args:
            frame_width: Width of input frames in pixels
            frame_height: Height of input frames in pixels
            config: Line transform and tracker parameters
            preprocess: Stages applied to each frame before detection
            marker_config: Overrides for the marker detector parameters

        Raises:
            ConfigurationError: if the parameters give an unusable state space
            GeometryError: if the frame size is invalid
        """
        self.width = frame_width
        self.height = frame_height
        self.config = config or ArchDetectorConfig()
        self.config.validate()

        self.transform = LineTransform(frame_width, frame_height,
                                       self.config.theta_resolution_degrees,
                                       self.config.rho_resolution)
        self.table = StateSpaceTable.build(self.transform, self.config)
        self.tracker = ArchTracker(self.transform, self.config, self.table)

        self.preprocess = preprocess or FramePipeline()
        self.marker_detector = MarkerDetector(marker_config)
        self.horizon_estimator = HorizonEstimator(frame_width, frame_height)

    def process_frame(self, frame: DetectionFrame) -> DetectionResult:
        """Process a single frame and return the tracked arch."""
        start_time = time.time()
        metadata = {
            'tracker_phase': self.tracker.phase.value,
            'processing_time': 0.0,
            'num_markers': 0,
            'center_idx': None,
            'arch_lines': None
        }

        try:
            if frame is None or frame.frame is None or frame.frame.size == 0:
                raise ValueError("Invalid or empty frame received")
            if (frame.width, frame.height) != (self.width, self.height):
                raise ValueError(f"Frame is {frame.width}x{frame.height}, "
                                 f"detector expects {self.width}x{self.height}")

            image = self.preprocess.process(frame.frame)
            markers = self.marker_detector.find_markers(image)
            horizon = self.horizon_estimator.estimate(image)

            scores = self.transform.compute_scores(markers)
            estimate = self.tracker.update(scores, horizon.angle)

            metadata['tracker_phase'] = self.tracker.phase.value
            metadata['num_markers'] = len(markers)
            metadata['center_idx'] = estimate.center_idx
            metadata['arch_lines'] = self.tracker.line_endpoints(estimate)
            metadata['processing_time'] = time.time() - start_time

            return DetectionResult(
                is_valid=True,
                data=ArchDetectionData(estimate=estimate, markers=markers, horizon=horizon),
                metadata=metadata
            )

        except (ValueError, cv2.error) as e:
            logger.error(f"Error in process_frame: {str(e)}")
            metadata['processing_time'] = time.time() - start_time
            return DetectionResult.failed(
                ArchDetectionData(estimate=None,
                                  markers=np.empty((0, 2), dtype=np.int64),
                                  horizon=None),
                str(e),
                metadata
            )

    def reset(self):
        """Start tracking from scratch, reusing the precomputed tables."""
        self.tracker = ArchTracker(self.transform, self.config, self.table)

    def get_config(self) -> Dict[str, Any]:
        config = self.config.to_dict()
        config['markers'] = self.marker_detector.get_config()
        return config

    @property
    def is_tracking(self) -> bool:
        return self.tracker.phase is TrackerPhase.TRACKING
