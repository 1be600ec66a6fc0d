# src/detection/markers.py

import logging
import math
import numpy as np
import cv2
from typing import Any, Dict, Optional

logger = logging.getLogger("MarkerDetector")


class MarkerDetector:
    """Finds the centers of the round plates that mark the arch.

    Edges are extracted with Canny, every external contour becomes a
    candidate blob and only round enough blobs are kept. The output is a
    plain list of centroids; the line transform does not care which side
    of the arch a plate belongs to.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = {
            # Canny hysteresis thresholds
            'canny_low': 100,
            'canny_high': 200,

            # 4*pi*area / perimeter^2, 1.0 for a perfect circle
            'roundness_threshold': 0.05,
            'min_area': 1.0,
        }
        if config:
            unknown = set(config) - set(self.config)
            if unknown:
                raise ValueError(f"Unknown marker detector parameters: {sorted(unknown)}")
            self.config.update(config)

        self.edges: Optional[np.ndarray] = None  # Last edge image, kept for debugging

    def find_markers(self, frame: np.ndarray) -> np.ndarray:
        """Extract plate centroids from a BGR or grayscale frame.

        Args:
            frame: Input image

        Returns:
            Nx2 int array of (x, y) centroids, possibly empty
        """
        if frame is None or frame.size == 0:
            raise ValueError("Empty or invalid frame received in find_markers")

        try:
            if frame.ndim == 3:
                gray = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
            else:
                gray = frame
            self.edges = cv2.Canny(gray, self.config['canny_low'], self.config['canny_high'])
            contours, _ = cv2.findContours(self.edges, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
        except cv2.error as e:
            raise ValueError(f"OpenCV error during marker detection: {str(e)}")

        centroids = []
        for contour in contours:
            area = abs(cv2.contourArea(contour))
            if area < self.config['min_area']:
                continue

            # Drop blobs that are not round
            length = cv2.arcLength(contour, True)
            roundness = 4 * math.pi * area / (length * length)
            if roundness <= self.config['roundness_threshold']:
                continue

            moments = cv2.moments(contour)
            if moments['m00'] == 0:
                logger.warning(f"Contour with area {area} has no mass, skipping")
                continue
            centroids.append((int(moments['m10'] / moments['m00']),
                              int(moments['m01'] / moments['m00'])))

        logger.debug(f"{len(contours)} contours, {len(centroids)} markers")
        return np.array(centroids, dtype=np.int64).reshape(-1, 2)

    def get_config(self) -> Dict[str, Any]:
        return self.config.copy()
