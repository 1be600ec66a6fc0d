# src/detection/horizon.py

import logging
import math
import numpy as np
import cv2
from typing import Optional
from utils.errors import GeometryError
from utils.types import Horizon

logger = logging.getLogger("HorizonEstimator")


def wrap_half_turn(angle: float) -> float:
    """Wrap an undirected line angle into [-pi/2, pi/2)."""
    return float(np.mod(angle + math.pi / 2, math.pi) - math.pi / 2)


class HorizonEstimator:
    """Estimates the horizon orientation from sky/ground segmentation.

    Follows Cornall, Egan and Price, "Aircraft attitude estimation from
    horizon video" (Electronics Letters 42(13), 2006): pixels are split into
    sky and ground by their blue content using Otsu's threshold, inside a
    centered circle so that the result does not depend on the image aspect.
    The horizon runs perpendicular to the line joining the sky and ground
    centroids.
    """

    def __init__(self, width: int, height: int):
        if width <= 0 or height <= 0:
            raise GeometryError(f"Image dimensions must be positive, got {width}x{height}")
        self.width = width
        self.height = height

        # Circle of diameter = image height, centered
        self.mask = np.zeros((height, width), dtype=np.uint8)
        cv2.circle(self.mask, (width // 2, height // 2), height // 2, 255, thickness=-1)
        ys, xs = np.nonzero(self.mask)
        self._mask_xs = xs
        self._mask_ys = ys

        self.last_horizon = Horizon(angle=0.0)
        self.sky_mask: Optional[np.ndarray] = None  # Last segmentation, kept for debugging

    def _blueness(self, frame: np.ndarray) -> np.ndarray:
        # 3*b^2 / (r+g+b), saturated to 255
        pixels = frame.astype(np.float32)
        total = pixels.sum(axis=2)
        blue = pixels[:, :, 0]
        with np.errstate(divide='ignore', invalid='ignore'):
            value = np.where(total > 0, 3 * blue * blue / total, 0)
        return np.clip(value, 0, 255).astype(np.uint8)

    def estimate(self, frame: np.ndarray) -> Horizon:
        """Estimate the horizon of a BGR frame.

        Args:
            frame: BGR image matching the configured dimensions

        Returns:
            Horizon with the angle in radians, y axis up, 0 for level flight.
            If the frame does not split into sky and ground, the previous
            horizon is returned.
        """
        if frame is None or frame.size == 0:
            raise ValueError("Empty or invalid frame received in estimate")
        if frame.ndim != 3 or frame.shape[2] != 3:
            raise ValueError(f"Invalid frame format. Expected 3-channel BGR image, got shape {frame.shape}")
        if frame.shape[:2] != (self.height, self.width):
            raise ValueError(f"Frame is {frame.shape[1]}x{frame.shape[0]}, "
                             f"expected {self.width}x{self.height}")

        gray = self._blueness(frame)
        _, self.sky_mask = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)

        is_sky = self.sky_mask[self._mask_ys, self._mask_xs] > 0
        sky_pixels = int(is_sky.sum())
        ground_pixels = len(is_sky) - sky_pixels
        if sky_pixels == 0 or ground_pixels == 0:
            logger.warning("Frame does not split into sky and ground, keeping previous horizon")
            return self.last_horizon

        sky_x = float(self._mask_xs[is_sky].mean())
        sky_y = float(self._mask_ys[is_sky].mean())
        ground_x = float(self._mask_xs[~is_sky].mean())
        ground_y = float(self._mask_ys[~is_sky].mean())

        # Sky-to-ground direction with the y axis pointing up, turned a quarter
        angle = math.atan2(-(ground_y - sky_y), ground_x - sky_x) + math.pi / 2
        angle = wrap_half_turn(angle)

        prop = sky_pixels / (sky_pixels + ground_pixels)
        center_point = (int(sky_x + (ground_x - sky_x) * prop),
                        int(sky_y + (ground_y - sky_y) * prop))

        self.last_horizon = Horizon(angle=angle,
                                    sky_center=(sky_x, sky_y),
                                    ground_center=(ground_x, ground_y),
                                    center_point=center_point)
        logger.debug(f"Horizon angle {math.degrees(angle):.1f} deg, sky ({sky_x:.1f}, {sky_y:.1f}), "
                     f"ground ({ground_x:.1f}, {ground_y:.1f})")
        return self.last_horizon
