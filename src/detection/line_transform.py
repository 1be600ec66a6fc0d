# src/detection/line_transform.py

import logging
import math
import numpy as np
from typing import Optional, Sequence, Tuple
from utils.errors import ConfigurationError, GeometryError

logger = logging.getLogger("LineTransform")


def _read_only(array: np.ndarray) -> np.ndarray:
    array.setflags(write=False)
    return array


class LineTransform:
    """Discretized Hough line transform over a fixed image geometry.

    Lines are parameterized by the angle of their normal (theta) and their
    signed offset (rho) from the image origin:

        rho = x * cos(theta) + y * sin(theta)

    theta spans half a turn, from -90 degrees inclusive to +90 degrees
    exclusive, so theta = 0 is a vertical line and theta = -90 a horizontal
    one. rho covers the full image diagonal in both directions.

    All geometry tables are built once in the constructor and are read-only
    afterwards, so one transform can be shared by several trackers. Only
    the score grid changes, and only inside compute_scores().
    """

    def __init__(self, width: int, height: int,
                 theta_resolution_degrees: float = 10,
                 rho_resolution: float = 10):
        """Build the angle/offset tables for an image of the given size.

        Args:
            width: Image width in pixels
            height: Image height in pixels
            theta_resolution_degrees: Requested angle bin spacing in degrees
            rho_resolution: Requested offset bin spacing in pixels

        Raises:
            GeometryError: if the image is empty or too small to span two offset bins
            ConfigurationError: if a resolution is out of range
        """
        if width is None or height is None or width <= 0 or height <= 0:
            raise GeometryError(f"Image dimensions must be positive, got {width}x{height}")
        if theta_resolution_degrees <= 0 or theta_resolution_degrees > 90:
            raise ConfigurationError(
                f"theta_resolution_degrees must be in (0, 90], got {theta_resolution_degrees}")
        if rho_resolution <= 0:
            raise ConfigurationError(f"rho_resolution must be positive, got {rho_resolution}")

        self.width = int(width)
        self.height = int(height)
        self.theta_resolution_degrees = theta_resolution_degrees
        self.rho_resolution = rho_resolution

        theta = self._build_theta(theta_resolution_degrees)
        rho = self._build_rho(self.width, self.height, rho_resolution)
        self._precompute_tables(theta, rho)

        logger.info(f"thetaLen: {self.theta_len}, rhoLen: {self.rho_len} "
                    f"for {self.width}x{self.height} image")

    @classmethod
    def from_tables(cls, theta: Sequence[float], rho: Sequence[float]) -> "LineTransform":
        """Build a transform from existing angle and offset arrays.

        The resulting transform can vote and score, but it has no image
        geometry, so realizable_offset_range() is not available.
        """
        theta = np.asarray(theta, dtype=np.float64)
        rho = np.asarray(rho, dtype=np.float64)
        if theta.ndim != 1 or len(theta) < 1:
            raise ConfigurationError("theta table must be a non-empty 1-D array")
        if np.any(np.diff(theta) <= 0):
            raise ConfigurationError("theta table must be strictly increasing")
        if rho.ndim != 1 or len(rho) < 2 or np.any(np.diff(rho) <= 0):
            raise GeometryError("rho table must be strictly increasing with at least two entries")

        transform = cls.__new__(cls)
        transform.width = None
        transform.height = None
        transform.theta_resolution_degrees = (
            float(np.degrees(theta[1] - theta[0])) if len(theta) > 1 else 180.0)
        transform.rho_resolution = float(rho[1] - rho[0])
        transform._precompute_tables(theta.copy(), rho.copy())
        return transform

    @staticmethod
    def _build_theta(theta_resolution_degrees: float) -> np.ndarray:
        # Quarter turn split into whole bins, repeated over the half turn
        half_len = 1 + int(math.ceil(90 / theta_resolution_degrees))
        theta_len = 2 * half_len - 2
        step_degrees = 90.0 / (half_len - 1)
        theta_degrees = -90.0 + np.arange(theta_len) * step_degrees
        return np.deg2rad(theta_degrees)

    @staticmethod
    def _build_rho(width: int, height: int, rho_resolution: float) -> np.ndarray:
        diagonal = math.sqrt((height - 1) ** 2 + (width - 1) ** 2)
        q = int(math.ceil(diagonal / rho_resolution))
        rho_len = 2 * q - 1
        if rho_len < 2:
            raise GeometryError(
                f"Image {width}x{height} is too small for rho_resolution {rho_resolution}")
        return np.linspace(-q * rho_resolution, q * rho_resolution, rho_len)

    def _precompute_tables(self, theta: np.ndarray, rho: np.ndarray) -> None:
        self.theta = _read_only(theta)
        self.rho = _read_only(rho)
        self.theta_len = len(theta)
        self.rho_len = len(rho)

        self.cos_theta = _read_only(np.cos(theta))
        self.sin_theta = _read_only(np.sin(theta))

        # Linear mapping from a continuous offset back to its bin
        self.first_rho = float(rho[0])
        self.slope = (self.rho_len - 1) / (rho[-1] - self.first_rho)

        self.scores = np.zeros((self.rho_len, self.theta_len), dtype=np.int32)

        if self.width is None:
            self.rho_idx_min = None
            self.rho_idx_max = None
            return

        # Only part of the (theta, rho) plane can be hit by a pixel of the image.
        # The extreme offsets for each angle come from two opposite corners.
        right, bottom = self.width - 1, self.height - 1
        negative = self.theta < 0
        min_x = np.zeros(self.theta_len)
        min_y = np.where(negative, bottom, 0)
        max_x = np.full(self.theta_len, right)
        max_y = np.where(negative, 0, bottom)
        self.rho_idx_min = _read_only(self._rho_indices(min_x, min_y))
        self.rho_idx_max = _read_only(self._rho_indices(max_x, max_y))

    def _rho_indices(self, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        rho = x * self.cos_theta + y * self.sin_theta
        return np.floor(self.slope * (rho - self.first_rho) + 0.5).astype(np.int64)

    @property
    def has_geometry(self) -> bool:
        return self.width is not None

    @property
    def theta_step(self) -> float:
        """Actual angle bin spacing in radians."""
        if self.theta_len < 2:
            return math.pi
        return float(self.theta[1] - self.theta[0])

    @property
    def rho_step(self) -> float:
        """Actual offset bin spacing in pixels."""
        return float(self.rho[1] - self.rho[0])

    def rho_index(self, theta_idx: int, x: float, y: float) -> int:
        """Offset bin of the line at angle bin theta_idx passing through (x, y)."""
        rho = x * self.cos_theta[theta_idx] + y * self.sin_theta[theta_idx]
        return int(math.floor(self.slope * (rho - self.first_rho) + 0.5))

    def realizable_offset_range(self, theta_idx: int) -> Tuple[int, int]:
        """Range of offset bins reachable by a line through the image at this angle.

        Args:
            theta_idx: Angle bin index

        Returns:
            Inclusive (min, max) offset bin indices

        Raises:
            GeometryError: if the transform was built without image dimensions
        """
        if not self.has_geometry:
            raise GeometryError("realizable_offset_range needs a transform built with width and height")
        return int(self.rho_idx_min[theta_idx]), int(self.rho_idx_max[theta_idx])

    def compute_scores(self, points: Optional[Sequence[Sequence[float]]]) -> np.ndarray:
        """Vote every point into every angle bin.

        Each point adds one vote, per angle bin, to the offset bin of the
        line through that point at that angle. Votes that fall outside the
        offset axis (points outside the image) are dropped.

        Args:
            points: Nx2 sequence of (x, y) pixel coordinates, may be empty

        Returns:
            The rho_len x theta_len score grid. It is owned by the transform
            and overwritten by the next call.
        """
        self.scores.fill(0)
        if points is None:
            return self.scores

        pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        if len(pts) == 0:
            return self.scores

        rho = np.outer(pts[:, 0], self.cos_theta) + np.outer(pts[:, 1], self.sin_theta)
        rho_idx = np.floor(self.slope * (rho - self.first_rho) + 0.5).astype(np.int64)
        theta_idx = np.broadcast_to(np.arange(self.theta_len), rho_idx.shape)

        inside = (rho_idx >= 0) & (rho_idx < self.rho_len)
        if not inside.all():
            logger.debug(f"Dropped {int((~inside).sum())} votes outside the offset axis")
        np.add.at(self.scores, (rho_idx[inside], theta_idx[inside]), 1)
        return self.scores

    def score_at(self, theta_idx: int, rho_idx: int) -> int:
        """Votes for the line (theta_idx, rho_idx) in the last computed grid."""
        return int(self.scores[rho_idx, theta_idx])

    def clamped_scores(self, max_votes: int = 3) -> np.ndarray:
        """Copy of the score grid with every count limited to max_votes."""
        return np.minimum(self.scores, max_votes)
