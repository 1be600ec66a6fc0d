from dataclasses import dataclass
from enum import Enum
from typing import Dict, Any, Optional, NamedTuple, Tuple
import numpy as np

@dataclass
class DetectionFrame:
   """Holds frame data and metadata for processing.

   This class bundles video frames with important metadata that helps
   track timing and frame dimensions throughout our processing pipeline.
   """
   frame: np.ndarray  # Original BGR frame
   timestamp: float   # Frame capture timestamp in seconds
   frame_id: int      # Unique sequential identifier for this frame
   width: int        # Frame width in pixels
   height: int       # Frame height in pixels

class TrackerPhase(Enum):
   COLD = 'cold'          # No frame processed yet
   TRACKING = 'tracking'  # At least one frame processed

class ArchState(NamedTuple):
   """A candidate arch: shared angle bin, first line offset bin, bin distance to the second line."""
   theta_idx: int
   rho1_idx: int
   rho_distance: int

   @property
   def rho2_idx(self) -> int:
      return self.rho1_idx + self.rho_distance

@dataclass
class ArchEstimate:
   """Best arch hypothesis for one frame.

   Index fields address the line transform tables; the physical fields are
   the same hypothesis resolved to radians and pixels. `theta` is the
   direction of the lines' normal (0 = vertical lines), `line_angle` is the
   direction of the lines themselves.
   """
   theta_idx: int
   rho1_idx: int
   rho_distance: int
   rho2_idx: int

   theta: float           # Normal angle of both lines in radians
   line_angle: float      # Line direction in radians (theta + 90 degrees)
   rho1: float            # Offset of the first line in pixels
   rho2: float            # Offset of the second line in pixels

   center_idx: int        # Angle bin the search window was centered on
   state_cost: int        # Evidence cost of this state in this frame (0 = perfect)
   accumulated_cost: int  # DP cost of the best path ending in this state
   num_states: int        # Size of the state space searched this frame

   @property
   def state(self) -> ArchState:
      return ArchState(self.theta_idx, self.rho1_idx, self.rho_distance)

   @property
   def rho_gap(self) -> float:
      """Distance between the two lines in pixels."""
      return self.rho2 - self.rho1

@dataclass
class Horizon:
   """Horizon estimate from sky/ground segmentation.

   The angle is in radians, counter-clockwise with the y axis pointing up,
   0 for a level horizon.
   """
   angle: float
   sky_center: Optional[Tuple[float, float]] = None     # (x, y) centroid of sky pixels
   ground_center: Optional[Tuple[float, float]] = None  # (x, y) centroid of ground pixels
   center_point: Optional[Tuple[int, int]] = None       # Point the horizon line passes through

   @property
   def angle_degrees(self) -> float:
      return float(np.degrees(self.angle))

@dataclass
class ArchDetectionData:
   """Contains results from arch detection processing."""
   estimate: Optional[ArchEstimate]   # Tracked arch, None only if processing failed
   markers: np.ndarray                # Nx2 marker centroids used for this frame
   horizon: Optional[Horizon]         # Horizon used to center the search window

@dataclass
class ProcessingMetrics:
    """Tracks performance metrics and detection quality."""
    frame_time: float              # Time to process frame in milliseconds
    processing_fps: float         # Current frames per second processing rate

    # Tracking quality metrics
    tracker_phase: str            # 'cold' or 'tracking'
    num_markers: int              # Marker centroids found in this frame
    num_states: int               # Candidate arches evaluated in this frame
    state_cost: int               # Evidence cost of the selected arch
    horizon_degrees: float        # Horizon angle used for the search window

    def to_dict(self) -> Dict[str, Any]:
        """Convert metrics to display-friendly format."""
        return {
            'frame_time': round(self.frame_time, 2),
            'processing_fps': round(self.processing_fps, 1),
            'tracker_phase': self.tracker_phase,
            'num_markers': self.num_markers,
            'num_states': self.num_states,
            'state_cost': self.state_cost,
            'horizon_degrees': round(self.horizon_degrees, 1)
        }
