# src/detection/arch_tracker.py

"""Dynamic-programming tracker for the arch over a video sequence.

An arch is two parallel lines. In each frame it is described by a state
(theta_idx, rho1_idx, rho_distance): the angle bin shared by both lines,
the offset bin of the first line and the bin distance to the second one.

For every state of the current frame the tracker computes

    state_cost = 6 - votes(theta, rho1) - votes(theta, rho1 + rho_distance)

with votes clamped to 3, the number of plates on each side of the arch.
The accumulated cost of a state is its state cost plus the cheapest way to
reach it from any state of the previous frame:

    accumulated(s) = state_cost(s) + min over s' of (previous(s') + transition(s', s))

The selected arch is the state with the minimum accumulated cost. The
states searched are limited to angles close to the normal of the horizon
and to lines that can actually cross the image, which keeps the
current x previous evaluation affordable every frame.
"""

import logging
import math
import numpy as np
from dataclasses import dataclass
from typing import List, Optional, Tuple
from .line_transform import LineTransform
from utils.config import ArchDetectorConfig
from utils.errors import ConfigurationError
from utils.types import ArchEstimate, ArchState, TrackerPhase

logger = logging.getLogger("ArchTracker")

MAX_VOTES = 3                # Plates on each side of the arch
PERFECT_MATCH_COST = 2 * MAX_VOTES
ROTATION_RHO_SLACK = 3       # Free rho1 drift when it moves with the angle
MAX_TRANSITION_COST = 3

# Current states evaluated per block against the whole previous state space
_TRANSITION_BLOCK = 256

# Config fields that determine the enumerated states
_TABLE_PARAMETERS = ('theta_resolution_degrees', 'rho_resolution', 'angle_degrees_margin',
                     'rho_distance_min', 'rho_distance_max', 'allow_line_outside_image')


def transition_cost(previous: ArchState, new: ArchState) -> int:
    """Penalty for moving from a previous-frame state to a new state.

    A rotating arch shifts the offset of its near line even if the arch
    itself barely moves, so when angle and rho1 change in the same
    direction the first ROTATION_RHO_SLACK bins of rho1 drift are free.
    The total is capped so that a new scene can still be picked up quickly.
    """
    diff_theta = new.theta_idx - previous.theta_idx
    diff_rho1 = new.rho1_idx - previous.rho1_idx

    if diff_theta > 0 and diff_rho1 > 0:
        cost_rho1 = max(0, diff_rho1 - ROTATION_RHO_SLACK)
    elif diff_theta < 0 and diff_rho1 < 0:
        cost_rho1 = max(0, -diff_rho1 - ROTATION_RHO_SLACK)
    else:
        cost_rho1 = abs(diff_rho1)

    cost = abs(diff_theta) + cost_rho1 + abs(new.rho_distance - previous.rho_distance)
    return min(MAX_TRANSITION_COST, cost)


def transition_costs(previous_states: np.ndarray, new_states: np.ndarray) -> np.ndarray:
    """Vectorized transition_cost for every (new, previous) pair.

    Args:
        previous_states: Mx3 array of (theta_idx, rho1_idx, rho_distance)
        new_states: Nx3 array of (theta_idx, rho1_idx, rho_distance)

    Returns:
        NxM array, entry [i, j] is the cost of moving from previous_states[j]
        to new_states[i]
    """
    new_states = np.asarray(new_states, dtype=np.int64).reshape(-1, 3)
    previous_states = np.asarray(previous_states, dtype=np.int64).reshape(-1, 3)

    diff_theta = new_states[:, 0:1] - previous_states[:, 0]
    diff_rho1 = new_states[:, 1:2] - previous_states[:, 1]
    diff_distance = new_states[:, 2:3] - previous_states[:, 2]

    cost_rho1 = np.abs(diff_rho1)
    same_direction = ((diff_theta > 0) & (diff_rho1 > 0)) | ((diff_theta < 0) & (diff_rho1 < 0))
    cost_rho1 = np.where(same_direction, np.maximum(0, cost_rho1 - ROTATION_RHO_SLACK), cost_rho1)

    cost = np.abs(diff_theta) + cost_rho1 + np.abs(diff_distance)
    return np.minimum(MAX_TRANSITION_COST, cost)


@dataclass(frozen=True)
class StateSpace:
    """Ordered enumeration of the states searched for one window center.

    States are sorted by angle, then rho1, then distance. The DP refers to
    states only by their position in this order.
    """
    center_idx: int
    states: np.ndarray    # Nx3 read-only array of (theta_idx, rho1_idx, rho_distance)

    def __len__(self) -> int:
        return len(self.states)

    @property
    def theta_idx(self) -> np.ndarray:
        return self.states[:, 0]

    @property
    def rho1_idx(self) -> np.ndarray:
        return self.states[:, 1]

    @property
    def rho_distance(self) -> np.ndarray:
        return self.states[:, 2]

    def state(self, index: int) -> ArchState:
        theta_idx, rho1_idx, rho_distance = self.states[index]
        return ArchState(int(theta_idx), int(rho1_idx), int(rho_distance))


class StateSpaceTable:
    """Per-center state spaces, built once from the line transform geometry.

    The table is never modified after build(), so it can be shared by any
    number of trackers using the same transform and configuration.
    """

    def __init__(self, theta_idx_min: np.ndarray, theta_idx_max: np.ndarray,
                 rho1_idx_min: np.ndarray, rho1_idx_max: np.ndarray,
                 spaces: List[StateSpace], margin_idx: int,
                 config: ArchDetectorConfig):
        self.theta_idx_min = theta_idx_min
        self.theta_idx_max = theta_idx_max
        self.rho1_idx_min = rho1_idx_min
        self.rho1_idx_max = rho1_idx_max
        self.spaces = spaces
        self.margin_idx = margin_idx
        self.config = config

    @classmethod
    def build(cls, transform: LineTransform, config: ArchDetectorConfig) -> "StateSpaceTable":
        """Enumerate the valid states for every possible window center.

        Args:
            transform: Line transform built with image dimensions
            config: Tracker parameters

        Raises:
            ConfigurationError: if the parameters leave some center without states
        """
        config.validate()
        theta_len, rho_len = transform.theta_len, transform.rho_len
        d_min, d_max = config.rho_distance_min, config.rho_distance_max

        # The horizon estimate is noisy, so look around the expected angle
        margin_idx = int(math.ceil(config.angle_degrees_margin / config.theta_resolution_degrees))
        centers = np.arange(theta_len)
        theta_idx_min = np.maximum(0, centers - margin_idx)
        theta_idx_max = np.minimum(theta_len - 1, centers + margin_idx)

        rho1_idx_min = np.empty(theta_len, dtype=np.int64)
        rho1_idx_max = np.empty(theta_len, dtype=np.int64)
        for theta_idx in range(theta_len):
            lo, hi = transform.realizable_offset_range(theta_idx)
            if config.allow_line_outside_image:
                lo = max(0, lo - (d_max - 1))
                hi = min(rho_len - 1, hi + (d_max - 1))
            rho1_idx_min[theta_idx] = lo
            # The second line must still fit below hi
            rho1_idx_max[theta_idx] = hi - d_min

        blocks = [cls._enumerate_angle(theta_idx, rho1_idx_min[theta_idx],
                                       rho1_idx_max[theta_idx], d_min, d_max)
                  for theta_idx in range(theta_len)]

        spaces = []
        for center_idx in range(theta_len):
            window = blocks[theta_idx_min[center_idx]:theta_idx_max[center_idx] + 1]
            states = np.concatenate(window, axis=0)
            if len(states) == 0:
                raise ConfigurationError(
                    f"No valid arch states for angle {np.degrees(transform.theta[center_idx]):.1f} deg: "
                    f"check angle_degrees_margin, rho_distance_min and rho_distance_max")
            states.setflags(write=False)
            spaces.append(StateSpace(center_idx, states))

        for space in spaces:
            c = space.center_idx
            logger.debug(f"Center {c} (angles {theta_idx_min[c]}..{theta_idx_max[c]}): "
                         f"{len(space)} states")

        table = cls(theta_idx_min, theta_idx_max, rho1_idx_min, rho1_idx_max, spaces, margin_idx,
                    config)
        logger.info(f"State space built: {theta_len} centers, max {table.max_num_states} states")
        return table

    @staticmethod
    def _enumerate_angle(theta_idx: int, rho1_lo: int, rho1_hi: int,
                         d_min: int, d_max: int) -> np.ndarray:
        if rho1_hi < rho1_lo:
            return np.empty((0, 3), dtype=np.int64)

        rho1 = np.arange(rho1_lo, rho1_hi + 1, dtype=np.int64)
        # rho1_hi + d_min is the last offset bin the second line may use
        distance_max = np.minimum(d_max, rho1_hi + d_min - rho1)
        counts = distance_max - d_min + 1
        total = int(counts.sum())

        starts = np.repeat(np.cumsum(counts) - counts, counts)
        states = np.empty((total, 3), dtype=np.int64)
        states[:, 0] = theta_idx
        states[:, 1] = np.repeat(rho1, counts)
        states[:, 2] = d_min + np.arange(total) - starts
        return states

    def matches(self, config: ArchDetectorConfig) -> bool:
        """True if config would enumerate the same states as this table."""
        return all(getattr(self.config, name) == getattr(config, name)
                   for name in _TABLE_PARAMETERS)

    def __getitem__(self, center_idx: int) -> StateSpace:
        return self.spaces[center_idx]

    def __len__(self) -> int:
        return len(self.spaces)

    @property
    def num_states(self) -> List[int]:
        return [len(space) for space in self.spaces]

    @property
    def max_num_states(self) -> int:
        return max(self.num_states)


class ArchTracker:
    """Tracks the best arch hypothesis across frames.

    The tracker starts COLD. The first update() scores every state on its
    own evidence and switches to TRACKING, which it never leaves; later
    updates run the DP recurrence against the previous frame's costs.
    A fresh tracker is the way to start over.
    """

    def __init__(self, transform: LineTransform,
                 config: Optional[ArchDetectorConfig] = None,
                 table: Optional[StateSpaceTable] = None):
        """Initialize tracker tables.

        Args:
            transform: Line transform with image geometry
            config: Tracker parameters, defaults if omitted
            table: Prebuilt state space table for this transform and config,
                   built here if omitted
        """
        self.config = config or ArchDetectorConfig()
        self.transform = transform
        self.table = table if table is not None else StateSpaceTable.build(transform, self.config)
        if len(self.table) != transform.theta_len:
            raise ConfigurationError("State space table does not match the line transform")
        if not self.table.matches(self.config):
            raise ConfigurationError("State space table was built with different tracker parameters")

        self._phase = TrackerPhase.COLD
        self._previous_space: Optional[StateSpace] = None
        self._accumulated: Optional[np.ndarray] = None
        self._last_state_costs: Optional[np.ndarray] = None
        self._frame_count = 0

    @property
    def phase(self) -> TrackerPhase:
        return self._phase

    @property
    def frame_count(self) -> int:
        return self._frame_count

    @property
    def previous_center_idx(self) -> Optional[int]:
        if self._previous_space is None:
            return None
        return self._previous_space.center_idx

    @property
    def previous_space(self) -> Optional[StateSpace]:
        return self._previous_space

    @property
    def accumulated_costs(self) -> Optional[np.ndarray]:
        """Copy of the accumulated costs of the last frame's state space."""
        return None if self._accumulated is None else self._accumulated.copy()

    @property
    def last_state_costs(self) -> Optional[np.ndarray]:
        """Copy of the per-state evidence costs of the last frame."""
        return None if self._last_state_costs is None else self._last_state_costs.copy()

    def center_index(self, horizon_angle: float) -> int:
        """Angle bin of the arch expected for a given horizon.

        The arch lines stand perpendicular to the horizon. The horizon angle
        is measured with the y axis up while the transform works in image
        coordinates, which flips the sign of the angle.

        Args:
            horizon_angle: Horizon orientation in radians, 0 = level

        Returns:
            Angle bin index of the search window center
        """
        theta_center = math.pi / 2 - float(np.mod(horizon_angle + math.pi / 2, math.pi))
        if theta_center >= math.pi / 2:
            theta_center -= math.pi
        theta = self.transform.theta
        idx = int(math.floor((theta_center - theta[0]) / self.transform.theta_step + 0.5))
        # Bins just below +90 degrees round onto the -90 degree bin, the same line family
        return idx % self.transform.theta_len

    def state_costs(self, scores: np.ndarray, space: StateSpace) -> np.ndarray:
        """Evidence cost of every state in a state space.

        Args:
            scores: rho_len x theta_len vote grid from the line transform
            space: States to evaluate

        Returns:
            Cost per state, 0 for two lines with three votes each, 6 for no votes
        """
        clamped = np.minimum(scores, MAX_VOTES)
        theta_idx = space.theta_idx
        votes1 = clamped[space.rho1_idx, theta_idx]
        votes2 = clamped[space.rho1_idx + space.rho_distance, theta_idx]
        return (PERFECT_MATCH_COST - votes1 - votes2).astype(np.int64)

    def update(self, scores: np.ndarray, horizon_angle: float) -> ArchEstimate:
        """Process one frame of line scores.

        Args:
            scores: rho_len x theta_len vote grid for this frame
            horizon_angle: Horizon orientation in radians for this frame

        Returns:
            Best arch estimate for this frame. An empty grid still produces
            an estimate; judging its confidence is up to the caller.
        """
        expected_shape = (self.transform.rho_len, self.transform.theta_len)
        if scores.shape != expected_shape:
            raise ValueError(f"Score grid has shape {scores.shape}, expected {expected_shape}")

        center_idx = self.center_index(horizon_angle)
        space = self.table[center_idx]
        costs = self.state_costs(scores, space)

        if self._phase is TrackerPhase.COLD:
            accumulated = costs.copy()
            self._phase = TrackerPhase.TRACKING
        else:
            accumulated = costs + self._best_predecessor_costs(space)

        best = int(np.argmin(accumulated))
        best_accumulated = int(accumulated[best])
        if self.config.normalize_accumulated_cost and self._frame_count > 0:
            # Minimum becomes 0; the argmin is unchanged
            accumulated -= best_accumulated

        self._previous_space = space
        self._accumulated = accumulated
        self._last_state_costs = costs
        self._frame_count += 1

        estimate = self._to_estimate(space, best, int(costs[best]), best_accumulated)
        logger.debug(f"Frame {self._frame_count}: center {center_idx}, {len(space)} states, "
                     f"thetaIdx {estimate.theta_idx}, rho1Idx {estimate.rho1_idx}, "
                     f"rhoDistance {estimate.rho_distance}, cost {estimate.state_cost}, "
                     f"accumulated {best_accumulated}")
        return estimate

    def _best_predecessor_costs(self, space: StateSpace) -> np.ndarray:
        """min over previous states of (previous accumulated + transition) per new state."""
        previous_states = self._previous_space.states
        previous = self._accumulated
        best = np.empty(len(space), dtype=np.int64)
        for start in range(0, len(space), _TRANSITION_BLOCK):
            stop = min(start + _TRANSITION_BLOCK, len(space))
            transitions = transition_costs(previous_states, space.states[start:stop])
            best[start:stop] = (transitions + previous).min(axis=1)
        return best

    def _to_estimate(self, space: StateSpace, index: int,
                     state_cost: int, accumulated_cost: int) -> ArchEstimate:
        state = space.state(index)
        theta = float(self.transform.theta[state.theta_idx])
        return ArchEstimate(
            theta_idx=state.theta_idx,
            rho1_idx=state.rho1_idx,
            rho_distance=state.rho_distance,
            rho2_idx=state.rho2_idx,
            theta=theta,
            line_angle=theta + math.pi / 2,
            rho1=float(self.transform.rho[state.rho1_idx]),
            rho2=float(self.transform.rho[state.rho2_idx]),
            center_idx=space.center_idx,
            state_cost=state_cost,
            accumulated_cost=accumulated_cost,
            num_states=len(space)
        )

    def line_endpoints(self, estimate: ArchEstimate) -> Tuple[Tuple[Tuple[int, int], Tuple[int, int]], ...]:
        """Image-border endpoints of both arch lines, for drawing by the caller."""
        return tuple(self._line_endpoints(estimate.theta_idx, rho)
                     for rho in (estimate.rho1, estimate.rho2))

    def _line_endpoints(self, theta_idx: int, rho: float) -> Tuple[Tuple[int, int], Tuple[int, int]]:
        cos_t = self.transform.cos_theta[theta_idx]
        sin_t = self.transform.sin_theta[theta_idx]
        right = self.transform.width - 1
        bottom = self.transform.height - 1
        if abs(sin_t) < 1e-9:
            return (int(rho), 0), (int(rho), bottom)
        return (0, int(rho / sin_t)), (right, int((rho - right * cos_t) / sin_t))
