import itertools
import math
import numpy as np
import pytest
from detection.arch_tracker import (ArchTracker, StateSpaceTable, MAX_TRANSITION_COST, _TRANSITION_BLOCK,
                                    transition_cost, transition_costs)
from detection.line_transform import LineTransform
from utils.config import ArchDetectorConfig
from utils.errors import ConfigurationError
from utils.types import ArchState, TrackerPhase
from conftest import WIDTH, HEIGHT

ARCH_STATE = ArchState(theta_idx=9, rho1_idx=50, rho_distance=8)


@pytest.fixture
def tracker(transform):
    return ArchTracker(transform, ArchDetectorConfig())


def test_state_space_order_and_bounds(transform):
    config = ArchDetectorConfig()
    table = StateSpaceTable.build(transform, config)

    assert len(table) == transform.theta_len
    assert table.margin_idx == 2
    for space in table.spaces:
        states = space.states
        # angle, then rho1, then distance
        keys = [tuple(s) for s in states]
        assert keys == sorted(keys)
        assert len(set(keys)) == len(keys)
        assert np.all(np.abs(states[:, 0] - space.center_idx) <= table.margin_idx)
        assert np.all(states[:, 2] >= config.rho_distance_min)
        assert np.all(states[:, 2] <= config.rho_distance_max)
        for theta_idx, rho1_idx, distance in states:
            lo, hi = transform.realizable_offset_range(theta_idx)
            assert lo <= rho1_idx and rho1_idx + distance <= hi

    assert table.max_num_states == max(len(space) for space in table.spaces)


def test_state_space_is_complete_for_vertical_center(transform):
    config = ArchDetectorConfig()
    space = StateSpaceTable.build(transform, config)[9]

    expected = []
    for theta_idx in range(7, 12):
        lo, hi = transform.realizable_offset_range(theta_idx)
        for rho1_idx in range(lo, hi + 1):
            for distance in range(config.rho_distance_min, config.rho_distance_max + 1):
                if rho1_idx + distance <= hi:
                    expected.append((theta_idx, rho1_idx, distance))

    assert [tuple(s) for s in space.states] == expected
    assert ARCH_STATE in [space.state(i) for i in range(len(space))]


def test_state_space_is_deterministic(transform):
    config = ArchDetectorConfig()
    first = StateSpaceTable.build(transform, config)
    second = StateSpaceTable.build(LineTransform(WIDTH, HEIGHT, 10, 10), config)

    assert first.num_states == second.num_states
    for a, b in zip(first.spaces, second.spaces):
        assert np.array_equal(a.states, b.states)


def test_lines_outside_image_widen_the_space(transform):
    strict = StateSpaceTable.build(transform, ArchDetectorConfig())
    loose = StateSpaceTable.build(transform, ArchDetectorConfig(allow_line_outside_image=True))

    assert loose.rho1_idx_min[9] == 39 - 10
    assert all(len(l) > len(s) for l, s in zip(loose.spaces, strict.spaces))
    for space in loose.spaces:
        assert space.states[:, 1].min() >= 0
        assert (space.states[:, 1] + space.states[:, 2]).max() < transform.rho_len


def test_empty_state_space_is_rejected(transform):
    config = ArchDetectorConfig(rho_distance_min=60, rho_distance_max=70)
    with pytest.raises(ConfigurationError):
        StateSpaceTable.build(transform, config)


def test_table_must_match_transform(transform):
    table = StateSpaceTable.build(transform, ArchDetectorConfig())
    other = LineTransform(WIDTH, HEIGHT, 5, 10)
    with pytest.raises(ConfigurationError):
        ArchTracker(other, ArchDetectorConfig(theta_resolution_degrees=5), table)


def test_table_must_match_tracker_parameters(transform):
    table = StateSpaceTable.build(transform, ArchDetectorConfig())
    assert table.matches(ArchDetectorConfig(normalize_accumulated_cost=False))

    for overrides in ({'angle_degrees_margin': 30}, {'rho_distance_max': 9}, {'rho_resolution': 20},
                      {'allow_line_outside_image': True}):
        config = ArchDetectorConfig(**overrides)
        assert not table.matches(config)
        with pytest.raises(ConfigurationError):
            ArchTracker(transform, config, table)


@pytest.mark.parametrize("previous,new,expected", [
    ((9, 50, 8), (9, 50, 8), 0),
    ((9, 50, 8), (10, 53, 8), 1),   # rotation with rho1 drift inside the slack
    ((9, 50, 8), (10, 55, 8), 3),   # drift beyond the slack
    ((9, 50, 8), (8, 47, 8), 1),
    ((9, 50, 8), (8, 52, 8), 3),    # opposite directions pay the full drift
    ((9, 50, 8), (9, 48, 8), 2),
    ((9, 50, 8), (9, 50, 10), 2),
    ((9, 50, 8), (9, 51, 9), 2),
    ((9, 50, 8), (14, 50, 8), 3),   # capped
    ((9, 50, 8), (2, 20, 4), 3),
])
def test_transition_cost(previous, new, expected):
    assert transition_cost(ArchState(*previous), ArchState(*new)) == expected


def test_transition_cost_is_capped():
    deltas = range(-6, 7)
    base = ArchState(9, 50, 8)
    for da, do, dd in itertools.product(deltas, deltas, deltas):
        cost = transition_cost(base, ArchState(9 + da, 50 + do, 8 + dd))
        assert 0 <= cost <= MAX_TRANSITION_COST


def test_vectorized_transitions_match_scalar(transform):
    table = StateSpaceTable.build(transform, ArchDetectorConfig())
    previous = table[8].states[::37]
    new = table[10].states[::41]

    matrix = transition_costs(previous, new)
    assert matrix.shape == (len(new), len(previous))
    for i, j in itertools.product(range(len(new)), range(len(previous))):
        expected = transition_cost(ArchState(*previous[j]), ArchState(*new[i]))
        assert matrix[i, j] == expected
    assert matrix.max() <= MAX_TRANSITION_COST


@pytest.mark.parametrize("degrees,expected", [
    (0, 9), (30, 6), (-30, 12), (10, 8), (90, 0), (-90, 0), (180, 9), (84, 1), (-84, 17), (-86, 0),
])
def test_center_index(tracker, degrees, expected):
    assert tracker.center_index(math.radians(degrees)) == expected


def test_cold_start_uses_state_costs_only(tracker, transform, arch_points):
    assert tracker.phase is TrackerPhase.COLD
    assert tracker.accumulated_costs is None

    scores = transform.compute_scores(arch_points)
    tracker.update(scores, 0.0)

    assert tracker.phase is TrackerPhase.TRACKING
    space = tracker.previous_space
    clamped = np.minimum(scores, 3)
    expected = 6 - clamped[space.rho1_idx, space.theta_idx] \
                 - clamped[space.rho1_idx + space.rho_distance, space.theta_idx]
    assert np.array_equal(tracker.last_state_costs, expected)
    assert np.array_equal(tracker.accumulated_costs, tracker.last_state_costs)


def test_state_cost_clamps_votes(tracker, transform):
    x = float(transform.rho[50])
    points = [(x, 100)] * 5 + [(x + 8 * transform.rho_step, 100)] * 4
    scores = transform.compute_scores(points)
    assert scores[:, 9].max() == 5

    costs = tracker.state_costs(scores, tracker.table[9])
    assert costs.min() == 0
    assert np.all(costs >= 0) and np.all(costs <= 6)


def test_detects_clean_arch(tracker, transform, arch_points):
    estimate = tracker.update(transform.compute_scores(arch_points), 0.0)

    assert estimate.state == ARCH_STATE
    assert estimate.state_cost == 0
    assert estimate.accumulated_cost == 0
    assert estimate.center_idx == 9
    assert math.degrees(estimate.line_angle) == pytest.approx(90)
    assert estimate.theta == 0.0
    assert abs(estimate.rho_gap - 80) < transform.rho_step
    assert estimate.rho2_idx == 58
    assert estimate.num_states == len(tracker.table[9])


def test_estimate_survives_missing_markers(tracker, transform, arch_points):
    previous = tracker.update(transform.compute_scores(arch_points), 0.0).state

    for _ in range(5):
        estimate = tracker.update(transform.compute_scores([]), 0.0)
        assert estimate.state_cost == 6
        assert abs(estimate.theta_idx - previous.theta_idx) <= 1
        assert abs(estimate.rho1_idx - previous.rho1_idx) <= 3
        assert estimate.state == ARCH_STATE
        previous = estimate.state


def test_horizon_rotation_keeps_arch_reachable(transform, arch_points):
    tracker = ArchTracker(transform, ArchDetectorConfig(angle_degrees_margin=30))
    first = tracker.update(transform.compute_scores(arch_points), 0.0)
    second = tracker.update(transform.compute_scores(arch_points), math.radians(30))

    assert first.center_idx == 9
    assert second.center_idx == 6
    assert abs(second.theta_idx - second.center_idx) <= tracker.table.margin_idx
    assert second.state == first.state
    assert second.accumulated_cost == 0


def test_no_markers_from_the_start(tracker, transform):
    estimate = tracker.update(transform.compute_scores([]), 0.0)
    assert estimate.state_cost == 6
    assert np.all(tracker.accumulated_costs == 6)


def test_accumulated_costs_are_normalized(tracker, transform, arch_points):
    tracker.update(transform.compute_scores(arch_points), 0.0)
    for _ in range(5):
        estimate = tracker.update(transform.compute_scores([]), 0.0)
        assert tracker.accumulated_costs.min() == 0
        assert estimate.accumulated_cost == 6
    assert tracker.frame_count == 6


def test_raw_accumulated_costs_grow(transform, arch_points):
    tracker = ArchTracker(transform, ArchDetectorConfig(normalize_accumulated_cost=False))
    tracker.update(transform.compute_scores(arch_points), 0.0)
    for _ in range(5):
        estimate = tracker.update(transform.compute_scores([]), 0.0)

    assert tracker.accumulated_costs.min() == 30
    assert estimate.accumulated_cost == 30
    assert estimate.state == ARCH_STATE


def test_trackers_share_geometry(transform, arch_points):
    wide = ArchTracker(transform, ArchDetectorConfig(angle_degrees_margin=30))
    narrow = ArchTracker(transform, ArchDetectorConfig(angle_degrees_margin=10))
    theta_before = transform.theta.copy()

    scores = transform.compute_scores(arch_points)
    assert wide.update(scores, 0.0).state == ARCH_STATE
    assert narrow.update(scores, 0.0).state == ARCH_STATE
    assert len(wide.previous_space) > len(narrow.previous_space)
    assert np.array_equal(transform.theta, theta_before)


def test_score_grid_shape_is_checked(tracker):
    with pytest.raises(ValueError):
        tracker.update(np.zeros((10, 10), dtype=np.int32), 0.0)


def test_line_endpoints(tracker, transform, arch_points):
    estimate = tracker.update(transform.compute_scores(arch_points), 0.0)
    (a, b), (c, d) = tracker.line_endpoints(estimate)
    assert a[0] == b[0] == int(estimate.rho1)
    assert c[0] == d[0] == int(estimate.rho2)
    assert (a[1], b[1]) == (0, HEIGHT - 1)


def _expected_accumulated(previous_states, previous_accumulated, states, scores):
    """Recurrence evaluated state by state with the scalar transition cost."""
    clamped = np.minimum(scores, 3)
    previous = [ArchState(*map(int, s)) for s in previous_states]
    expected = np.empty(len(states), dtype=np.int64)
    for i, s in enumerate(states):
        new = ArchState(*map(int, s))
        cost = 6 - clamped[new.rho1_idx, new.theta_idx] - clamped[new.rho2_idx, new.theta_idx]
        expected[i] = cost + min(int(acc) + transition_cost(prev, new)
                                 for prev, acc in zip(previous, previous_accumulated))
    return expected


@pytest.mark.parametrize("normalize", [False, True])
def test_accumulated_costs_follow_recurrence(normalize):
    # Coarse offsets keep the state-by-state check small
    transform = LineTransform(WIDTH, HEIGHT, 10, 20)
    config = ArchDetectorConfig(rho_resolution=20, angle_degrees_margin=20,
                                normalize_accumulated_cost=normalize)
    tracker = ArchTracker(transform, config)
    rng = np.random.default_rng(7)

    def random_scores():
        return rng.integers(0, 5, size=(transform.rho_len, transform.theta_len)).astype(np.int32)

    tracker.update(random_scores(), 0.0)
    # The horizon turns, moving the window from center 9 to 8 and then 7
    for degrees in (10, 20):
        previous_states = tracker.previous_space.states
        previous_accumulated = tracker.accumulated_costs
        scores = random_scores()

        estimate = tracker.update(scores, math.radians(degrees))
        space = tracker.previous_space
        assert len(space) > _TRANSITION_BLOCK
        expected = _expected_accumulated(previous_states, previous_accumulated, space.states, scores)

        assert estimate.accumulated_cost == expected.min()
        assert estimate.state == space.state(int(np.argmin(expected)))
        if normalize:
            expected = expected - expected.min()
        assert np.array_equal(tracker.accumulated_costs, expected)
