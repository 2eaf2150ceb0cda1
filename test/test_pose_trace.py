"""
Pose trace / synchronizer tests

Tests for:
- millisecond rounding of stamps (ties, carry into seconds)
- unavailable lookups (no trace, empty trace, out of range)
- nearest-neighbour association, tie breaking, trace replacement
"""

import numpy as np
import pytest

from surfel_mapper.core.pose_trace import PoseSynchronizer, PoseTrace, round_stamp
from surfel_mapper.core.types import Pose, Stamp

from conftest import make_pose


def _trace_ms(*millis, sec=10):
    """Trace with poses at sec + millis; pose origin x encodes the index."""
    poses = [
        Pose.from_arrays([1.0, 0.0, 0.0, 0.0], [float(i), 0.0, 0.0], Stamp(sec, m * 1_000_000))
        for i, m in enumerate(millis)
    ]
    return PoseTrace(poses)


# =============================================================================
# Rounding
# =============================================================================


class TestRoundStamp:

    def test_exact_half_millisecond_rounds_up(self):
        assert round_stamp(Stamp(5, 1_500_000)) == Stamp(5, 2_000_000)

    def test_above_half_rounds_up(self):
        assert round_stamp(Stamp(5, 1_700_001)) == Stamp(5, 2_000_000)

    def test_below_half_rounds_down(self):
        assert round_stamp(Stamp(5, 1_499_999)) == Stamp(5, 1_000_000)

    def test_whole_millisecond_unchanged(self):
        assert round_stamp(Stamp(5, 3_000_000)) == Stamp(5, 3_000_000)

    def test_carry_into_next_second(self):
        assert round_stamp(Stamp(100, 999_501_341)) == Stamp(101, 0)
        assert round_stamp(Stamp(100, 999_500_000)) == Stamp(101, 0)

    def test_no_carry_below_half(self):
        assert round_stamp(Stamp(100, 999_499_999)) == Stamp(100, 999_000_000)


# =============================================================================
# Synchronizer
# =============================================================================


class TestPoseSynchronizer:

    def test_no_trace_is_unavailable(self):
        sync = PoseSynchronizer()
        assert sync.lookup(Stamp(10)) is None

    def test_empty_trace_is_unavailable(self):
        sync = PoseSynchronizer(PoseTrace([]))
        assert sync.lookup(Stamp(10)) is None

    def test_outside_range_is_unavailable(self):
        sync = PoseSynchronizer(_trace_ms(0, 100, 200))
        assert sync.lookup(Stamp(9, 998_000_000)) is None
        assert sync.lookup(Stamp(10, 202_000_000)) is None

    def test_rounding_brings_stamp_into_range(self):
        trace = _trace_ms(0, 100, 200)
        sync = PoseSynchronizer(trace)
        # 9.9995 s rounds to 10.000 s
        assert sync.lookup(Stamp(9, 999_500_000)) is trace[0]
        # 10.2004 s rounds to 10.200 s
        assert sync.lookup(Stamp(10, 200_400_000)) is trace[2]

    def test_nearest_pose_is_returned_verbatim(self):
        trace = _trace_ms(0, 100, 200)
        sync = PoseSynchronizer(trace)
        assert sync.lookup(Stamp(10, 40_000_000)) is trace[0]
        assert sync.lookup(Stamp(10, 60_000_000)) is trace[1]
        assert sync.lookup(Stamp(10, 160_000_000)) is trace[2]

    def test_tie_goes_to_earlier_pose(self):
        trace = _trace_ms(0, 100, 200)
        sync = PoseSynchronizer(trace)
        assert sync.lookup(Stamp(10, 50_000_000)) is trace[0]
        assert sync.lookup(Stamp(10, 150_000_000)) is trace[1]

    def test_single_pose_trace(self):
        trace = _trace_ms(100)
        sync = PoseSynchronizer(trace)
        assert sync.lookup(Stamp(10, 100_200_000)) is trace[0]
        assert sync.lookup(Stamp(10, 101_000_000)) is None

    def test_trace_replacement(self):
        sync = PoseSynchronizer(_trace_ms(0, 100))
        assert sync.lookup(Stamp(20)) is None
        new_trace = PoseTrace([make_pose(19.0), make_pose(21.0)])
        sync.set_trace(new_trace)
        assert sync.lookup(Stamp(20)) is new_trace[0]
        assert sync.lookup(Stamp(10)) is None

    def test_dense_trace_matches_brute_force(self):
        rng = np.random.default_rng(42)
        millis = np.sort(rng.choice(10_000, size=300, replace=False))
        trace = PoseTrace([make_pose(100.0 + m / 1000.0) for m in millis])
        rounded = np.array([round_stamp(p.stamp).to_nanoseconds() for p in trace])

        for q in rng.integers(millis[0] * 1_000_000, millis[-1] * 1_000_000, size=200):
            stamp = Stamp.from_nanoseconds(100 * 1_000_000_000 + int(q))
            t = round_stamp(stamp).to_nanoseconds()
            expected = int(np.argmin(np.abs(rounded - t)))
            assert trace.nearest_index(stamp) == expected

    def test_dense_trace_out_of_range(self):
        trace = PoseTrace([make_pose(1.0 + 0.01 * i) for i in range(50)])
        assert trace.lookup(Stamp.from_sec(0.5)) is None
        assert trace.lookup(Stamp.from_sec(2.0)) is None
        pose = trace.lookup(Stamp.from_sec(1.2))
        assert pose is not None
        assert any(pose is p for p in trace)


class TestStamp:

    def test_nanosecond_roundtrip(self):
        s = Stamp(12, 345_678_901)
        assert Stamp.from_nanoseconds(s.to_nanoseconds()) == s

    def test_ordering(self):
        assert Stamp(1, 999_999_999) < Stamp(2, 0)

    @pytest.mark.parametrize("t", [0.0, 1.25, 1408952265.954])
    def test_from_sec(self, t):
        assert Stamp.from_sec(t).to_sec() == pytest.approx(t, abs=1e-6)
