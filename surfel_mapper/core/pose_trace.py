"""
Pose trace and temporal pose synchronizer.

Keyframe clouds and trajectory poses are stamped independently, so two stamps
that describe the same instant may differ by a few microseconds. Both sides are
rounded to whole milliseconds before comparison and the nearest trajectory
pose is returned verbatim (no interpolation).
"""

import logging
from typing import Optional, Sequence

import numpy as np

from surfel_mapper.core.types import Pose, Stamp, NSEC_PER_SEC


NSEC_PER_MSEC = 1_000_000
HALF_MSEC = NSEC_PER_MSEC // 2


def round_stamp(stamp: Stamp) -> Stamp:
    """
    Round time stamp to whole milliseconds

    Remainders of 0.5 ms and above round up; a round-up that reaches a full
    second carries into `sec`.

    Args:
        stamp: time stamp to round

    Returns:
        rounded time stamp
    """
    remainder = stamp.nanosec % NSEC_PER_MSEC
    nanosec = stamp.nanosec - remainder
    sec = stamp.sec
    if remainder >= HALF_MSEC:
        nanosec += NSEC_PER_MSEC
        if nanosec == NSEC_PER_SEC:
            sec += 1
            nanosec = 0
    return Stamp(sec, nanosec)


def _rounded_ns(stamp: Stamp) -> int:
    return round_stamp(stamp).to_nanoseconds()


class PoseTrace:
    """
    Immutable, time-ordered sequence of poses

    Stamps are assumed non-decreasing and are not re-sorted. Rounded stamps are
    computed once on construction.
    """

    def __init__(self, poses: Sequence[Pose] = ()):
        self._poses = tuple(poses)
        self._rounded = np.array([_rounded_ns(p.stamp) for p in self._poses], dtype=np.int64)

    def __len__(self):
        return len(self._poses)

    def __getitem__(self, index) -> Pose:
        return self._poses[index]

    def __iter__(self):
        return iter(self._poses)

    @property
    def poses(self):
        return self._poses

    def rounded_bounds(self):
        """(first, last) rounded stamps, or None for an empty trace"""
        if not self._poses:
            return None
        return Stamp.from_nanoseconds(int(self._rounded[0])), Stamp.from_nanoseconds(int(self._rounded[-1]))

    def covers(self, stamp: Stamp) -> bool:
        if not self._poses:
            return False
        t = _rounded_ns(stamp)
        return bool(self._rounded[0] <= t <= self._rounded[-1])

    def nearest_index(self, stamp: Stamp) -> Optional[int]:
        """
        Index of the pose nearest in rounded time, or None outside the trace

        Binary search finds the tightest bracket [i, i+1] with
        rounded[i] <= t <= rounded[i+1]; ties go to the earlier index.
        """
        if not self.covers(stamp):
            return None
        n = len(self._poses)
        if n == 1:
            return 0

        t = _rounded_ns(stamp)
        i = int(np.searchsorted(self._rounded, t, side='right')) - 1
        i = min(max(i, 0), n - 2)
        j = i + 1

        dist_i = t - int(self._rounded[i])
        dist_j = int(self._rounded[j]) - t
        return i if dist_i <= dist_j else j

    def lookup(self, stamp: Stamp) -> Optional[Pose]:
        k = self.nearest_index(stamp)
        return None if k is None else self._poses[k]


class PoseSynchronizer:
    """
    Holds the live pose trace and resolves cloud stamps against it

    The trace is replaced wholesale on each trajectory update; every lookup
    works on the trace reference taken at call time.
    """

    def __init__(self, trace: Optional[PoseTrace] = None, ros_logger=None):
        self._trace = trace

        # Logger (supports both ROS and Python logging)
        if ros_logger is not None:
            self.logger = ros_logger
        else:
            self.logger = logging.getLogger('PoseSynchronizer')

    @property
    def trace(self) -> Optional[PoseTrace]:
        return self._trace

    def set_trace(self, trace: PoseTrace):
        """Replace the current trace (old trace discarded, no merging)"""
        self._trace = trace

    def lookup(self, stamp: Stamp) -> Optional[Pose]:
        """
        Retrieve the sensor pose associated with the given timestamp

        Args:
            stamp: cloud capture stamp

        Returns:
            the nearest trace pose, or None if unavailable
        """
        trace = self._trace
        stamp_rounded = round_stamp(stamp)

        if trace is None:
            self.logger.warning("No trajectory available")
            return None
        if len(trace) == 0:
            self.logger.warning("Empty list of poses in trajectory")
            return None

        k = trace.nearest_index(stamp)
        if k is None:
            first, last = trace.rounded_bounds()
            self.logger.warning(
                f"Trajectory does not contain pose corresponding with the keyframe. "
                f"Keyframe stamp (rounded) [{stamp_rounded}], trajectory stamps (rounded) [{first}]-[{last}]"
            )
            return None

        pose = trace[k]
        self.logger.debug(
            f"Search stamp (rounded) [{stamp_rounded}], found stamp (rounded) [{round_stamp(pose.stamp)}]"
        )
        return pose
