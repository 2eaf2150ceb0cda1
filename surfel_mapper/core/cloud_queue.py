"""FIFO of keyframe clouds waiting for a trajectory pose."""

import logging
from collections import deque
from typing import Callable, Optional

from surfel_mapper.core.types import Pose, RawCloud, Stamp


class CloudQueue:
    """
    Cloud ingestion queue

    Clouds are fused strictly in arrival order. A drain pass stops at the first
    cloud whose pose cannot be resolved yet, leaving it and everything behind
    it in place for the next pass.
    """

    def __init__(self, ros_logger=None):
        self._clouds = deque()

        if ros_logger is not None:
            self.logger = ros_logger
        else:
            self.logger = logging.getLogger('CloudQueue')

    def __len__(self):
        return len(self._clouds)

    def __iter__(self):
        return iter(self._clouds)

    def enqueue(self, cloud: RawCloud):
        self._clouds.append(cloud)

    def front(self) -> Optional[RawCloud]:
        return self._clouds[0] if self._clouds else None

    def clear(self):
        self._clouds.clear()

    def drain(self,
              resolve: Callable[[Stamp], Optional[Pose]],
              fuse: Callable[[RawCloud], object]) -> int:
        """
        Associate and fuse clouds from the front of the queue

        Args:
            resolve: stamp -> pose or None (usually PoseSynchronizer.lookup)
            fuse: called with each cloud after its pose is attached

        Returns:
            number of clouds fused in this pass
        """
        fused = 0
        while self._clouds:
            cloud = self._clouds[0]
            # A cloud left at the front by a failed fusion keeps its pose
            if cloud.pose is None:
                pose = resolve(cloud.stamp)
                if pose is None:
                    break
                cloud.attach_pose(pose)

            fuse(cloud)

            # Remove only after fusion completed
            self._clouds.popleft()
            fused += 1

        if fused:
            self.logger.debug(f"Drained {fused} clouds, {len(self._clouds)} still queued")
        return fused
