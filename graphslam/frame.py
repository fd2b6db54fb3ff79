from typing import List, Optional

from .backend.se3 import SE3
from .cluster import Cluster


class Frame:
    """
    A processed camera frame waiting to be inserted into the pose graph.

    Produced by the frontend: the camera pose comes from odometry and every
    cluster carries its own keypoints, descriptors and camera-frame points.
    """

    def __init__(
        self,
        frame_id: int,
        camera_pose: SE3,
        clusters: Optional[List[Cluster]] = None,
        inliers_with_prev: int = 0,
        timestamp: Optional[float] = None,
    ):
        """
        Args:
            frame_id: Frame id
            camera_pose: Camera pose in the world frame
            clusters: Clusters extracted from this frame
            inliers_with_prev: Correspondences supporting the odometry link
                with the previous frame
            timestamp: Optional timestamp
        """
        if inliers_with_prev < 0:
            raise ValueError(f"inliers_with_prev must be >= 0, got {inliers_with_prev}")

        self.id = frame_id
        self.camera_pose = camera_pose
        self.clusters = list(clusters or [])
        self.inliers_with_prev = inliers_with_prev
        self.timestamp = timestamp

    def cluster_poses(self) -> List[SE3]:
        """
        World pose of every cluster.

        The camera pose translated to the cluster centroid, keeping the camera
        orientation. A frame without clusters yields the camera pose alone.
        """
        if not self.clusters:
            return [self.camera_pose]

        return [
            self.camera_pose.compose(SE3.from_translation(cluster.centroid()))
            for cluster in self.clusters
        ]

    def __len__(self) -> int:
        return len(self.clusters)

    def __repr__(self) -> str:
        return f"Frame(id={self.id}, clusters={len(self.clusters)})"
