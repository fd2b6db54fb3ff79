import numpy as np
import torch

from graphslam.backend.se3 import SE3
from graphslam.cluster import KeyPoint, make_cluster
from graphslam.frame import Frame


def build_frame(frame_id, x, cluster_points=None, inliers_with_prev=50, rotation=None):
    """Frame whose camera sits at (x, 0, 0), with identity orientation unless `rotation` is given."""
    if rotation is None:
        camera_pose = SE3.from_reduced_pose([x, 0.0, 0.0, 0.0])
    else:
        camera_pose = SE3.from_rotation_translation(rotation, [x, 0.0, 0.0])
    if cluster_points is None:
        cluster_points = [
            [[0.0, 0.0, 1.0], [0.0, 0.0, 3.0]],
            [[1.0, 0.0, 2.0]],
        ]

    clusters = []
    for points in cluster_points:
        keypoints = [KeyPoint(x=10.0 * k, y=5.0 * k) for k in range(len(points))]
        clusters.append(
            make_cluster(
                frame_id,
                camera_pose,
                keypoints,
                np.asarray(points, dtype=np.float64),
                ldb_descriptors=np.zeros((len(points), 32), dtype=np.uint8),
                sift_descriptors=torch.zeros((len(points), 128)),
            )
        )

    return Frame(frame_id, camera_pose, clusters, inliers_with_prev=inliers_with_prev)
