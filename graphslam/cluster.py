"""
Visual clusters: the unit of place recognition.

A cluster groups the keypoints of one region of a camera frame together with
their descriptors and triangulated camera-frame points. Clusters are built by
the frontend, inserted into the pose graph (one vertex each) and matched by
loop closing.
"""
from dataclasses import dataclass, field, replace
from typing import Dict, Optional, Sequence, Tuple

import cv2
import numpy as np
import torch

from .backend.se3 import SE3


class KeyPoint:
    """Class representing a 2D keypoint."""

    def __init__(
        self,
        x: float,
        y: float,
        response: float = 0.0,
        size: float = 1.0,
        angle: float = -1.0,
        octave: int = 0,
    ):
        self.x = x
        self.y = y
        self.response = response  # Strength of the keypoint
        self.size = size  # Diameter of the meaningful keypoint neighborhood
        self.angle = angle  # Orientation in degrees (-1 if not applicable)
        self.octave = octave  # Pyramid layer the keypoint was extracted from

    def pt(self) -> Tuple[float, float]:
        """Get point coordinates."""
        return (self.x, self.y)

    def to_dict(self) -> Dict:
        return {
            "x": self.x,
            "y": self.y,
            "response": self.response,
            "size": self.size,
            "angle": self.angle,
            "octave": self.octave,
        }

    @staticmethod
    def from_dict(data: Dict) -> "KeyPoint":
        return KeyPoint(
            x=data["x"],
            y=data["y"],
            response=data["response"],
            size=data["size"],
            angle=data["angle"],
            octave=data["octave"],
        )

    @staticmethod
    def from_cv2(kp: cv2.KeyPoint) -> "KeyPoint":
        """Convert an OpenCV keypoint."""
        return KeyPoint(
            x=float(kp.pt[0]),
            y=float(kp.pt[1]),
            response=float(kp.response),
            size=float(kp.size),
            angle=float(kp.angle),
            octave=int(kp.octave),
        )

    def to_cv2(self) -> cv2.KeyPoint:
        return cv2.KeyPoint(
            float(self.x),
            float(self.y),
            float(self.size),
            float(self.angle),
            float(self.response),
            int(self.octave),
        )

    def __eq__(self, other) -> bool:
        if not isinstance(other, KeyPoint):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __hash__(self) -> int:
        return hash(tuple(self.to_dict().values()))

    def __repr__(self) -> str:
        return f"KeyPoint(x={self.x}, y={self.y})"


def _empty_descriptors() -> torch.Tensor:
    return torch.zeros((0, 0), dtype=torch.float32)


def _empty_points() -> torch.Tensor:
    return torch.zeros((0, 3), dtype=torch.float64)


@dataclass(frozen=True, eq=False)
class Cluster:
    """
    Immutable bundle of one visual cluster.

    Attributes:
        id: Cluster id; the vertex id once inserted in the graph, -1 when unset
        frame_id: Id of the frame the cluster was extracted from
        pose: Camera pose in the world, used to project `camera_points`
        keypoints: Ordered 2D keypoints
        ldb_descriptors: LDB descriptors, one row per keypoint
        sift_descriptors: SIFT descriptors, one row per keypoint
        camera_points: Stereo 3D points in the camera frame, shape (N, 3)
    """

    id: int = -1
    frame_id: int = -1
    pose: SE3 = field(default_factory=SE3.identity)
    keypoints: Tuple[KeyPoint, ...] = ()
    ldb_descriptors: torch.Tensor = field(default_factory=_empty_descriptors)
    sift_descriptors: torch.Tensor = field(default_factory=_empty_descriptors)
    camera_points: torch.Tensor = field(default_factory=_empty_points)

    def __post_init__(self):
        # Copy the frontend buffers so later changes there cannot leak in
        object.__setattr__(self, "pose", self.pose.clone())
        object.__setattr__(self, "keypoints", tuple(self.keypoints))
        object.__setattr__(self, "ldb_descriptors", _to_tensor(self.ldb_descriptors))
        object.__setattr__(self, "sift_descriptors", _to_tensor(self.sift_descriptors))

        points = _to_tensor(self.camera_points, dtype=torch.float64).reshape(-1, 3)
        object.__setattr__(self, "camera_points", points.to(self.pose.device))

    @property
    def is_set(self) -> bool:
        return self.id != -1

    def get_world_points(self) -> torch.Tensor:
        """
        Compute the cluster points in world coordinates.

        Returns:
            New tensor of shape (N, 3): `pose` applied to every camera point
        """
        return self.pose.transform_points(self.camera_points)

    def centroid(self) -> torch.Tensor:
        """Mean camera-frame point; the origin for a cluster without points."""
        if self.camera_points.shape[0] == 0:
            return torch.zeros(3, dtype=torch.float64, device=self.pose.device)
        return self.camera_points.mean(dim=0)

    def with_id(self, cluster_id: int, frame_id: Optional[int] = None) -> "Cluster":
        """Copy of this cluster carrying new ids."""
        return replace(
            self,
            id=cluster_id,
            frame_id=self.frame_id if frame_id is None else frame_id,
        )

    def __len__(self) -> int:
        return self.camera_points.shape[0]

    def __repr__(self) -> str:
        return (
            f"Cluster(id={self.id}, frame_id={self.frame_id}, "
            f"keypoints={len(self.keypoints)}, points={len(self)})"
        )


def _to_tensor(value, dtype: Optional[torch.dtype] = None) -> torch.Tensor:
    if isinstance(value, torch.Tensor):
        tensor = value.detach().clone()
    else:
        tensor = torch.tensor(np.asarray(value))
    if dtype is not None:
        tensor = tensor.to(dtype)
    return tensor


def make_cluster(
    frame_id: int,
    pose: SE3,
    keypoints: Sequence,
    camera_points,
    ldb_descriptors=None,
    sift_descriptors=None,
) -> Cluster:
    """
    Build an unset cluster from frontend output.

    Keypoints may be `KeyPoint` or `cv2.KeyPoint` objects; descriptors and
    points may be NumPy arrays or tensors.
    """
    keypoints = tuple(
        KeyPoint.from_cv2(kp) if isinstance(kp, cv2.KeyPoint) else kp for kp in keypoints
    )
    return Cluster(
        id=-1,
        frame_id=frame_id,
        pose=pose,
        keypoints=keypoints,
        ldb_descriptors=_empty_descriptors() if ldb_descriptors is None else ldb_descriptors,
        sift_descriptors=_empty_descriptors() if sift_descriptors is None else sift_descriptors,
        camera_points=camera_points,
    )
