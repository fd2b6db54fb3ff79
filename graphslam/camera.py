from typing import Optional, Tuple

import cv2
import numpy as np


class PinholeCameraModel:
    """
    Pinhole camera model with optional lens distortion.

    Stored by the pose graph and handed to loop closing for geometric
    verification. The graph itself never interprets it.
    """

    def __init__(self):
        self.K = np.eye(3)
        self.D = np.zeros(5)
        self.width = 0
        self.height = 0

    @classmethod
    def from_camera_info(
        cls,
        K: np.ndarray,
        D: Optional[np.ndarray] = None,
        width: int = 0,
        height: int = 0,
    ) -> "PinholeCameraModel":
        """
        Args:
            K: 3x3 intrinsic matrix
            D: Distortion coefficients (OpenCV order k1, k2, p1, p2[, k3...])
            width: Image width in pixels
            height: Image height in pixels
        """
        K = np.asarray(K, dtype=np.float64)
        if K.shape != (3, 3):
            raise ValueError(f"Expected 3x3 intrinsic matrix, got {K.shape}")

        model = cls()
        model.K = K.copy()
        model.D = np.zeros(5) if D is None else np.asarray(D, dtype=np.float64).ravel()
        model.width = width
        model.height = height
        return model

    @property
    def fx(self) -> float:
        return float(self.K[0, 0])

    @property
    def fy(self) -> float:
        return float(self.K[1, 1])

    @property
    def cx(self) -> float:
        return float(self.K[0, 2])

    @property
    def cy(self) -> float:
        return float(self.K[1, 2])

    def intrinsic_matrix(self) -> np.ndarray:
        return self.K.copy()

    def project_3d_to_pixel(self, points: np.ndarray) -> np.ndarray:
        """
        Project camera-frame 3D points to (distorted) pixel coordinates.

        Args:
            points: Array of shape (N, 3)

        Returns:
            Array of shape (N, 2)
        """
        points = np.asarray(points, dtype=np.float64).reshape(-1, 1, 3)
        if points.shape[0] == 0:
            return np.zeros((0, 2))
        pixels, _ = cv2.projectPoints(points, np.zeros(3), np.zeros(3), self.K, self.D)
        return pixels.reshape(-1, 2)

    def rectify_point(self, uv: Tuple[float, float]) -> Tuple[float, float]:
        """Remove lens distortion from a pixel, keeping the same intrinsics."""
        src = np.asarray(uv, dtype=np.float64).reshape(1, 1, 2)
        dst = cv2.undistortPoints(src, self.K, self.D, P=self.K)
        return float(dst[0, 0, 0]), float(dst[0, 0, 1])

    def __repr__(self) -> str:
        return (
            f"PinholeCameraModel(fx={self.fx}, fy={self.fy}, cx={self.cx}, cy={self.cy}, "
            f"size={self.width}x{self.height})"
        )
