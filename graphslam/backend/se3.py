import math
from typing import Optional, Sequence, Union

import numpy as np
import torch

TensorLike = Union[torch.Tensor, np.ndarray, Sequence[float]]

_SMALL_ANGLE = 1e-10


class SE3:
    """
    SE(3) rigid body transformation.

    Poses, cluster transforms and edge measurements are all stored as SE3
    objects. Tensors are kept in float64: the pose graph optimizer differentiates
    through `exp` and `log`, and single precision is not enough for the
    convergence thresholds it uses.

    Twist coordinates follow the (v, omega) convention: the first three
    elements are the translational part, the last three the rotational part.
    """

    def __init__(self, rotation: torch.Tensor, translation: torch.Tensor):
        """
        Initialize SE(3) transformation.

        Args:
            rotation: 3x3 rotation matrix
            translation: 3D translation vector
        """
        self.R = rotation
        self.t = translation

    @property
    def device(self) -> torch.device:
        return self.R.device

    @classmethod
    def from_matrix(cls, matrix: TensorLike, device: Optional[torch.device] = None) -> "SE3":
        """
        Create SE(3) object from a 4x4 transformation matrix.

        Args:
            matrix: 4x4 transformation matrix (tensor or array)
            device: PyTorch device

        Returns:
            SE3 object
        """
        matrix = _as_tensor(matrix, device)
        if matrix.shape != (4, 4):
            raise ValueError(f"Expected 4x4 matrix, got {tuple(matrix.shape)}")

        return cls(matrix[:3, :3].clone(), matrix[:3, 3].clone())

    @classmethod
    def from_rotation_translation(
        cls,
        rotation: TensorLike,
        translation: TensorLike,
        device: Optional[torch.device] = None,
    ) -> "SE3":
        rotation = _as_tensor(rotation, device)
        translation = _as_tensor(translation, device)
        if rotation.shape != (3, 3):
            raise ValueError(f"Expected 3x3 rotation matrix, got {tuple(rotation.shape)}")
        if translation.shape != (3,):
            raise ValueError(
                f"Expected 3D translation vector, got {tuple(translation.shape)}"
            )
        return cls(rotation, translation)

    @classmethod
    def from_translation(
        cls, translation: TensorLike, device: Optional[torch.device] = None
    ) -> "SE3":
        """Pure translation with identity rotation."""
        translation = _as_tensor(translation, device)
        return cls(
            torch.eye(3, dtype=translation.dtype, device=translation.device),
            translation,
        )

    @classmethod
    def from_reduced_pose(
        cls, pose: TensorLike, device: Optional[torch.device] = None
    ) -> "SE3":
        """
        Promote a reduced pose to a full rigid transformation.

        A reduced pose is [x, y, z, yaw]: the translation plus the heading in
        radians about the world z axis, measured counter-clockwise from the
        world x axis. Roll and pitch are zero.

        Args:
            pose: 4-element reduced pose
            device: PyTorch device

        Returns:
            SE3 object
        """
        pose = _as_tensor(pose, device)
        if pose.shape != (4,):
            raise ValueError(f"Expected reduced pose [x, y, z, yaw], got {tuple(pose.shape)}")

        yaw = pose[3]
        c, s = torch.cos(yaw), torch.sin(yaw)
        zero, one = torch.zeros_like(yaw), torch.ones_like(yaw)
        R = torch.stack(
            [
                torch.stack([c, -s, zero]),
                torch.stack([s, c, zero]),
                torch.stack([zero, zero, one]),
            ]
        )
        return cls(R, pose[:3].clone())

    @classmethod
    def from_translation_quaternion(
        cls,
        translation: TensorLike,
        quaternion: TensorLike,
        device: Optional[torch.device] = None,
    ) -> "SE3":
        """
        Args:
            translation: 3D translation
            quaternion: [w, x, y, z] where w is the scalar part
        """
        translation = _as_tensor(translation, device)
        quaternion = _as_tensor(quaternion, translation.device)
        return cls(quaternion_to_rotation_matrix(quaternion), translation)

    @classmethod
    def identity(cls, device: Optional[torch.device] = None) -> "SE3":
        device = device or torch.device("cpu")
        return cls(
            torch.eye(3, dtype=torch.float64, device=device),
            torch.zeros(3, dtype=torch.float64, device=device),
        )

    @classmethod
    def exp(cls, xi: torch.Tensor) -> "SE3":
        """
        Exponential map from se(3) to SE(3).

        Differentiable everywhere, including xi = 0, which is where the
        optimizer linearizes each pose.

        Args:
            xi: 6D twist coordinates (v, omega)

        Returns:
            SE3 object
        """
        if xi.shape != (6,):
            raise ValueError(f"Expected 6D vector, got {tuple(xi.shape)}")

        v = xi[:3]
        omega = xi[3:]
        W = skew_symmetric(omega)
        W2 = torch.matmul(W, W)
        I = torch.eye(3, dtype=xi.dtype, device=xi.device)

        theta2 = torch.dot(omega, omega)
        if theta2.item() < _SMALL_ANGLE:
            # Taylor expansions of sin(t)/t, (1-cos(t))/t^2, (t-sin(t))/t^3
            A = 1.0 - theta2 / 6.0
            B = 0.5 - theta2 / 24.0
            C = 1.0 / 6.0 - theta2 / 120.0
        else:
            theta = torch.sqrt(theta2)
            A = torch.sin(theta) / theta
            B = (1.0 - torch.cos(theta)) / theta2
            C = (theta - torch.sin(theta)) / (theta2 * theta)

        R = I + A * W + B * W2
        V = I + B * W + C * W2
        return cls(R, torch.matmul(V, v))

    def log(self) -> torch.Tensor:
        """
        Logarithmic map from SE(3) to se(3).

        Returns:
            6D twist coordinates (v, omega)
        """
        R = self.R
        I = torch.eye(3, dtype=R.dtype, device=R.device)

        cos_theta = torch.clamp((torch.trace(R) - 1.0) / 2.0, -1.0, 1.0)
        # sin(theta) * axis
        s = 0.5 * torch.stack([R[2, 1] - R[1, 2], R[0, 2] - R[2, 0], R[1, 0] - R[0, 1]])
        sin2 = torch.dot(s, s)

        if sin2.item() < _SMALL_ANGLE and cos_theta.item() > 0:
            # asin(x)/x ~ 1 + x^2/6
            omega = s * (1.0 + sin2 / 6.0)
            theta2 = torch.dot(omega, omega)
            D = 1.0 / 12.0 + theta2 / 720.0
        else:
            sin_theta = torch.sqrt(sin2)
            theta = torch.atan2(sin_theta, cos_theta)
            if sin_theta.item() < 1e-6:
                # Rotation by pi: the axis is the dominant column of (R + I)
                M = R + I
                col = int(torch.argmax(torch.norm(M, dim=0)).item())
                axis = M[:, col] / torch.norm(M[:, col])
                omega = axis * theta
            else:
                omega = s * (theta / sin_theta)
            theta2 = theta * theta
            A = torch.sin(theta) / theta
            B = (1.0 - torch.cos(theta)) / theta2
            D = (1.0 - A / (2.0 * B)) / theta2

        W = skew_symmetric(omega)
        V_inv = I - 0.5 * W + D * torch.matmul(W, W)
        return torch.cat([torch.matmul(V_inv, self.t), omega])

    def to_matrix(self) -> torch.Tensor:
        """
        Convert to 4x4 transformation matrix.
        """
        matrix = torch.eye(4, dtype=self.R.dtype, device=self.device)
        matrix[:3, :3] = self.R
        matrix[:3, 3] = self.t
        return matrix

    def to_reduced_pose(self) -> torch.Tensor:
        """Translation plus heading about world z: [x, y, z, yaw]."""
        yaw = torch.atan2(self.R[1, 0], self.R[0, 0])
        return torch.cat([self.t, yaw.reshape(1)])

    def to_quaternion(self) -> torch.Tensor:
        """Rotation as a [w, x, y, z] quaternion."""
        return rotation_matrix_to_quaternion(self.R)

    def transform_point(self, point: torch.Tensor) -> torch.Tensor:
        return torch.matmul(self.R, point) + self.t

    def transform_points(self, points: torch.Tensor) -> torch.Tensor:
        """
        Transform multiple 3D points.

        Args:
            points: Tensor of shape (N, 3)

        Returns:
            Transformed points of shape (N, 3)
        """
        return torch.matmul(points, self.R.t()) + self.t

    def inverse(self) -> "SE3":
        R_inv = self.R.t()
        t_inv = -torch.matmul(R_inv, self.t)
        return SE3(R_inv, t_inv)

    def compose(self, other: "SE3") -> "SE3":
        """
        Compose with another SE(3) transformation: self * other
        """
        R = torch.matmul(self.R, other.R)
        t = torch.matmul(self.R, other.t) + self.t
        return SE3(R, t)

    def __mul__(self, other: "SE3") -> "SE3":
        return self.compose(other)

    def adjoint(self) -> torch.Tensor:
        """
        6x6 adjoint matrix in (v, omega) order: T * exp(xi) * T^-1 = exp(Ad_T * xi).
        """
        zero = torch.zeros((3, 3), dtype=self.R.dtype, device=self.device)
        return torch.cat(
            [
                torch.cat([self.R, torch.matmul(skew_symmetric(self.t), self.R)], dim=1),
                torch.cat([zero, self.R], dim=1),
            ]
        )

    def relative_to(self, other: "SE3") -> "SE3":
        """Transform taking `self` to `other`: self^-1 * other."""
        return self.inverse().compose(other)

    def translation_distance(self, other: "SE3") -> float:
        return torch.norm(self.t - other.t).item()

    def is_finite(self) -> bool:
        return bool(torch.isfinite(self.R).all() and torch.isfinite(self.t).all())

    def to(self, device: torch.device = None, dtype: torch.dtype = None) -> "SE3":
        return SE3(self.R.to(device=device, dtype=dtype), self.t.to(device=device, dtype=dtype))

    def clone(self) -> "SE3":
        return SE3(self.R.clone(), self.t.clone())

    def detach(self) -> "SE3":
        return SE3(self.R.detach(), self.t.detach())

    def allclose(self, other: "SE3", atol: float = 1e-6) -> bool:
        other = other.to(device=self.device, dtype=self.R.dtype)
        return torch.allclose(self.R, other.R, atol=atol) and torch.allclose(
            self.t, other.t, atol=atol
        )

    def __repr__(self) -> str:
        return f"SE3(R=\n{self.R},\nt={self.t})"


def skew_symmetric(v: torch.Tensor) -> torch.Tensor:
    """
    Create a skew-symmetric matrix from a 3D vector.

    Built with torch.stack so gradients flow through it.
    """
    zero = torch.zeros_like(v[0])
    return torch.stack(
        [
            torch.stack([zero, -v[2], v[1]]),
            torch.stack([v[2], zero, -v[0]]),
            torch.stack([-v[1], v[0], zero]),
        ]
    )


def se3_ad(xi: torch.Tensor) -> torch.Tensor:
    """6x6 matrix of the Lie bracket [xi, .] in (v, omega) order."""
    W = skew_symmetric(xi[3:])
    zero = torch.zeros((3, 3), dtype=xi.dtype, device=xi.device)
    return torch.cat(
        [
            torch.cat([W, skew_symmetric(xi[:3])], dim=1),
            torch.cat([zero, W], dim=1),
        ]
    )


# Taylor coefficients of (exp(x) - 1) / x and of its inverse x / (exp(x) - 1)
# (Bernoulli numbers over n!). The second converges for rotations below 2*pi.
_LEFT_JACOBIAN_SERIES = tuple(1.0 / math.factorial(n + 1) for n in range(13))
_LEFT_JACOBIAN_INVERSE_SERIES = (
    1.0,
    -1.0 / 2.0,
    1.0 / 12.0,
    0.0,
    -1.0 / 720.0,
    0.0,
    1.0 / 30240.0,
    0.0,
    -1.0 / 1209600.0,
    0.0,
    1.0 / 47900160.0,
)


def _matrix_series(A: torch.Tensor, coefficients) -> torch.Tensor:
    I = torch.eye(A.shape[0], dtype=A.dtype, device=A.device)
    result = coefficients[0] * I
    power = I
    for c in coefficients[1:]:
        power = torch.matmul(power, A)
        if c:
            result = result + c * power
    return result


def left_jacobian(xi: torch.Tensor) -> torch.Tensor:
    """
    Left Jacobian of SE(3): exp(xi + d) ~ exp(J_l(xi) * d) * exp(xi).
    """
    return _matrix_series(se3_ad(xi), _LEFT_JACOBIAN_SERIES)


def left_jacobian_inverse(xi: torch.Tensor) -> torch.Tensor:
    """
    Inverse left Jacobian of SE(3): log(exp(d) * exp(xi)) ~ xi + J_l(xi)^-1 * d.
    """
    return _matrix_series(se3_ad(xi), _LEFT_JACOBIAN_INVERSE_SERIES)


def quaternion_to_rotation_matrix(q: torch.Tensor) -> torch.Tensor:
    """
    Convert quaternion to rotation matrix.

    Args:
        q: Quaternion [w, x, y, z] where w is the scalar part

    Returns:
        3x3 rotation matrix
    """
    q = q / torch.norm(q)
    w, x, y, z = q

    return torch.stack(
        [
            torch.stack([1 - 2 * (y * y + z * z), 2 * (x * y - w * z), 2 * (x * z + w * y)]),
            torch.stack([2 * (x * y + w * z), 1 - 2 * (x * x + z * z), 2 * (y * z - w * x)]),
            torch.stack([2 * (x * z - w * y), 2 * (y * z + w * x), 1 - 2 * (x * x + y * y)]),
        ]
    )


def rotation_matrix_to_quaternion(R: torch.Tensor) -> torch.Tensor:
    """
    Convert rotation matrix to quaternion.

    Args:
        R: 3x3 rotation matrix

    Returns:
        Quaternion [w, x, y, z] with a non-negative scalar part
    """
    trace = torch.trace(R)

    if trace > 0:
        s = 0.5 / torch.sqrt(trace + 1.0)
        w = 0.25 / s
        x = (R[2, 1] - R[1, 2]) * s
        y = (R[0, 2] - R[2, 0]) * s
        z = (R[1, 0] - R[0, 1]) * s
    elif R[0, 0] > R[1, 1] and R[0, 0] > R[2, 2]:
        s = 2.0 * torch.sqrt(1.0 + R[0, 0] - R[1, 1] - R[2, 2])
        w = (R[2, 1] - R[1, 2]) / s
        x = 0.25 * s
        y = (R[0, 1] + R[1, 0]) / s
        z = (R[0, 2] + R[2, 0]) / s
    elif R[1, 1] > R[2, 2]:
        s = 2.0 * torch.sqrt(1.0 + R[1, 1] - R[0, 0] - R[2, 2])
        w = (R[0, 2] - R[2, 0]) / s
        x = (R[0, 1] + R[1, 0]) / s
        y = 0.25 * s
        z = (R[1, 2] + R[2, 1]) / s
    else:
        s = 2.0 * torch.sqrt(1.0 + R[2, 2] - R[0, 0] - R[1, 1])
        w = (R[1, 0] - R[0, 1]) / s
        x = (R[0, 2] + R[2, 0]) / s
        y = (R[1, 2] + R[2, 1]) / s
        z = 0.25 * s

    q = torch.stack([w, x, y, z])
    if q[0] < 0:
        q = -q
    return q


def _as_tensor(value: TensorLike, device: Optional[torch.device] = None) -> torch.Tensor:
    if isinstance(value, SE3):
        raise TypeError("Expected a tensor-like value, got SE3")
    if isinstance(value, torch.Tensor):
        return value.to(dtype=torch.float64, device=device or value.device)
    return torch.as_tensor(np.asarray(value, dtype=np.float64), device=device)
