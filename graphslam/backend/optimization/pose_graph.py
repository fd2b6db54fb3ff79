"""
Pose graph optimization on SE(3).

Every free pose is parameterized by a 6D perturbation delta applied on the
left of its linearization point, T = exp(delta) * T0, so the additive updates
of the generic least-squares optimizers stay valid. Each relative constraint
(i, j, Z, Omega) contributes the residual

    r_ij = Omega^(1/2) * log(Z^-1 * T_i^-1 * T_j)

Its Jacobians are analytic. With E = Z^-1 * T_i^-1 * T_j and e = log(E):

    dr/d(delta_j) =  Omega^(1/2) * J_l(e)^-1 * Ad((T_i * Z)^-1) * J_l(delta_j)
    dr/d(delta_i) = -Omega^(1/2) * J_l(e)^-1 * Ad((T_i * Z)^-1) * J_l(delta_i)

so every constraint only fills the (i, i), (i, j), (j, i) and (j, j) blocks
of the normal equations.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import torch

from ..se3 import SE3, left_jacobian, left_jacobian_inverse
from .base import LevenbergMarquardtOptimizer, OptimizationProblem, OptimizationResult

POSE_DIM = 6


@dataclass
class RelativePoseConstraint:
    """Relative transform measurement between two poses."""

    from_id: int
    to_id: int
    measurement: SE3
    sqrt_information: torch.Tensor  # 6x6


def information_from_inliers(inliers: int, device: torch.device = None) -> torch.Tensor:
    """Information matrix of an edge supported by `inliers` correspondences."""
    return torch.eye(POSE_DIM, dtype=torch.float64, device=device) * float(inliers)


def _matrix_sqrt(information: torch.Tensor) -> torch.Tensor:
    # Symmetric square root; tolerates the all-zero matrix of an unsupported edge
    information = 0.5 * (information + information.t())
    eigvals, eigvecs = torch.linalg.eigh(information)
    return eigvecs @ torch.diag(torch.sqrt(torch.clamp(eigvals, min=0.0))) @ eigvecs.t()


class PoseGraphProblem(OptimizationProblem):
    """Least-squares problem over a set of SE(3) poses and relative constraints."""

    def __init__(
        self,
        poses: Dict[int, SE3],
        constraints: List[RelativePoseConstraint],
        fixed: Optional[set] = None,
    ):
        self.poses = poses
        self.constraints = constraints
        self.fixed = set(fixed or ())
        self.free_ids = sorted(pid for pid in poses if pid not in self.fixed)

    def pose(self, pose_id: int, variables: Dict[int, torch.Tensor]) -> SE3:
        base = self.poses[pose_id]
        if pose_id in variables:
            return SE3.exp(variables[pose_id]).compose(base)
        return base

    def _current_poses(self, variables: Dict[int, torch.Tensor]) -> Dict[int, SE3]:
        return {pid: self.pose(pid, variables) for pid in self.poses}

    def compute_residuals(self, variables: Dict[int, torch.Tensor]) -> torch.Tensor:
        if not self.constraints:
            device = next(iter(self.poses.values())).device if self.poses else None
            return torch.zeros(0, dtype=torch.float64, device=device)

        poses = self._current_poses(variables)
        residuals = []
        for constraint in self.constraints:
            T_i = poses[constraint.from_id]
            T_j = poses[constraint.to_id]
            error = constraint.measurement.inverse().compose(T_i.inverse().compose(T_j)).log()
            residuals.append(torch.matmul(constraint.sqrt_information, error))
        return torch.cat(residuals)

    def _linearize_constraint(
        self,
        constraint: RelativePoseConstraint,
        poses: Dict[int, SE3],
        left_jacobians: Dict[int, torch.Tensor],
    ) -> Tuple[torch.Tensor, Dict[int, torch.Tensor]]:
        """Weighted residual of one constraint and its 6x6 blocks per free pose."""
        T_i = poses[constraint.from_id]
        T_j = poses[constraint.to_id]
        error = constraint.measurement.inverse().compose(T_i.inverse().compose(T_j)).log()

        A = constraint.sqrt_information @ left_jacobian_inverse(error)
        A = A @ T_i.compose(constraint.measurement).inverse().adjoint()

        blocks = {}
        if constraint.to_id in left_jacobians:
            blocks[constraint.to_id] = A @ left_jacobians[constraint.to_id]
        if constraint.from_id in left_jacobians:
            # A self-loop (i == j) cancels out
            J_i = -(A @ left_jacobians[constraint.from_id])
            blocks[constraint.from_id] = blocks.get(constraint.from_id, 0) + J_i
        return torch.matmul(constraint.sqrt_information, error), blocks

    def linearize(self, variables: Dict[int, torch.Tensor]):
        with torch.no_grad():
            poses = self._current_poses(variables)
            left_jacobians = {pid: left_jacobian(delta) for pid, delta in variables.items()}

            JTJ = {}
            JTr = {}
            for pid, delta in variables.items():
                JTJ[(pid, pid)] = torch.zeros((POSE_DIM, POSE_DIM), dtype=delta.dtype, device=delta.device)
                JTr[pid] = torch.zeros(POSE_DIM, dtype=delta.dtype, device=delta.device)

            for constraint in self.constraints:
                residual, blocks = self._linearize_constraint(constraint, poses, left_jacobians)
                for a, J_a in blocks.items():
                    JTr[a] = JTr[a] + J_a.t() @ residual
                    for b, J_b in blocks.items():
                        block = J_a.t() @ J_b
                        JTJ[(a, b)] = JTJ[(a, b)] + block if (a, b) in JTJ else block
        return JTJ, JTr

    def compute_jacobians(self, variables: Dict[int, torch.Tensor]) -> Dict[int, torch.Tensor]:
        """Dense Jacobians, stacked from the per-constraint blocks."""
        with torch.no_grad():
            poses = self._current_poses(variables)
            left_jacobians = {pid: left_jacobian(delta) for pid, delta in variables.items()}
            jacobians = {
                pid: torch.zeros(
                    (self.get_residual_dimensions(), POSE_DIM), dtype=delta.dtype, device=delta.device
                )
                for pid, delta in variables.items()
            }
            for k, constraint in enumerate(self.constraints):
                _, blocks = self._linearize_constraint(constraint, poses, left_jacobians)
                for pid, block in blocks.items():
                    jacobians[pid][k * POSE_DIM : (k + 1) * POSE_DIM] = block
        return jacobians

    def get_variable_dimensions(self) -> Dict[int, int]:
        return {pid: POSE_DIM for pid in self.free_ids}

    def get_residual_dimensions(self) -> int:
        return POSE_DIM * len(self.constraints)

    def get_initial_values(self) -> Dict[int, torch.Tensor]:
        return {
            pid: torch.zeros(POSE_DIM, dtype=torch.float64, device=self.poses[pid].device)
            for pid in self.free_ids
        }


class PoseGraphOptimization:
    """
    Builder and solver front-end for a pose graph.

    Holds the linearization points, constraints and the gauge (fixed poses),
    and solves with Levenberg-Marquardt.
    """

    def __init__(
        self,
        max_iterations: int = 100,
        convergence_threshold: float = 1e-6,
        initial_lambda: float = 1e-4,
        lambda_factor: float = 10.0,
        device: Optional[torch.device] = None,
    ):
        self.device = device or torch.device("cpu")
        self.optimizer = LevenbergMarquardtOptimizer(
            max_iterations=max_iterations,
            convergence_threshold=convergence_threshold,
            initial_lambda=initial_lambda,
            lambda_factor=lambda_factor,
            device=self.device,
        )
        self.poses: Dict[int, SE3] = {}
        self.constraints: List[RelativePoseConstraint] = []
        self.fixed = set()
        self._result: Optional[OptimizationResult] = None
        self._problem: Optional[PoseGraphProblem] = None
        self.logger = logging.getLogger(self.__class__.__name__)

    def add_pose(self, pose_id: int, pose: SE3):
        self.poses[pose_id] = pose.to(device=self.device, dtype=torch.float64)

    def set_fixed_pose(self, pose_id: int):
        if pose_id not in self.poses:
            raise ValueError(f"Cannot fix unknown pose {pose_id}")
        self.fixed.add(pose_id)

    def add_relative_pose_constraint(
        self, from_id: int, to_id: int, measurement: SE3, information: torch.Tensor
    ):
        """
        Args:
            from_id: Pose the measurement is expressed in
            to_id: Pose being measured
            measurement: Relative transform T_from^-1 * T_to
            information: 6x6 information matrix
        """
        if from_id not in self.poses or to_id not in self.poses:
            raise ValueError(f"Constraint {from_id} -> {to_id} references an unknown pose")
        if information.shape != (POSE_DIM, POSE_DIM):
            raise ValueError(f"Expected 6x6 information matrix, got {tuple(information.shape)}")

        self.constraints.append(
            RelativePoseConstraint(
                from_id,
                to_id,
                measurement.to(device=self.device, dtype=torch.float64),
                _matrix_sqrt(information.to(device=self.device, dtype=torch.float64)),
            )
        )

    def optimize(self) -> OptimizationResult:
        self._problem = PoseGraphProblem(self.poses, self.constraints, self.fixed)
        self._result = self.optimizer.solve(self._problem)
        self.logger.debug(
            f"Pose graph solve: {len(self.poses)} poses, {len(self.constraints)} constraints, "
            f"cost {self._result.initial_cost:.6e} -> {self._result.final_cost:.6e} "
            f"in {self._result.num_iterations} iterations"
        )
        return self._result

    def get_pose(self, pose_id: int) -> SE3:
        """Optimized pose, or the linearization point before `optimize`."""
        if self._result is None:
            return self.poses[pose_id]
        with torch.no_grad():
            return self._problem.pose(pose_id, self._result.variables).detach()
