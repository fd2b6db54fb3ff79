"""
Optimization module for the pose graph backend.

Generic nonlinear least-squares interfaces, a Levenberg-Marquardt solver and
the SE(3) pose graph problem built on top of them.
"""

from .base import (
    LevenbergMarquardtOptimizer,
    OptimizationProblem,
    OptimizationResult,
    Optimizer,
)
from .pose_graph import (
    PoseGraphOptimization,
    PoseGraphProblem,
    RelativePoseConstraint,
    information_from_inliers,
)

__all__ = [
    "Optimizer",
    "OptimizationProblem",
    "OptimizationResult",
    "LevenbergMarquardtOptimizer",
    "PoseGraphOptimization",
    "PoseGraphProblem",
    "RelativePoseConstraint",
    "information_from_inliers",
]
