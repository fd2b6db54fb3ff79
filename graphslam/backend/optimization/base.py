import logging
import math
import time
import warnings
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Hashable, Optional, Tuple

import numpy as np
import torch
from scipy.sparse import coo_matrix
from scipy.sparse.linalg import MatrixRankWarning, lsqr, spsolve


@dataclass
class OptimizationResult:
    """Results from an optimization run."""

    success: bool  # Converged to finite values within the iteration cap
    initial_cost: float  # Cost before optimization
    final_cost: float  # Cost after optimization
    variables: Dict[Hashable, torch.Tensor]  # Optimized variables
    num_iterations: int  # Number of iterations performed
    time_seconds: float  # Time taken in seconds
    convergence_info: Dict[str, Any] = field(default_factory=dict)
    message: str = ""


class OptimizationProblem(ABC):
    """
    Base class for nonlinear least-squares problems.

    Variables are vectors keyed by an id. The optimizer only ever moves them
    additively, so manifold-valued unknowns must be exposed through a local
    parameterization (see `PoseGraphProblem`).
    """

    @abstractmethod
    def compute_residuals(self, variables: Dict[Hashable, torch.Tensor]) -> torch.Tensor:
        """
        Compute the stacked (weighted) residual vector.

        Args:
            variables: Dictionary of variables

        Returns:
            Tensor of residuals
        """

    def compute_cost(self, variables: Dict[Hashable, torch.Tensor]) -> float:
        """
        Compute total cost 0.5 * ||r||^2 for the current variable values.
        """
        residuals = self.compute_residuals(variables)
        return 0.5 * torch.dot(residuals, residuals).item()

    @abstractmethod
    def compute_jacobians(
        self, variables: Dict[Hashable, torch.Tensor]
    ) -> Dict[Hashable, torch.Tensor]:
        """
        Compute Jacobians of the residual vector for each variable.

        Returns:
            Dictionary mapping variable IDs to (residual_dim x var_dim) matrices
        """

    def linearize(
        self, variables: Dict[Hashable, torch.Tensor]
    ) -> Tuple[Dict[Tuple[Hashable, Hashable], torch.Tensor], Dict[Hashable, torch.Tensor]]:
        """
        Block form of J^T J and J^T r at `variables`.

        The default stacks the full Jacobians. Problems whose residuals only
        touch a few variables each should override it and accumulate the
        non-zero blocks directly.
        """
        residuals = self.compute_residuals(variables)
        jacobians = self.compute_jacobians(variables)
        JTJ = {}
        JTr = {}
        for var_id, jacobian in jacobians.items():
            JTr[var_id] = torch.matmul(jacobian.t(), residuals)
            for other_id, other_jacobian in jacobians.items():
                JTJ[(var_id, other_id)] = torch.matmul(jacobian.t(), other_jacobian)
        return JTJ, JTr

    @abstractmethod
    def get_variable_dimensions(self) -> Dict[Hashable, int]:
        """Dimensions of each variable."""

    @abstractmethod
    def get_residual_dimensions(self) -> int:
        """Total dimension of all residuals."""

    @abstractmethod
    def get_initial_values(self) -> Dict[Hashable, torch.Tensor]:
        """Initial values for all variables."""


class Optimizer(ABC):
    """
    Base class for optimization algorithms.
    """

    def __init__(
        self,
        max_iterations: int = 100,
        convergence_threshold: float = 1e-6,
        device: Optional[torch.device] = None,
    ):
        """
        Initialize optimizer.

        Args:
            max_iterations: Maximum number of iterations
            convergence_threshold: Threshold on step norm and relative cost decrease
            device: PyTorch device
        """
        self.max_iterations = max_iterations
        self.convergence_threshold = convergence_threshold
        self.logger = logging.getLogger(self.__class__.__name__)

        if device is None:
            self.device = torch.device("cuda" if torch.cuda.is_available() else "cpu")
        else:
            self.device = torch.device(device)

    @abstractmethod
    def solve(self, problem: OptimizationProblem) -> OptimizationResult:
        """
        Solve an optimization problem.
        """

    def measure_convergence(
        self, prev_cost: float, curr_cost: float, update_norm: float
    ) -> bool:
        """
        Check if optimization has converged.

        Args:
            prev_cost: Cost from previous iteration
            curr_cost: Cost from current iteration
            update_norm: Norm of the update step

        Returns:
            True if converged, False otherwise
        """
        cost_decrease = prev_cost - curr_cost
        relative_decrease = cost_decrease / (prev_cost + 1e-10)

        return (
            update_norm < self.convergence_threshold
            and relative_decrease < self.convergence_threshold
        )

    def _solve_normal_equations(
        self,
        JTJ: Dict[Tuple[Hashable, Hashable], torch.Tensor],
        JTr: Dict[Hashable, torch.Tensor],
        var_dims: Dict[Hashable, int],
    ) -> Dict[Hashable, torch.Tensor]:
        """
        Solve (J^T J) delta = -J^T r.

        Only the blocks present in `JTJ` are stored; the system is assembled
        as a sparse matrix and solved with SuperLU.

        Args:
            JTJ: Dictionary mapping (var_id1, var_id2) to block matrices
            JTr: Dictionary mapping var_id to right-hand side vectors
            var_dims: Dictionary mapping var_id to variable dimensions

        Returns:
            Dictionary mapping var_id to delta updates
        """
        var_ids = sorted(var_dims.keys())
        offsets = {}
        total_dim = 0
        for var_id in var_ids:
            offsets[var_id] = total_dim
            total_dim += var_dims[var_id]

        rows, cols, data = [], [], []
        for (var_i, var_j), block in JTJ.items():
            block = block.detach().cpu().numpy()
            r, c = np.indices(block.shape)
            rows.append((r + offsets[var_i]).ravel())
            cols.append((c + offsets[var_j]).ravel())
            data.append(block.ravel())

        # Duplicate entries are summed by the COO -> CSC conversion
        A = coo_matrix(
            (np.concatenate(data), (np.concatenate(rows), np.concatenate(cols))),
            shape=(total_dim, total_dim),
        ).tocsc()
        b = np.zeros(total_dim)
        for var_id in var_ids:
            if var_id in JTr:
                o = offsets[var_id]
                b[o : o + var_dims[var_id]] = -JTr[var_id].detach().cpu().numpy()

        with warnings.catch_warnings():
            warnings.simplefilter("error", MatrixRankWarning)
            try:
                x = np.atleast_1d(spsolve(A, b))
            except MatrixRankWarning:
                # Singular system, fall back to least squares
                x = lsqr(A, b)[0]

        dtype = next(iter(JTr.values())).dtype
        return {
            var_id: torch.as_tensor(
                x[offsets[var_id] : offsets[var_id] + var_dims[var_id]], dtype=dtype, device=self.device
            )
            for var_id in var_ids
        }


class LevenbergMarquardtOptimizer(Optimizer):
    """
    Levenberg-Marquardt optimizer for nonlinear least squares problems.

    Damping is reset at the start of every solve, so one optimizer instance
    can be reused for repeated batch solves of a growing graph.
    """

    def __init__(
        self,
        max_iterations: int = 100,
        convergence_threshold: float = 1e-6,
        initial_lambda: float = 1e-4,
        lambda_factor: float = 10.0,
        min_lambda: float = 1e-10,
        max_lambda: float = 1e10,
        device: Optional[torch.device] = None,
    ):
        """
        Args:
            max_iterations: Maximum number of iterations
            convergence_threshold: Threshold for convergence check
            initial_lambda: Initial damping parameter
            lambda_factor: Factor for changing lambda
            min_lambda: Minimum value for lambda
            max_lambda: Maximum value for lambda
            device: PyTorch device
        """
        super().__init__(max_iterations, convergence_threshold, device)
        self.initial_lambda = initial_lambda
        self.lambda_factor = lambda_factor
        self.min_lambda = min_lambda
        self.max_lambda = max_lambda

    def solve(self, problem: OptimizationProblem) -> OptimizationResult:
        start_time = time.time()

        variables = {
            var_id: value.to(self.device) for var_id, value in problem.get_initial_values().items()
        }
        var_dims = problem.get_variable_dimensions()
        lambda_value = self.initial_lambda

        initial_cost = problem.compute_cost(variables)
        current_cost = initial_cost
        convergence_info = {
            "costs": [initial_cost],
            "update_norms": [],
            "lambda_values": [lambda_value],
        }

        def _result(success: bool, iterations: int, message: str) -> OptimizationResult:
            return OptimizationResult(
                success=success,
                initial_cost=initial_cost,
                final_cost=current_cost,
                variables=variables,
                num_iterations=iterations,
                time_seconds=time.time() - start_time,
                convergence_info=convergence_info,
                message=message,
            )

        if not math.isfinite(initial_cost):
            return _result(False, 0, "initial cost is not finite")
        if not variables or initial_cost < self.convergence_threshold**2:
            return _result(True, 0, "initial guess already optimal")

        converged = False
        iteration = 0
        for iteration in range(1, self.max_iterations + 1):
            JTJ, JTr = problem.linearize(variables)

            # Marquardt scaling of the diagonal blocks
            for var_id in var_dims:
                dim = var_dims[var_id]
                block = JTJ.get(
                    (var_id, var_id), torch.zeros((dim, dim), dtype=torch.float64, device=self.device)
                )
                JTJ[(var_id, var_id)] = block + lambda_value * torch.diag(
                    torch.diag(block) + 1e-12
                )

            delta = self._solve_normal_equations(JTJ, JTr, var_dims)
            update_norm = math.sqrt(sum(torch.dot(d, d).item() for d in delta.values()))

            new_variables = {var_id: value + delta[var_id] for var_id, value in variables.items()}
            new_cost = problem.compute_cost(new_variables)

            if math.isfinite(new_cost) and new_cost < current_cost:
                converged = self.measure_convergence(current_cost, new_cost, update_norm)
                variables = new_variables
                current_cost = new_cost
                lambda_value = max(self.min_lambda, lambda_value / self.lambda_factor)
            else:
                converged = update_norm < self.convergence_threshold
                lambda_value = min(self.max_lambda, lambda_value * self.lambda_factor)

            convergence_info["costs"].append(current_cost)
            convergence_info["update_norms"].append(update_norm)
            convergence_info["lambda_values"].append(lambda_value)

            self.logger.debug(
                f"Iteration {iteration}: cost = {current_cost:.6e}, "
                f"update_norm = {update_norm:.3e}, lambda = {lambda_value:.3e}"
            )

            if converged or current_cost < self.convergence_threshold**2:
                converged = True
                break

        if not converged:
            return _result(False, iteration, f"no convergence after {iteration} iterations")
        return _result(True, iteration, "converged")
