"""
Residual evaluation and sparse Jacobian assembly

For every observation the assembler produces the reprojection residual and
the two derivative blocks d(residual)/d(camera) (2x9, on the camera tangent
space) and d(residual)/d(point) (2x3). Both blocks and the residual are
scaled by sqrt(rho'(s)) of the robust loss before they reach the normal
equations.

Observations are processed in fixed-size chunks. With an executor the
chunks run concurrently; results are always concatenated in chunk order so
repeated evaluations are identical.
"""

import logging
from concurrent.futures import Executor
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Tuple

import numpy as np

from .errors import DegenerateProjection
from .parameter_blocks import BundleProblem
from .projection import project_batch, project_with_jacobians
from .robust_loss import RobustLoss, create_loss
from .rotation import exp_so3

logger = logging.getLogger(__name__)

# Degenerate observations listed individually in the warning
_MAX_LISTED = 5


def parallel_map(executor: Optional[Executor], fn: Callable, items: Iterable) -> list:
    """Map in order, on the executor when there is one"""
    items = list(items)
    if executor is None or len(items) <= 1:
        return [fn(item) for item in items]
    return list(executor.map(fn, items))


@dataclass
class CostEvaluation:
    """Robustified cost of a parameter state"""

    cost: float
    residuals: np.ndarray
    valid: np.ndarray
    degenerate: List[DegenerateProjection] = field(default_factory=list)

    # Requested observations that are degenerate in this state
    num_lost: int = 0

    @property
    def num_excluded(self) -> int:
        return len(self.degenerate)


@dataclass
class Linearization:
    """Robust-scaled residuals and Jacobian blocks over the valid observations"""

    num_cameras: int
    num_points: int
    cost: float
    observation_indices: np.ndarray
    camera_indices: np.ndarray
    point_indices: np.ndarray
    residuals: np.ndarray
    jac_camera: np.ndarray
    jac_point: np.ndarray
    raw_residuals: np.ndarray
    degenerate: List[DegenerateProjection] = field(default_factory=list)

    @property
    def num_residual_blocks(self) -> int:
        return self.observation_indices.shape[0]

    @property
    def num_excluded(self) -> int:
        return len(self.degenerate)


class JacobianAssembler:
    """Evaluates residuals, robust weights and per-observation Jacobian blocks"""

    def __init__(
        self,
        loss: Optional[RobustLoss] = None,
        use_analytic_jacobian: bool = True,
        numeric_step: float = 1e-6,
        min_depth: float = 0.0,
        chunk_size: int = 65536,
        executor: Optional[Executor] = None,
    ):
        self.loss = loss or create_loss("huber", 1.0)
        self.use_analytic_jacobian = use_analytic_jacobian
        self.numeric_step = numeric_step
        self.min_depth = min_depth
        self.chunk_size = max(1, int(chunk_size))
        self.executor = executor

    @classmethod
    def from_config(cls, config, loss: Optional[RobustLoss] = None,
                    executor: Optional[Executor] = None) -> "JacobianAssembler":
        return cls(
            loss=loss or create_loss(config.loss, config.huber_delta),
            use_analytic_jacobian=config.use_analytic_jacobian,
            numeric_step=config.numeric_step,
            min_depth=config.min_depth,
            chunk_size=config.chunk_size,
            executor=executor,
        )

    def _chunks(self, num_observations: int) -> List[slice]:
        return [
            slice(start, min(start + self.chunk_size, num_observations))
            for start in range(0, num_observations, self.chunk_size)
        ]

    def _gather(self, problem: BundleProblem, sl: slice, camera_arrays) -> Tuple[np.ndarray, ...]:
        rotations, translations, intrinsics = camera_arrays
        cam = problem.camera_indices[sl]
        return (
            rotations[cam],
            translations[cam],
            intrinsics[cam],
            problem.points[problem.point_indices[sl]],
        )

    def _degenerate_errors(self, problem: BundleProblem, valid: np.ndarray,
                           depths: np.ndarray) -> List[DegenerateProjection]:
        return [
            DegenerateProjection(
                float(depths[i]),
                observation_index=int(i),
                camera_index=int(problem.camera_indices[i]),
                point_index=int(problem.point_indices[i]),
            )
            for i in np.flatnonzero(~valid)
        ]

    def _report_degenerate(self, errors: List[DegenerateProjection], level: int) -> None:
        if not errors:
            return
        listed = "; ".join(str(err) for err in errors[:_MAX_LISTED])
        more = f" (+{len(errors) - _MAX_LISTED} more)" if len(errors) > _MAX_LISTED else ""
        logger.log(level, f"Excluding {len(errors)} degenerate observations: {listed}{more}")

    def evaluate_cost(self, problem: BundleProblem,
                      observation_indices: Optional[np.ndarray] = None) -> CostEvaluation:
        """
        Robustified cost 0.5 * sum(rho(|r|^2))

        Without observation_indices the cost covers every non-degenerate
        observation. With them it covers exactly those observations, and is
        infinite if any of them has become degenerate.
        """
        m = problem.num_observations
        camera_arrays = problem.camera_arrays()

        def evaluate_chunk(sl: slice):
            R, t, K, X = self._gather(problem, sl, camera_arrays)
            pixels, valid, depths = project_batch(R, t, K, X, self.min_depth)
            residuals = pixels - problem.measurements[sl]
            valid &= np.all(np.isfinite(residuals), axis=1)
            return residuals, valid, depths

        results = parallel_map(self.executor, evaluate_chunk, self._chunks(m))
        if results:
            residuals = np.concatenate([r[0] for r in results])
            valid = np.concatenate([r[1] for r in results])
            depths = np.concatenate([r[2] for r in results])
        else:
            residuals, valid, depths = np.zeros((0, 2)), np.zeros(0, dtype=bool), np.zeros(0)

        residuals[~valid] = 0.0
        degenerate = self._degenerate_errors(problem, valid, depths)
        self._report_degenerate(degenerate, logging.DEBUG)

        num_lost = 0
        if observation_indices is None:
            cost = self.loss.cost(np.sum(residuals[valid] ** 2, axis=1))
        else:
            observation_indices = np.asarray(observation_indices, dtype=np.int64)
            num_lost = int(np.count_nonzero(~valid[observation_indices]))
            if num_lost:
                cost = float("inf")
            else:
                cost = self.loss.cost(np.sum(residuals[observation_indices] ** 2, axis=1))

        return CostEvaluation(
            cost=cost,
            residuals=residuals,
            valid=valid,
            degenerate=degenerate,
            num_lost=num_lost,
        )

    def linearize(self, problem: BundleProblem) -> Linearization:
        """Residuals and Jacobian blocks, robust-scaled, for every valid observation"""
        m = problem.num_observations
        camera_arrays = problem.camera_arrays()

        def linearize_chunk(sl: slice):
            R, t, K, X = self._gather(problem, sl, camera_arrays)
            if self.use_analytic_jacobian:
                pixels, jac_camera, jac_point, valid, depths = project_with_jacobians(
                    R, t, K, X, self.min_depth
                )
            else:
                pixels, valid, depths = project_batch(R, t, K, X, self.min_depth)
                jac_camera, jac_point, numeric_valid = self._numeric_jacobians(R, t, K, X)
                valid &= numeric_valid
            residuals = pixels - problem.measurements[sl]
            valid &= np.all(np.isfinite(residuals), axis=1)
            valid &= np.all(np.isfinite(jac_camera), axis=(1, 2)) & np.all(np.isfinite(jac_point), axis=(1, 2))
            return residuals, jac_camera, jac_point, valid, depths

        results = parallel_map(self.executor, linearize_chunk, self._chunks(m))
        if results:
            residuals = np.concatenate([r[0] for r in results])
            jac_camera = np.concatenate([r[1] for r in results])
            jac_point = np.concatenate([r[2] for r in results])
            valid = np.concatenate([r[3] for r in results])
            depths = np.concatenate([r[4] for r in results])
        else:
            residuals, valid, depths = np.zeros((0, 2)), np.zeros(0, dtype=bool), np.zeros(0)
            jac_camera, jac_point = np.zeros((0, 2, 9)), np.zeros((0, 2, 3))

        degenerate = self._degenerate_errors(problem, valid, depths)
        self._report_degenerate(degenerate, logging.WARNING)

        observation_indices = np.flatnonzero(valid)
        residuals = residuals[valid]
        jac_camera = jac_camera[valid]
        jac_point = jac_point[valid]

        rho = self.loss.evaluate(np.sum(residuals ** 2, axis=1))
        sqrt_weights = np.sqrt(rho[:, 1])

        return Linearization(
            num_cameras=problem.num_cameras,
            num_points=problem.num_points,
            cost=0.5 * float(np.sum(rho[:, 0])),
            observation_indices=observation_indices,
            camera_indices=problem.camera_indices[observation_indices],
            point_indices=problem.point_indices[observation_indices],
            residuals=sqrt_weights[:, None] * residuals,
            jac_camera=sqrt_weights[:, None, None] * jac_camera,
            jac_point=sqrt_weights[:, None, None] * jac_point,
            raw_residuals=residuals,
            degenerate=degenerate,
        )

    def _numeric_jacobians(self, R: np.ndarray, t: np.ndarray, K: np.ndarray,
                           X: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Central differences on the camera tangent space and the point"""
        n = R.shape[0]
        jac_camera = np.empty((n, 2, 9))
        jac_point = np.empty((n, 2, 3))
        valid = np.ones(n, dtype=bool)

        def central(plus_args, minus_args, step):
            plus, ok_plus, _ = project_batch(*plus_args, self.min_depth)
            minus, ok_minus, _ = project_batch(*minus_args, self.min_depth)
            valid[:] &= ok_plus & ok_minus
            return (plus - minus) / (2.0 * step)[..., None]

        # Rotation: R' = exp(+-h e_k) R
        h = self.numeric_step
        for k in range(3):
            omega = np.zeros(3)
            omega[k] = h
            R_plus = np.matmul(exp_so3(omega), R)
            R_minus = np.matmul(exp_so3(-omega), R)
            jac_camera[:, :, k] = central((R_plus, t, K, X), (R_minus, t, K, X), np.full(n, h))

        # Additive parameters use a step relative to their magnitude
        for k in range(3):
            step = h * np.maximum(1.0, np.abs(t[:, k]))
            dt = np.zeros_like(t)
            dt[:, k] = step
            jac_camera[:, :, 3 + k] = central((R, t + dt, K, X), (R, t - dt, K, X), step)

        for k in range(3):
            step = h * np.maximum(1.0, np.abs(K[:, k]))
            dK = np.zeros_like(K)
            dK[:, k] = step
            jac_camera[:, :, 6 + k] = central((R, t, K + dK, X), (R, t, K - dK, X), step)

        for k in range(3):
            step = h * np.maximum(1.0, np.abs(X[:, k]))
            dX = np.zeros_like(X)
            dX[:, k] = step
            jac_point[:, :, k] = central((R, t, K, X + dX), (R, t, K, X - dX), step)

        return jac_camera, jac_point, valid
