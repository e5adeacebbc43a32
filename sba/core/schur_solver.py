"""
Schur complement solver for the damped bundle adjustment normal equations

The normal equations have the block structure

    [ B   E ] [dc]     [b_c]
    [ E^T C ] [dp] = - [b_p]

with B block-diagonal over cameras (9x9), C block-diagonal over points
(3x3) and E the camera/point coupling. Points are eliminated first:

    S   = B - E C^-1 E^T
    b_c' = b_c - E C^-1 b_p
    S dc = -b_c'
    dp  = -C^-1 (b_p + E^T dc)

Elimination runs over contiguous ranges of point indices. Every range is
independent, so ranges can be eliminated on a thread pool; the partial
results are merged in range order, which keeps the reduced system
bit-identical regardless of scheduling.
"""

import logging
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
import scipy.sparse as sp
from scipy.linalg import LinAlgError, cho_factor, cho_solve
from scipy.sparse.linalg import LinearOperator, cg, spsolve

from .errors import ReducedSystemError, SingularPointBlock
from .jacobian_assembly import Linearization, parallel_map
from .parameter_blocks import CAMERA_TANGENT_SIZE, POINT_BLOCK_SIZE

logger = logging.getLogger(__name__)

# Upper bound on camera pairs (9x9 blocks) held by one elimination range
_MAX_PAIRS_PER_PARTITION = 1 << 17


@dataclass
class NormalEquations:
    """Undamped Gauss-Newton normal equations, kept in block form"""

    num_cameras: int
    num_points: int
    camera_blocks: np.ndarray      # B, (num_cameras, 9, 9)
    point_blocks: np.ndarray       # C, (num_points, 3, 3)
    coupling: np.ndarray           # W = Jc^T Jp per observation, (k, 9, 3)
    camera_gradient: np.ndarray    # b_c = Jc^T r, (num_cameras, 9)
    point_gradient: np.ndarray     # b_p = Jp^T r, (num_points, 3)
    camera_indices: np.ndarray
    point_indices: np.ndarray
    active_cameras: np.ndarray
    active_points: np.ndarray
    point_order: np.ndarray        # observation order sorted by point
    point_offsets: np.ndarray      # (num_points + 1,) offsets into point_order

    def gradient_max_norm(self) -> float:
        """Max-norm of J^T r over all parameters"""
        norms = [0.0]
        if self.camera_gradient.size:
            norms.append(float(np.max(np.abs(self.camera_gradient))))
        if self.point_gradient.size:
            norms.append(float(np.max(np.abs(self.point_gradient))))
        return max(norms)


@dataclass
class SchurStep:
    """Solution of one damped system"""

    delta_cameras: np.ndarray
    delta_points: np.ndarray
    reduced_system_size: int
    linear_solver: str

    def norm(self) -> float:
        return float(np.sqrt(np.sum(self.delta_cameras ** 2) + np.sum(self.delta_points ** 2)))


@dataclass
class _EliminatedRange:
    pair_keys: np.ndarray
    pair_blocks: np.ndarray
    rhs: np.ndarray
    point_inverses: np.ndarray


def _block_outer(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Per-observation a^T b for stacked (k, 2, n) and (k, 2, m) blocks"""
    return np.einsum('kai,kaj->kij', a, b)


class SchurComplementSolver:
    """Builds and solves the damped normal equations by eliminating points"""

    def __init__(
        self,
        linear_solver: str = "auto",
        dense_camera_limit: int = 200,
        min_diagonal: float = 1e-6,
        max_diagonal: float = 1e32,
        point_block_condition_limit: float = 1e12,
        cg_max_iterations: int = 500,
        cg_tolerance: float = 1e-6,
        executor: Optional[Executor] = None,
        num_partitions: int = 1,
    ):
        self.linear_solver = linear_solver
        self.dense_camera_limit = dense_camera_limit
        self.min_diagonal = min_diagonal
        self.max_diagonal = max_diagonal
        self.point_block_condition_limit = point_block_condition_limit
        self.cg_max_iterations = cg_max_iterations
        self.cg_tolerance = cg_tolerance
        self.executor = executor
        self.num_partitions = max(1, int(num_partitions))

    @classmethod
    def from_config(cls, solver_config, executor: Optional[Executor] = None,
                    num_threads: int = 1) -> "SchurComplementSolver":
        return cls(
            linear_solver=solver_config.linear_solver,
            dense_camera_limit=solver_config.dense_camera_limit,
            min_diagonal=solver_config.min_diagonal,
            max_diagonal=solver_config.max_diagonal,
            point_block_condition_limit=solver_config.point_block_condition_limit,
            cg_max_iterations=solver_config.cg_max_iterations,
            cg_tolerance=solver_config.cg_tolerance,
            executor=executor,
            num_partitions=4 * num_threads if executor is not None else 1,
        )

    def build(self, linearization: Linearization) -> NormalEquations:
        """Accumulate J^T J and J^T r block by block"""
        nc, npts = linearization.num_cameras, linearization.num_points
        cam = linearization.camera_indices
        pt = linearization.point_indices
        jac_camera = linearization.jac_camera
        jac_point = linearization.jac_point
        residuals = linearization.residuals

        camera_blocks = np.zeros((nc, CAMERA_TANGENT_SIZE, CAMERA_TANGENT_SIZE))
        np.add.at(camera_blocks, cam, _block_outer(jac_camera, jac_camera))
        point_blocks = np.zeros((npts, POINT_BLOCK_SIZE, POINT_BLOCK_SIZE))
        np.add.at(point_blocks, pt, _block_outer(jac_point, jac_point))

        camera_gradient = np.zeros((nc, CAMERA_TANGENT_SIZE))
        np.add.at(camera_gradient, cam, np.einsum('kai,ka->ki', jac_camera, residuals))
        point_gradient = np.zeros((npts, POINT_BLOCK_SIZE))
        np.add.at(point_gradient, pt, np.einsum('kai,ka->ki', jac_point, residuals))

        counts = np.bincount(pt, minlength=npts)
        point_offsets = np.concatenate([[0], np.cumsum(counts)]).astype(np.int64)

        return NormalEquations(
            num_cameras=nc,
            num_points=npts,
            camera_blocks=camera_blocks,
            point_blocks=point_blocks,
            coupling=_block_outer(jac_camera, jac_point),
            camera_gradient=camera_gradient,
            point_gradient=point_gradient,
            camera_indices=cam,
            point_indices=pt,
            active_cameras=np.bincount(cam, minlength=nc) > 0,
            active_points=counts > 0,
            point_order=np.argsort(pt, kind="stable"),
            point_offsets=point_offsets,
        )

    def _damp(self, equations: NormalEquations, lambda_: float) -> Tuple[np.ndarray, np.ndarray]:
        """Add lambda * clamp(diag(J^T J)) to every diagonal block"""
        camera_blocks = equations.camera_blocks.copy()
        point_blocks = equations.point_blocks.copy()

        for blocks, size in ((camera_blocks, CAMERA_TANGENT_SIZE), (point_blocks, POINT_BLOCK_SIZE)):
            idx = np.arange(size)
            diagonal = np.clip(blocks[:, idx, idx], self.min_diagonal, self.max_diagonal)
            blocks[:, idx, idx] += lambda_ * diagonal

        # Cameras without observations keep a trivial, well-posed row
        camera_blocks[~equations.active_cameras] = np.eye(CAMERA_TANGENT_SIZE)
        return camera_blocks, point_blocks

    def _partition(self, equations: NormalEquations) -> List[Tuple[int, int]]:
        """Split point indices into contiguous ranges of similar pair work"""
        npts = equations.num_points
        if npts == 0:
            return []
        counts = np.diff(equations.point_offsets)
        pair_work = np.cumsum(counts.astype(np.float64) ** 2)
        total = pair_work[-1]
        num_ranges = max(self.num_partitions, int(np.ceil(total / _MAX_PAIRS_PER_PARTITION)))
        num_ranges = min(num_ranges, npts)
        if num_ranges <= 1:
            return [(0, npts)]

        targets = total * np.arange(1, num_ranges) / num_ranges
        cuts = np.unique(np.clip(np.searchsorted(pair_work, targets) + 1, 1, npts - 1))
        bounds = [0] + cuts.tolist() + [npts]
        return [(lo, hi) for lo, hi in zip(bounds[:-1], bounds[1:]) if hi > lo]

    def _invert_point_blocks(self, blocks: np.ndarray, active: np.ndarray, first_point: int) -> np.ndarray:
        inverses = np.zeros_like(blocks)
        if not np.any(active):
            return inverses
        active_blocks = blocks[active]
        with np.errstate(all="ignore"):
            condition = np.linalg.cond(active_blocks)
        bad = ~np.isfinite(condition) | (condition > self.point_block_condition_limit)
        if np.any(bad):
            i = int(np.flatnonzero(bad)[0])
            point_index = first_point + int(np.flatnonzero(active)[i])
            raise SingularPointBlock(point_index, float(condition[i]))
        inverses[active] = np.linalg.inv(active_blocks)
        return inverses

    def _eliminate_range(self, equations: NormalEquations, point_blocks: np.ndarray,
                         bounds: Tuple[int, int]) -> _EliminatedRange:
        """Contributions of points [lo, hi) to S and b_c'"""
        lo, hi = bounds
        nc = equations.num_cameras
        point_inverses = self._invert_point_blocks(
            point_blocks[lo:hi], equations.active_points[lo:hi], lo
        )

        first, last = equations.point_offsets[lo], equations.point_offsets[hi]
        obs = equations.point_order[first:last]
        rhs = np.zeros((nc, CAMERA_TANGENT_SIZE))
        if obs.size == 0:
            return _EliminatedRange(
                np.zeros(0, dtype=np.int64),
                np.zeros((0, CAMERA_TANGENT_SIZE, CAMERA_TANGENT_SIZE)),
                rhs,
                point_inverses,
            )

        obs_points = equations.point_indices[obs]
        obs_cameras = equations.camera_indices[obs]
        coupling = equations.coupling[obs]

        # Y = W C^-1 per observation
        y = np.matmul(coupling, point_inverses[obs_points - lo])
        np.add.at(rhs, obs_cameras, np.einsum('kij,kj->ki', y, equations.point_gradient[obs_points]))

        # Every ordered pair of observations that share a point
        track_length = np.diff(equations.point_offsets)[obs_points]
        left = np.repeat(np.arange(obs.size), track_length)
        within = np.arange(left.size) - np.repeat(np.cumsum(track_length) - track_length, track_length)
        track_start = equations.point_offsets[obs_points] - first
        right = track_start[left] + within

        keys = obs_cameras[left] * nc + obs_cameras[right]
        blocks = np.matmul(y[left], np.transpose(coupling[right], (0, 2, 1)))
        pair_keys, inverse = np.unique(keys, return_inverse=True)
        pair_blocks = np.zeros((pair_keys.size, CAMERA_TANGENT_SIZE, CAMERA_TANGENT_SIZE))
        np.add.at(pair_blocks, inverse.reshape(-1), blocks)
        return _EliminatedRange(pair_keys, pair_blocks, rhs, point_inverses)

    def _eliminate(self, equations: NormalEquations, lambda_: float):
        camera_blocks, point_blocks = self._damp(equations, lambda_)
        ranges = self._partition(equations)
        eliminated = parallel_map(
            self.executor,
            lambda bounds: self._eliminate_range(equations, point_blocks, bounds),
            ranges,
        )
        return camera_blocks, eliminated

    def _assemble(self, equations: NormalEquations, camera_blocks: np.ndarray,
                  eliminated: List[_EliminatedRange]) -> Tuple[sp.bsr_matrix, np.ndarray, np.ndarray]:
        """Merge range results, in range order, into a block-sparse S"""
        nc = equations.num_cameras
        n = CAMERA_TANGENT_SIZE
        diagonal_keys = np.arange(nc, dtype=np.int64) * (nc + 1)

        keys = np.concatenate([diagonal_keys] + [part.pair_keys for part in eliminated])
        blocks = np.concatenate([camera_blocks] + [-part.pair_blocks for part in eliminated])
        unique_keys, inverse = np.unique(keys, return_inverse=True)
        s_blocks = np.zeros((unique_keys.size, n, n))
        np.add.at(s_blocks, inverse.reshape(-1), blocks)

        rows = unique_keys // nc
        cols = unique_keys % nc
        indptr = np.concatenate([[0], np.cumsum(np.bincount(rows, minlength=nc))])
        reduced = sp.bsr_matrix((s_blocks, cols, indptr), shape=(n * nc, n * nc))

        rhs = equations.camera_gradient.copy()
        for part in eliminated:
            rhs -= part.rhs
        return reduced, rhs.reshape(-1), s_blocks[rows == cols]

    def reduced_system(self, equations: NormalEquations, lambda_: float) -> Tuple[sp.csr_matrix, np.ndarray]:
        """Reduced camera matrix S and right-hand side b_c' for a given damping"""
        camera_blocks, eliminated = self._eliminate(equations, lambda_)
        reduced, rhs, _ = self._assemble(equations, camera_blocks, eliminated)
        return reduced.tocsr(), rhs

    def _select_method(self, num_cameras: int) -> str:
        if self.linear_solver != "auto":
            return self.linear_solver
        return "dense" if num_cameras <= self.dense_camera_limit else "sparse"

    def _solve_reduced(self, reduced: sp.bsr_matrix, rhs: np.ndarray,
                       diagonal_blocks: np.ndarray, method: str) -> np.ndarray:
        if rhs.size == 0:
            return np.zeros(0)

        if method == "dense":
            try:
                factor = cho_factor(reduced.toarray(), lower=True)
                solution = cho_solve(factor, -rhs)
            except (LinAlgError, ValueError) as e:
                raise ReducedSystemError(f"Cholesky factorization of reduced system failed: {e}") from e
        elif method == "sparse":
            solution = spsolve(reduced.tocsc(), -rhs)
        elif method == "iterative":
            # Block-Jacobi preconditioner over camera blocks
            try:
                preconditioner_blocks = np.linalg.inv(diagonal_blocks)
            except np.linalg.LinAlgError as e:
                raise ReducedSystemError(f"Singular camera block in preconditioner: {e}") from e
            n = CAMERA_TANGENT_SIZE
            preconditioner = LinearOperator(
                reduced.shape,
                matvec=lambda v: np.einsum(
                    'nij,nj->ni', preconditioner_blocks, np.asarray(v).reshape(-1, n)
                ).reshape(-1),
                dtype=np.float64,
            )
            solution, info = cg(
                reduced.tocsr(), -rhs,
                rtol=self.cg_tolerance, maxiter=self.cg_max_iterations, M=preconditioner,
            )
            if info < 0:
                raise ReducedSystemError(f"Conjugate gradients broke down (info={info})")
            if info > 0:
                logger.debug(f"Conjugate gradients stopped after {info} iterations without reaching tolerance")
        else:
            raise ValueError(f"Unknown linear solver: {method}")

        solution = np.asarray(solution, dtype=np.float64)
        if not np.all(np.isfinite(solution)):
            raise ReducedSystemError(f"Reduced system solve ({method}) produced non-finite values")
        return solution

    def solve(self, equations: NormalEquations, lambda_: float) -> SchurStep:
        """
        Solve the damped system for a camera and a point update

        Raises:
            SingularPointBlock: a damped point block cannot be inverted
            ReducedSystemError: the reduced camera system cannot be solved
        """
        nc = equations.num_cameras
        camera_blocks, eliminated = self._eliminate(equations, lambda_)
        reduced, rhs, diagonal_blocks = self._assemble(equations, camera_blocks, eliminated)

        method = self._select_method(nc)
        solution = self._solve_reduced(reduced, rhs, diagonal_blocks, method)
        delta_cameras = solution.reshape(nc, CAMERA_TANGENT_SIZE)
        delta_cameras[~equations.active_cameras] = 0.0

        # Back-substitution: dp = -C^-1 (b_p + W^T dc)
        if eliminated:
            point_inverses = np.concatenate([part.point_inverses for part in eliminated])
        else:
            point_inverses = np.zeros((0, POINT_BLOCK_SIZE, POINT_BLOCK_SIZE))
        point_rhs = equations.point_gradient.copy()
        np.add.at(
            point_rhs,
            equations.point_indices,
            np.einsum('kij,ki->kj', equations.coupling, delta_cameras[equations.camera_indices]),
        )
        delta_points = -np.einsum('nij,nj->ni', point_inverses, point_rhs)
        delta_points[~equations.active_points] = 0.0

        logger.debug(
            f"Schur step: {len(eliminated)} elimination ranges, reduced system "
            f"{reduced.shape[0]}x{reduced.shape[1]} ({reduced.nnz} nonzeros), solver={method}"
        )
        return SchurStep(
            delta_cameras=delta_cameras,
            delta_points=delta_points,
            reduced_system_size=reduced.shape[0],
            linear_solver=method,
        )
