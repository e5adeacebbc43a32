"""
Configuration management for sparse bundle adjustment

Uses dataclasses for type safety and validation.
"""

from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any

import psutil


LINEAR_SOLVERS = ("auto", "dense", "sparse", "iterative")
LOSS_FUNCTIONS = ("trivial", "huber", "cauchy", "soft_l1")


@dataclass
class SolverConfig:
    """Configuration for the Levenberg-Marquardt driver and Schur solver"""

    # Maximum outer iterations
    max_iterations: int = 40

    # Damping schedule
    initial_lambda: float = 1e-4
    lambda_up_down_factor: float = 10.0
    min_lambda: float = 1e-16
    max_lambda: float = 1e16
    max_consecutive_rejections: int = 10

    # Convergence tolerances
    cost_tolerance_relative: float = 1e-6
    gradient_tolerance_absolute: float = 1e-10
    parameter_tolerance: float = 1e-8

    # Wall-clock budget in seconds (None disables it)
    max_solver_time_seconds: Optional[float] = None

    # Reduced camera system: "auto", "dense", "sparse" or "iterative"
    linear_solver: str = "auto"

    # "auto" uses the dense solver up to this many cameras
    dense_camera_limit: int = 200

    # Clamp for the diagonal of J^T J used as damping matrix
    min_diagonal: float = 1e-6
    max_diagonal: float = 1e32

    # Damped point blocks above this condition number are singular
    point_block_condition_limit: float = 1e12

    # Conjugate gradients (iterative linear solver only)
    cg_max_iterations: int = 500
    cg_tolerance: float = 1e-6

    def __post_init__(self):
        """Validate solver options"""
        if self.max_iterations < 0:
            raise ValueError(f"max_iterations must be >= 0, got {self.max_iterations}")
        if self.initial_lambda <= 0.0:
            raise ValueError(f"initial_lambda must be positive, got {self.initial_lambda}")
        if self.lambda_up_down_factor <= 1.0:
            raise ValueError(f"lambda_up_down_factor must be > 1, got {self.lambda_up_down_factor}")
        if not (0.0 < self.min_lambda <= self.initial_lambda <= self.max_lambda):
            raise ValueError(
                f"Expected 0 < min_lambda <= initial_lambda <= max_lambda, got "
                f"{self.min_lambda}, {self.initial_lambda}, {self.max_lambda}"
            )
        if self.max_consecutive_rejections < 1:
            raise ValueError("max_consecutive_rejections must be >= 1")
        if self.linear_solver not in LINEAR_SOLVERS:
            raise ValueError(f"Invalid linear_solver: {self.linear_solver}")
        if not (0.0 < self.min_diagonal <= self.max_diagonal):
            raise ValueError("Expected 0 < min_diagonal <= max_diagonal")
        if self.max_solver_time_seconds is not None and self.max_solver_time_seconds <= 0.0:
            raise ValueError("max_solver_time_seconds must be positive when set")


@dataclass
class BundleAdjustmentConfig:
    """Main configuration for bundle adjustment"""

    solver: SolverConfig = field(default_factory=SolverConfig)

    # Robust loss: "trivial", "huber", "cauchy", "soft_l1"
    loss: str = "huber"
    huber_delta: float = 1.0

    # Camera rotation representation (quaternion blocks have 10 scalars)
    use_quaternion_rotation: bool = False

    # Analytic derivatives, otherwise central differences
    use_analytic_jacobian: bool = True
    numeric_step: float = 1e-6

    # Observations with depth <= min_depth are excluded
    min_depth: float = 0.0

    # Worker threads for data-parallel evaluation (None = min(cpu_count, 8))
    num_threads: Optional[int] = None

    # Observations per evaluation chunk
    chunk_size: int = 65536

    # Show a tqdm progress bar over iterations
    show_progress: bool = False

    # Logging level: "DEBUG", "INFO", "WARNING", "ERROR"
    log_level: str = "INFO"

    def __post_init__(self):
        """Validate configuration"""
        if self.loss not in LOSS_FUNCTIONS:
            raise ValueError(f"Invalid loss: {self.loss}")
        if self.huber_delta <= 0.0:
            raise ValueError(f"huber_delta must be positive, got {self.huber_delta}")
        if self.numeric_step <= 0.0:
            raise ValueError(f"numeric_step must be positive, got {self.numeric_step}")
        if self.chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {self.chunk_size}")

        if self.num_threads is None:
            self.num_threads = min(psutil.cpu_count() or 1, 8)
        elif self.num_threads < 1:
            raise ValueError(f"num_threads must be >= 1, got {self.num_threads}")

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> "BundleAdjustmentConfig":
        """Create config from dictionary (for CLI/JSON loading)"""
        config_dict = dict(config_dict)
        solver = SolverConfig(**config_dict.pop("solver", {}))
        return cls(solver=solver, **config_dict)

    def to_dict(self) -> Dict[str, Any]:
        """Export config to dictionary"""
        return asdict(self)
