"""
Core bundle adjustment components
"""

from .config import BundleAdjustmentConfig, SolverConfig
from .errors import (
    AllObservationsDegenerate,
    BundleAdjustmentError,
    DegenerateProjection,
    IterationBudgetExhausted,
    MalformedObservation,
    ReducedSystemError,
    SingularPointBlock,
    StepRejectedRepeatedly,
)
from .rotation import AngleAxisRotation, Orientation, QuaternionRotation
from .parameter_blocks import BundleProblem, CameraBlock, Observation, make_camera
from .projection import project, project_batch, project_with_jacobians, reprojection_residual
from .robust_loss import CauchyLoss, HuberLoss, RobustLoss, SoftL1Loss, TrivialLoss, create_loss
from .jacobian_assembly import CostEvaluation, JacobianAssembler, Linearization
from .schur_solver import NormalEquations, SchurComplementSolver, SchurStep
from .levenberg_marquardt import (
    IterationSummary,
    LevenbergMarquardtSolver,
    SolverState,
    SolverSummary,
    TerminationType,
    solve_bundle_adjustment,
)

__all__ = [
    # Configuration and errors
    "BundleAdjustmentConfig",
    "SolverConfig",
    "AllObservationsDegenerate",
    "BundleAdjustmentError",
    "DegenerateProjection",
    "IterationBudgetExhausted",
    "MalformedObservation",
    "ReducedSystemError",
    "SingularPointBlock",
    "StepRejectedRepeatedly",
    # Parameter blocks and projection
    "AngleAxisRotation",
    "Orientation",
    "QuaternionRotation",
    "BundleProblem",
    "CameraBlock",
    "Observation",
    "make_camera",
    "project",
    "project_batch",
    "project_with_jacobians",
    "reprojection_residual",
    # Loss and linearization
    "RobustLoss",
    "TrivialLoss",
    "HuberLoss",
    "CauchyLoss",
    "SoftL1Loss",
    "create_loss",
    "CostEvaluation",
    "JacobianAssembler",
    "Linearization",
    # Solvers
    "NormalEquations",
    "SchurComplementSolver",
    "SchurStep",
    "IterationSummary",
    "LevenbergMarquardtSolver",
    "SolverState",
    "SolverSummary",
    "TerminationType",
    "solve_bundle_adjustment",
]
