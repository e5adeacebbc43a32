"""
Schur Bundle Adjustment Package
Sparse Levenberg-Marquardt bundle adjustment over BAL-style problems
"""

__version__ = "0.1.0"


# Lazy imports - scipy and the solver are only loaded when actually used
def __getattr__(name):
    """Lazy import for module attributes"""

    # Core components
    if name == "LevenbergMarquardtSolver":
        from .core.levenberg_marquardt import LevenbergMarquardtSolver
        return LevenbergMarquardtSolver
    elif name == "solve_bundle_adjustment":
        from .core.levenberg_marquardt import solve_bundle_adjustment
        return solve_bundle_adjustment
    elif name == "SolverSummary":
        from .core.levenberg_marquardt import SolverSummary
        return SolverSummary
    elif name == "TerminationType":
        from .core.levenberg_marquardt import TerminationType
        return TerminationType
    elif name == "BundleProblem":
        from .core.parameter_blocks import BundleProblem
        return BundleProblem
    elif name == "CameraBlock":
        from .core.parameter_blocks import CameraBlock
        return CameraBlock
    elif name == "BundleAdjustmentConfig":
        from .core.config import BundleAdjustmentConfig
        return BundleAdjustmentConfig
    elif name == "SolverConfig":
        from .core.config import SolverConfig
        return SolverConfig
    # Utilities (lighter imports)
    elif name == "load_bal_problem":
        from .utils.bal_io import load_bal_problem
        return load_bal_problem
    elif name == "write_bal_problem":
        from .utils.bal_io import write_bal_problem
        return write_bal_problem
    elif name == "write_ply":
        from .utils.bal_io import write_ply
        return write_ply
    elif name == "QualityMetrics":
        from .utils.quality_metrics import QualityMetrics
        return QualityMetrics

    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")


__all__ = [
    # Core components
    "LevenbergMarquardtSolver",
    "solve_bundle_adjustment",
    "SolverSummary",
    "TerminationType",
    "BundleProblem",
    "CameraBlock",
    "BundleAdjustmentConfig",
    "SolverConfig",

    # Utilities
    "load_bal_problem",
    "write_bal_problem",
    "write_ply",
    "QualityMetrics",
]
