"""
Utility modules for loading, preprocessing and evaluating BAL problems
"""

from .bal_io import BALFormatError, load_bal_problem, write_bal_problem, write_ply
from .bal_preprocessing import normalize_problem, perturb_problem
from .quality_metrics import QualityMetrics, reprojection_errors
from .synthetic import generate_synthetic_problem

__all__ = [
    "BALFormatError",
    "load_bal_problem",
    "write_bal_problem",
    "write_ply",
    "normalize_problem",
    "perturb_problem",
    "QualityMetrics",
    "reprojection_errors",
    "generate_synthetic_problem",
]
