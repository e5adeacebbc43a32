"""
Quality metrics for bundle adjustment results
"""

import logging
from typing import Any, Dict

import numpy as np

from ..core.parameter_blocks import BundleProblem
from ..core.projection import project_batch

logger = logging.getLogger(__name__)


def reprojection_errors(problem: BundleProblem, min_depth: float = 0.0) -> np.ndarray:
    """Per-observation pixel error |project(camera, point) - measured|, NaN when degenerate"""
    rotations, translations, intrinsics = problem.camera_arrays()
    cam = problem.camera_indices
    pixels, valid, _ = project_batch(
        rotations[cam],
        translations[cam],
        intrinsics[cam],
        problem.points[problem.point_indices],
        min_depth,
    )
    errors = np.linalg.norm(pixels - problem.measurements, axis=1)
    errors[~valid] = np.nan
    return errors


class QualityMetrics:
    """Quality metrics for bundle adjustment evaluation"""

    def __init__(self, min_depth: float = 0.0):
        self.min_depth = min_depth
        self.metrics = {}

    def evaluate(self, problem: BundleProblem) -> Dict[str, Any]:
        """Reprojection error statistics and observation graph statistics"""
        errors = reprojection_errors(problem, self.min_depth)
        finite = errors[np.isfinite(errors)]

        metrics = {
            'num_cameras': problem.num_cameras,
            'num_points': problem.num_points,
            'num_observations': problem.num_observations,
            'num_degenerate': int(errors.size - finite.size),
            'mean_reprojection_error': 0.0,
            'median_reprojection_error': 0.0,
            'rms_reprojection_error': 0.0,
            'max_reprojection_error': 0.0,
            'mean_track_length': 0.0,
            'mean_observations_per_camera': 0.0,
        }

        if finite.size:
            metrics['mean_reprojection_error'] = float(np.mean(finite))
            metrics['median_reprojection_error'] = float(np.median(finite))
            metrics['rms_reprojection_error'] = float(np.sqrt(np.mean(finite ** 2)))
            metrics['max_reprojection_error'] = float(np.max(finite))

        if problem.num_points:
            metrics['mean_track_length'] = problem.num_observations / problem.num_points
        if problem.num_cameras:
            metrics['mean_observations_per_camera'] = problem.num_observations / problem.num_cameras

        self.metrics = metrics
        return metrics

    def compare(self, before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, float]:
        """Change of the error statistics between two evaluations"""
        keys = (
            'mean_reprojection_error',
            'median_reprojection_error',
            'rms_reprojection_error',
            'max_reprojection_error',
        )
        return {f"{key}_change": after[key] - before[key] for key in keys}

    def log_summary(self, metrics: Dict[str, Any] = None) -> None:
        metrics = metrics or self.metrics
        logger.info(
            f"Reprojection error: mean={metrics['mean_reprojection_error']:.4f}px, "
            f"median={metrics['median_reprojection_error']:.4f}px, "
            f"rms={metrics['rms_reprojection_error']:.4f}px, "
            f"max={metrics['max_reprojection_error']:.4f}px "
            f"({metrics['num_degenerate']} degenerate observations)"
        )
