"""
Problem conditioning before a solve

normalize_problem rescales the scene so that the median absolute deviation
of the points is 100 and their median sits at the origin; perturb_problem
adds Gaussian noise to an exact problem so the solver has work to do. Both
operate in place on the parameter blocks; observations are untouched.
"""

import logging
from typing import Optional

import numpy as np

from ..core.parameter_blocks import BundleProblem, CameraBlock

logger = logging.getLogger(__name__)

_TARGET_SCALE = 100.0


def _camera_from_center(camera: CameraBlock, angle_axis: np.ndarray, center: np.ndarray) -> CameraBlock:
    """Rebuild a camera with the same type of rotation from angle-axis and center, t = -R c"""
    rotation = type(camera.rotation).from_angle_axis(angle_axis)
    return CameraBlock(
        rotation=rotation,
        translation=-rotation.matrix() @ center,
        focal=camera.focal,
        k1=camera.k1,
        k2=camera.k2,
    )


def normalize_problem(problem: BundleProblem) -> float:
    """
    Center the points on their median and scale them to a fixed spread

    Camera centers receive the same similarity transform, so projections are
    unchanged.

    Returns:
        The scale factor that was applied
    """
    if problem.num_points == 0:
        logger.warning("Cannot normalize a problem without points")
        return 1.0

    median = np.median(problem.points, axis=0)
    deviation = np.sum(np.abs(problem.points - median), axis=1)
    median_absolute_deviation = float(np.median(deviation))
    if median_absolute_deviation <= 0.0:
        logger.warning("Points have zero spread, skipping normalization")
        return 1.0

    scale = _TARGET_SCALE / median_absolute_deviation
    problem.points = scale * (problem.points - median)

    cameras = []
    for camera in problem.cameras:
        center = scale * (camera.center() - median)
        cameras.append(_camera_from_center(camera, camera.rotation.to_angle_axis(), center))
    problem.cameras = cameras

    logger.info(f"Normalized problem: median {median}, scale {scale:.6g}")
    return scale


def perturb_problem(
    problem: BundleProblem,
    rotation_sigma: float = 0.0,
    translation_sigma: float = 0.0,
    point_sigma: float = 0.0,
    seed: Optional[int] = None,
) -> None:
    """
    Add Gaussian noise to points, camera orientations and camera translations

    Rotation noise (radians) is applied to the angle-axis vector while the
    camera center is held fixed; translation noise is then added to t.
    """
    if rotation_sigma < 0.0 or translation_sigma < 0.0 or point_sigma < 0.0:
        raise ValueError("Perturbation sigmas must be non-negative")

    rng = np.random.default_rng(seed)

    if point_sigma > 0.0:
        problem.points = problem.points + rng.normal(0.0, point_sigma, size=problem.points.shape)

    cameras = []
    for camera in problem.cameras:
        angle_axis = camera.rotation.to_angle_axis()
        center = camera.center()
        if rotation_sigma > 0.0:
            angle_axis = angle_axis + rng.normal(0.0, rotation_sigma, size=3)
        camera = _camera_from_center(camera, angle_axis, center)
        if translation_sigma > 0.0:
            camera.translation = camera.translation + rng.normal(0.0, translation_sigma, size=3)
        cameras.append(camera)
    problem.cameras = cameras

    logger.info(
        f"Perturbed problem: rotation_sigma={rotation_sigma}, translation_sigma={translation_sigma}, "
        f"point_sigma={point_sigma}, seed={seed}"
    )
