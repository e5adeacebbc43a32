"""
Synthetic bundle adjustment scenes

Cameras sit on a short baseline along x looking down -z at a box of points;
every camera observes every point. Measurements are produced by the same
projection the solver uses, so a noise-free scene is an exact solution.
"""

import numpy as np

from ..core.parameter_blocks import BundleProblem, make_camera
from ..core.projection import project_batch


def generate_synthetic_problem(
    num_cameras: int = 4,
    num_points: int = 15,
    noise: float = 0.0,
    focal: float = 500.0,
    k1: float = 0.0,
    k2: float = 0.0,
    min_depth: float = 4.0,
    max_depth: float = 6.0,
    use_quaternion: bool = False,
    seed: int = 0,
) -> BundleProblem:
    """
    Generate a fully observed scene

    Args:
        num_cameras: Number of cameras on the baseline
        num_points: Number of points in front of all cameras
        noise: Standard deviation of pixel noise added to measurements
        focal, k1, k2: Intrinsics shared by all cameras
        min_depth, max_depth: Depth range of the points
        use_quaternion: Store rotations as quaternions
        seed: Random seed

    Returns:
        BundleProblem with num_cameras * num_points observations
    """
    rng = np.random.default_rng(seed)

    cameras = [
        make_camera(
            rotation=rng.normal(0.0, 0.05, size=3),
            translation=np.array([0.5 * i - 0.25 * (num_cameras - 1), rng.normal(0.0, 0.1), rng.normal(0.0, 0.1)]),
            focal=focal,
            k1=k1,
            k2=k2,
            use_quaternion=use_quaternion,
        )
        for i in range(num_cameras)
    ]
    points = np.column_stack([
        rng.uniform(-1.0, 1.0, size=num_points),
        rng.uniform(-1.0, 1.0, size=num_points),
        -rng.uniform(min_depth, max_depth, size=num_points),
    ])

    camera_indices = np.repeat(np.arange(num_cameras), num_points)
    point_indices = np.tile(np.arange(num_points), num_cameras)

    problem = BundleProblem(
        cameras=cameras,
        points=points,
        camera_indices=camera_indices,
        point_indices=point_indices,
        measurements=np.zeros((camera_indices.size, 2)),
        use_quaternion=use_quaternion,
    )
    rotations, translations, intrinsics = problem.camera_arrays()
    pixels, valid, _ = project_batch(
        rotations[camera_indices],
        translations[camera_indices],
        intrinsics[camera_indices],
        problem.points[point_indices],
    )
    if not np.all(valid):
        raise ValueError("Synthetic scene has points behind a camera; reduce the rotation spread")
    if noise > 0.0:
        pixels = pixels + rng.normal(0.0, noise, size=pixels.shape)

    return BundleProblem(
        cameras=problem.cameras,
        points=problem.points,
        camera_indices=camera_indices,
        point_indices=point_indices,
        measurements=pixels,
        use_quaternion=use_quaternion,
    )
