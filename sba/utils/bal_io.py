"""
I/O utilities for Bundle Adjustment in the Large (BAL) problem files

Layout of a BAL file (whitespace separated, optionally bzip2 compressed):

    <num_cameras> <num_points> <num_observations>
    <camera_index> <point_index> <x> <y>       (num_observations lines)
    <camera_1> ... <camera_num_cameras>        (9 values each)
    <point_1> ... <point_num_points>           (3 values each)

Cameras are stored as angle-axis(3), translation(3), focal, k1, k2. With
quaternion rotations the angle-axis is converted on load and converted back
on write, so files on disk always use the 9-value layout.
"""

import bz2
import logging
from pathlib import Path
from typing import Union

import numpy as np

from ..core.parameter_blocks import BundleProblem, CameraBlock
from ..core.rotation import orientation_type

logger = logging.getLogger(__name__)

BAL_CAMERA_SIZE = 9


class BALFormatError(ValueError):
    """The file does not follow the BAL layout"""


def _open_text(path: Path, mode: str):
    if path.suffix == ".bz2":
        return bz2.open(path, mode + "t")
    return open(path, mode)


def load_bal_problem(path: Union[str, Path], use_quaternion: bool = False) -> BundleProblem:
    """
    Load a BAL problem file

    Args:
        path: Path to a .txt or .bz2 BAL file
        use_quaternion: Store camera rotations as unit quaternions

    Returns:
        BundleProblem with validated observation indices
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"BAL file not found: {path}")

    with _open_text(path, "r") as f:
        tokens = f.read().split()

    if len(tokens) < 3:
        raise BALFormatError(f"{path}: missing header")
    try:
        num_cameras, num_points, num_observations = (int(tok) for tok in tokens[:3])
    except ValueError as e:
        raise BALFormatError(f"{path}: invalid header {tokens[:3]}") from e

    num_parameters = BAL_CAMERA_SIZE * num_cameras + 3 * num_points
    expected = 3 + 4 * num_observations + num_parameters
    if len(tokens) < expected:
        raise BALFormatError(f"{path}: expected {expected} values, found {len(tokens)}")
    if len(tokens) > expected:
        logger.warning(f"{path}: ignoring {len(tokens) - expected} trailing values")

    try:
        observations = np.array(tokens[3:3 + 4 * num_observations], dtype=np.float64).reshape(-1, 4)
        parameters = np.array(tokens[3 + 4 * num_observations:expected], dtype=np.float64)
    except ValueError as e:
        raise BALFormatError(f"{path}: non-numeric value ({e})") from e

    index_columns = observations[:, :2]
    if not np.all(index_columns == np.round(index_columns)):
        raise BALFormatError(f"{path}: observation indices must be integers")

    camera_params = parameters[:BAL_CAMERA_SIZE * num_cameras].reshape(num_cameras, BAL_CAMERA_SIZE)
    rotation_type = orientation_type(use_quaternion)
    cameras = [
        CameraBlock(
            rotation=rotation_type.from_angle_axis(row[:3]),
            translation=row[3:6],
            focal=row[6],
            k1=row[7],
            k2=row[8],
        )
        for row in camera_params
    ]

    problem = BundleProblem(
        cameras=cameras,
        points=parameters[BAL_CAMERA_SIZE * num_cameras:].reshape(num_points, 3),
        camera_indices=index_columns[:, 0].astype(np.int64),
        point_indices=index_columns[:, 1].astype(np.int64),
        measurements=observations[:, 2:],
        use_quaternion=use_quaternion,
    )
    problem.validate()

    logger.info(
        f"Loaded {path.name}: {num_cameras} cameras, {num_points} points, "
        f"{num_observations} observations"
    )
    return problem


def write_bal_problem(problem: BundleProblem, path: Union[str, Path]) -> None:
    """Write a problem in the BAL layout, cameras always as angle-axis"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with _open_text(path, "w") as f:
        f.write(f"{problem.num_cameras} {problem.num_points} {problem.num_observations}\n")
        for cam, pt, (u, v) in zip(problem.camera_indices, problem.point_indices, problem.measurements):
            f.write(f"{cam} {pt} {u:.16g} {v:.16g}\n")

        for camera in problem.cameras:
            values = np.concatenate([
                camera.rotation.to_angle_axis(),
                camera.translation,
                [camera.focal, camera.k1, camera.k2],
            ])
            f.write("".join(f"{value:.16g}\n" for value in values))

        for point in problem.points:
            f.write("".join(f"{value:.16g}\n" for value in point))

    logger.info(f"Saved BAL problem to {path}")


def write_ply(problem: BundleProblem, path: Union[str, Path]) -> None:
    """
    Write camera centers (green) and points (white) as an ASCII PLY point cloud
    for inspection in Meshlab or CloudCompare
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        f.write("ply\n")
        f.write("format ascii 1.0\n")
        f.write(f"element vertex {problem.num_cameras + problem.num_points}\n")
        for axis in ("x", "y", "z"):
            f.write(f"property float {axis}\n")
        for channel in ("red", "green", "blue"):
            f.write(f"property uchar {channel}\n")
        f.write("end_header\n")

        for camera in problem.cameras:
            x, y, z = camera.center()
            f.write(f"{x:.9g} {y:.9g} {z:.9g} 0 255 0\n")
        for x, y, z in problem.points:
            f.write(f"{x:.9g} {y:.9g} {z:.9g} 255 255 255\n")

    logger.info(f"Saved PLY with {problem.num_cameras} cameras and {problem.num_points} points to {path}")
