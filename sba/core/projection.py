"""
Projection model with two-parameter radial distortion

    p_c = R p + t
    p_n = -p_c / p_c.z           (the camera looks down -z)
    d   = 1 + k1 r^2 + k2 r^4,   r^2 = |p_n|^2
    uv  = focal * d * p_n

Depth is -p_c.z. Anything at or below min_depth is degenerate.

The batch functions take per-observation stacked arrays and never raise;
they report degenerate rows through a validity mask. Camera derivatives use
the left-multiplicative rotation tangent, matching CameraBlock.plus.
"""

from typing import Tuple

import numpy as np

from .errors import DegenerateProjection
from .rotation import skew_batch


def _camera_frame(rotations: np.ndarray, translations: np.ndarray,
                  points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    rotated = np.einsum('nij,nj->ni', rotations, points)
    return rotated, rotated + translations


def _normalize(p_cam: np.ndarray, min_depth: float) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    depth = -p_cam[:, 2]
    valid = np.isfinite(depth) & (depth > min_depth)
    # Degenerate rows divide by a dummy depth and are masked out by the caller
    z = np.where(valid, p_cam[:, 2], -1.0)
    inv_z = 1.0 / z
    normalized = -p_cam[:, :2] * inv_z[:, None]
    return normalized, inv_z, depth, valid


def _distort(normalized: np.ndarray, intrinsics: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    focal, k1, k2 = intrinsics[:, 0], intrinsics[:, 1], intrinsics[:, 2]
    r2 = np.sum(normalized * normalized, axis=1)
    distortion = 1.0 + r2 * (k1 + k2 * r2)
    pixels = (focal * distortion)[:, None] * normalized
    return pixels, r2, distortion


def project_batch(
    rotations: np.ndarray,
    translations: np.ndarray,
    intrinsics: np.ndarray,
    points: np.ndarray,
    min_depth: float = 0.0,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Project N points through N cameras

    Args:
        rotations: (N, 3, 3) rotation matrices
        translations: (N, 3)
        intrinsics: (N, 3) as (focal, k1, k2)
        points: (N, 3) world points
        min_depth: depth threshold below which a row is degenerate

    Returns:
        pixels (N, 2), valid mask (N,), depths (N,)
    """
    _, p_cam = _camera_frame(rotations, translations, points)
    normalized, _, depth, valid = _normalize(p_cam, min_depth)
    pixels, _, _ = _distort(normalized, intrinsics)
    return pixels, valid, depth


def project_with_jacobians(
    rotations: np.ndarray,
    translations: np.ndarray,
    intrinsics: np.ndarray,
    points: np.ndarray,
    min_depth: float = 0.0,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Project with analytic derivatives

    Returns:
        pixels (N, 2), d_pixel/d_camera (N, 2, 9), d_pixel/d_point (N, 2, 3),
        valid mask (N,), depths (N,)
    """
    rotated, p_cam = _camera_frame(rotations, translations, points)
    normalized, inv_z, depth, valid = _normalize(p_cam, min_depth)
    pixels, r2, distortion = _distort(normalized, intrinsics)
    focal, k1, k2 = intrinsics[:, 0], intrinsics[:, 1], intrinsics[:, 2]
    n = normalized.shape[0]

    # d(uv)/d(p_n) = f * (d * I + 2 * (k1 + 2 k2 r^2) * p_n p_n^T)
    d_distortion = k1 + 2.0 * k2 * r2
    d_uv_d_pn = 2.0 * d_distortion[:, None, None] * np.einsum('ni,nj->nij', normalized, normalized)
    d_uv_d_pn[:, 0, 0] += distortion
    d_uv_d_pn[:, 1, 1] += distortion
    d_uv_d_pn *= focal[:, None, None]

    # d(p_n)/d(p_c)
    d_pn_d_pc = np.zeros((n, 2, 3))
    d_pn_d_pc[:, 0, 0] = -inv_z
    d_pn_d_pc[:, 1, 1] = -inv_z
    d_pn_d_pc[:, 0, 2] = p_cam[:, 0] * inv_z * inv_z
    d_pn_d_pc[:, 1, 2] = p_cam[:, 1] * inv_z * inv_z

    d_uv_d_pc = np.matmul(d_uv_d_pn, d_pn_d_pc)

    jac_camera = np.empty((n, 2, 9))
    # d(exp(w) R p)/dw at w = 0 is -[R p]x
    jac_camera[:, :, 0:3] = -np.matmul(d_uv_d_pc, skew_batch(rotated))
    jac_camera[:, :, 3:6] = d_uv_d_pc
    jac_camera[:, :, 6] = distortion[:, None] * normalized
    jac_camera[:, :, 7] = (focal * r2)[:, None] * normalized
    jac_camera[:, :, 8] = (focal * r2 * r2)[:, None] * normalized

    jac_point = np.matmul(d_uv_d_pc, rotations)

    return pixels, jac_camera, jac_point, valid, depth


def project(camera, point: np.ndarray, min_depth: float = 0.0) -> np.ndarray:
    """
    Project one point through one camera

    Args:
        camera: CameraBlock
        point: 3D point in world coordinates
        min_depth: depth threshold

    Returns:
        (u, v) pixel

    Raises:
        DegenerateProjection: the point is at or behind the camera plane
    """
    pixels, valid, depth = project_batch(
        camera.rotation.matrix()[None],
        camera.translation[None],
        camera.intrinsics()[None],
        np.asarray(point, dtype=np.float64).reshape(1, 3),
        min_depth,
    )
    if not valid[0]:
        raise DegenerateProjection(float(depth[0]))
    return pixels[0]


def reprojection_residual(camera, point: np.ndarray, measured: np.ndarray, min_depth: float = 0.0) -> np.ndarray:
    """r = project(camera, point) - measured"""
    return project(camera, point, min_depth) - np.asarray(measured, dtype=np.float64)
