"""
Rotation value types living on the SO(3) manifold

Camera orientations are never updated by vector addition. An update is a
3-vector on the tangent space, applied on the left through the exponential
map: R_new = exp(delta) * R_old. The external parameter representation
(angle-axis or unit quaternion) only exists at block boundaries.
"""

from abc import ABC, abstractmethod
from typing import Type

import numpy as np


_SMALL_ANGLE = 1e-8


def skew(v: np.ndarray) -> np.ndarray:
    """Cross-product matrix [v]x"""
    x, y, z = v
    return np.array([
        [0.0, -z, y],
        [z, 0.0, -x],
        [-y, x, 0.0]
    ])


def skew_batch(v: np.ndarray) -> np.ndarray:
    """Cross-product matrices for an (N, 3) array, shape (N, 3, 3)"""
    out = np.zeros((v.shape[0], 3, 3))
    out[:, 0, 1] = -v[:, 2]
    out[:, 0, 2] = v[:, 1]
    out[:, 1, 0] = v[:, 2]
    out[:, 1, 2] = -v[:, 0]
    out[:, 2, 0] = -v[:, 1]
    out[:, 2, 1] = v[:, 0]
    return out


def exp_so3(omega: np.ndarray) -> np.ndarray:
    """Rodrigues' formula, with a second-order expansion near the identity"""
    omega = np.asarray(omega, dtype=np.float64)
    theta = np.linalg.norm(omega)
    K = skew(omega)
    if theta < _SMALL_ANGLE:
        return np.eye(3) + K + 0.5 * (K @ K)
    return (
        np.eye(3)
        + (np.sin(theta) / theta) * K
        + ((1.0 - np.cos(theta)) / (theta * theta)) * (K @ K)
    )


def log_so3(R: np.ndarray) -> np.ndarray:
    """Inverse of exp_so3, returns the angle-axis vector with angle in [0, pi]"""
    cos_theta = np.clip((np.trace(R) - 1.0) * 0.5, -1.0, 1.0)
    theta = np.arccos(cos_theta)
    vee = np.array([R[2, 1] - R[1, 2], R[0, 2] - R[2, 0], R[1, 0] - R[0, 1]])

    if theta < _SMALL_ANGLE:
        return 0.5 * vee

    if np.pi - theta < 1e-6:
        # sin(theta) ~ 0, recover the axis from the symmetric part
        B = 0.5 * (R + np.eye(3))
        B = 0.5 * (B + B.T)
        k = int(np.argmax(np.diag(B)))
        axis = B[:, k] / np.sqrt(max(B[k, k], 1e-300))
        axis /= np.linalg.norm(axis)
        if np.dot(axis, vee) < 0.0:
            axis = -axis
        return theta * axis

    return (theta / (2.0 * np.sin(theta))) * vee


def quaternion_multiply(q1: np.ndarray, q2: np.ndarray) -> np.ndarray:
    """Hamilton product of (w, x, y, z) quaternions"""
    w1, x1, y1, z1 = q1
    w2, x2, y2, z2 = q2
    return np.array([
        w1*w2 - x1*x2 - y1*y2 - z1*z2,
        w1*x2 + x1*w2 + y1*z2 - z1*y2,
        w1*y2 - x1*z2 + y1*w2 + z1*x2,
        w1*z2 + x1*y2 - y1*x2 + z1*w2
    ])


def quaternion_to_rotation_matrix(qvec: np.ndarray) -> np.ndarray:
    """Convert quaternion (w, x, y, z) to 3x3 rotation matrix"""
    qw, qx, qy, qz = qvec
    return np.array([
        [1 - 2*qy**2 - 2*qz**2,     2*qx*qy - 2*qz*qw,     2*qx*qz + 2*qy*qw],
        [    2*qx*qy + 2*qz*qw, 1 - 2*qx**2 - 2*qz**2,     2*qy*qz - 2*qx*qw],
        [    2*qx*qz - 2*qy*qw,     2*qy*qz + 2*qx*qw, 1 - 2*qx**2 - 2*qy**2]
    ])


def angle_axis_to_quaternion(angle_axis: np.ndarray) -> np.ndarray:
    angle_axis = np.asarray(angle_axis, dtype=np.float64)
    theta = np.linalg.norm(angle_axis)
    if theta < _SMALL_ANGLE:
        q = np.concatenate([[1.0], 0.5 * angle_axis])
        return q / np.linalg.norm(q)
    half = 0.5 * theta
    return np.concatenate([[np.cos(half)], (np.sin(half) / theta) * angle_axis])


def quaternion_to_angle_axis(qvec: np.ndarray) -> np.ndarray:
    qvec = np.asarray(qvec, dtype=np.float64)
    w = qvec[0]
    v = qvec[1:]
    sin_theta = np.linalg.norm(v)
    if sin_theta < _SMALL_ANGLE:
        return 2.0 * v
    # q and -q are the same rotation; keep the angle in [0, pi]
    if w < 0.0:
        two_theta = 2.0 * np.arctan2(-sin_theta, -w)
    else:
        two_theta = 2.0 * np.arctan2(sin_theta, w)
    return (two_theta / sin_theta) * v


class Orientation(ABC):
    """Abstract orientation value type

    Implementations differ only in their external parameter vector; all of
    them share the same 3-dimensional tangent space and left update rule.
    """

    parameter_size: int = 0
    tangent_size: int = 3

    @classmethod
    @abstractmethod
    def from_vector(cls, values: np.ndarray) -> "Orientation":
        """Build from the external parameter vector"""

    @abstractmethod
    def to_vector(self) -> np.ndarray:
        """External parameter vector"""

    @classmethod
    @abstractmethod
    def exponentiate(cls, omega: np.ndarray) -> "Orientation":
        """exp(omega) as an orientation of this type"""

    @abstractmethod
    def matrix(self) -> np.ndarray:
        """3x3 rotation matrix"""

    @abstractmethod
    def compose(self, update: np.ndarray) -> "Orientation":
        """Return exp(update) * self"""

    @abstractmethod
    def to_angle_axis(self) -> np.ndarray:
        """Minimal 3-parameter representation"""

    @classmethod
    def from_angle_axis(cls, angle_axis: np.ndarray) -> "Orientation":
        return cls.exponentiate(angle_axis)

    def copy(self) -> "Orientation":
        return type(self).from_vector(self.to_vector())

    def rotate(self, point: np.ndarray) -> np.ndarray:
        return self.matrix() @ np.asarray(point, dtype=np.float64)

    def __eq__(self, other) -> bool:
        if type(other) is not type(self):
            return NotImplemented
        return bool(np.array_equal(self.to_vector(), other.to_vector()))

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.to_vector().tolist()})"


class AngleAxisRotation(Orientation):
    """Rotation stored as an angle-axis vector (the BAL camera format)"""

    parameter_size = 3

    def __init__(self, angle_axis: np.ndarray):
        self._angle_axis = np.array(angle_axis, dtype=np.float64).reshape(3)

    @classmethod
    def from_vector(cls, values: np.ndarray) -> "AngleAxisRotation":
        return cls(values)

    def to_vector(self) -> np.ndarray:
        return self._angle_axis.copy()

    @classmethod
    def exponentiate(cls, omega: np.ndarray) -> "AngleAxisRotation":
        return cls(omega)

    def matrix(self) -> np.ndarray:
        return exp_so3(self._angle_axis)

    def compose(self, update: np.ndarray) -> "AngleAxisRotation":
        update = np.asarray(update, dtype=np.float64)
        if not np.any(update):
            return self.copy()
        return AngleAxisRotation(log_so3(exp_so3(update) @ self.matrix()))

    def to_angle_axis(self) -> np.ndarray:
        return self._angle_axis.copy()


class QuaternionRotation(Orientation):
    """Rotation stored as a unit quaternion (w, x, y, z)"""

    parameter_size = 4

    def __init__(self, qvec: np.ndarray, normalize: bool = True):
        qvec = np.array(qvec, dtype=np.float64).reshape(4)
        norm = np.linalg.norm(qvec)
        if norm < 1e-12:
            raise ValueError("Quaternion has zero norm")
        self._qvec = qvec / norm if normalize else qvec

    @classmethod
    def from_vector(cls, values: np.ndarray) -> "QuaternionRotation":
        return cls(values)

    def to_vector(self) -> np.ndarray:
        return self._qvec.copy()

    def copy(self) -> "QuaternionRotation":
        return QuaternionRotation(self._qvec, normalize=False)

    @classmethod
    def exponentiate(cls, omega: np.ndarray) -> "QuaternionRotation":
        return cls(angle_axis_to_quaternion(omega))

    def matrix(self) -> np.ndarray:
        return quaternion_to_rotation_matrix(self._qvec)

    def compose(self, update: np.ndarray) -> "QuaternionRotation":
        update = np.asarray(update, dtype=np.float64)
        if not np.any(update):
            return self.copy()
        return QuaternionRotation(quaternion_multiply(angle_axis_to_quaternion(update), self._qvec))

    def to_angle_axis(self) -> np.ndarray:
        return quaternion_to_angle_axis(self._qvec)


def orientation_type(use_quaternion: bool) -> Type[Orientation]:
    """Select the orientation implementation once, at block construction"""
    return QuaternionRotation if use_quaternion else AngleAxisRotation
