"""
Parameter blocks and the observation graph

Cameras are independent CameraBlock objects; points live in their own typed
(num_points, 3) array. Observations are read-only index/measurement arrays,
shared between a problem and the candidate states derived from it.
"""

import logging
from dataclasses import dataclass
from typing import ClassVar, Iterator, List, Optional, Sequence, Tuple, Type

import numpy as np

from .errors import MalformedObservation
from .rotation import AngleAxisRotation, Orientation, orientation_type

logger = logging.getLogger(__name__)


CAMERA_TANGENT_SIZE = 9
POINT_BLOCK_SIZE = 3


@dataclass(eq=False)
class CameraBlock:
    """Camera pose and intrinsics: orientation, translation, focal, k1, k2"""

    rotation: Orientation
    translation: np.ndarray
    focal: float
    k1: float = 0.0
    k2: float = 0.0

    tangent_size: ClassVar[int] = CAMERA_TANGENT_SIZE

    def __post_init__(self):
        self.translation = np.array(self.translation, dtype=np.float64).reshape(3)
        self.focal = float(self.focal)
        self.k1 = float(self.k1)
        self.k2 = float(self.k2)

    @property
    def parameter_size(self) -> int:
        return self.rotation.parameter_size + 6

    @classmethod
    def from_vector(
        cls, values: Sequence[float], rotation_type: Type[Orientation] = AngleAxisRotation
    ) -> "CameraBlock":
        """Build from [rotation, t(3), f, k1, k2]"""
        values = np.asarray(values, dtype=np.float64)
        n_rot = rotation_type.parameter_size
        if values.size != n_rot + 6:
            raise ValueError(
                f"{rotation_type.__name__} camera block expects {n_rot + 6} values, got {values.size}"
            )
        return cls(
            rotation=rotation_type.from_vector(values[:n_rot]),
            translation=values[n_rot:n_rot + 3],
            focal=values[n_rot + 3],
            k1=values[n_rot + 4],
            k2=values[n_rot + 5],
        )

    def to_vector(self) -> np.ndarray:
        return np.concatenate([
            self.rotation.to_vector(),
            self.translation,
            [self.focal, self.k1, self.k2],
        ])

    def intrinsics(self) -> np.ndarray:
        return np.array([self.focal, self.k1, self.k2])

    def center(self) -> np.ndarray:
        """Camera center in world coordinates, c = -R^T t"""
        return -self.rotation.matrix().T @ self.translation

    def plus(self, delta: np.ndarray) -> "CameraBlock":
        """Manifold update: rotation by exp(delta[:3]) on the left, the rest additive"""
        delta = np.asarray(delta, dtype=np.float64)
        return CameraBlock(
            rotation=self.rotation.compose(delta[:3]),
            translation=self.translation + delta[3:6],
            focal=self.focal + delta[6],
            k1=self.k1 + delta[7],
            k2=self.k2 + delta[8],
        )

    def copy(self) -> "CameraBlock":
        return CameraBlock(
            rotation=self.rotation.copy(),
            translation=self.translation.copy(),
            focal=self.focal,
            k1=self.k1,
            k2=self.k2,
        )


@dataclass(frozen=True)
class Observation:
    """One 2D measurement of a point in a camera"""

    camera_index: int
    point_index: int
    measured: Tuple[float, float]


def _read_only(values, dtype, shape) -> np.ndarray:
    array = np.asarray(values, dtype=dtype).reshape(shape)
    if array.flags.writeable:
        array = array.copy()
        array.setflags(write=False)
    return array


@dataclass(eq=False)
class BundleProblem:
    """Cameras, points and the bipartite observation graph linking them"""

    cameras: List[CameraBlock]
    points: np.ndarray
    camera_indices: np.ndarray
    point_indices: np.ndarray
    measurements: np.ndarray
    use_quaternion: bool = False

    def __post_init__(self):
        self.points = np.array(self.points, dtype=np.float64).reshape(-1, POINT_BLOCK_SIZE)
        self.camera_indices = _read_only(self.camera_indices, np.int64, -1)
        self.point_indices = _read_only(self.point_indices, np.int64, -1)
        self.measurements = _read_only(self.measurements, np.float64, (-1, 2))

    @classmethod
    def from_observations(
        cls,
        cameras: List[CameraBlock],
        points: np.ndarray,
        observations: Sequence[Observation],
        use_quaternion: bool = False,
    ) -> "BundleProblem":
        return cls(
            cameras=list(cameras),
            points=points,
            camera_indices=[obs.camera_index for obs in observations],
            point_indices=[obs.point_index for obs in observations],
            measurements=np.array([obs.measured for obs in observations], dtype=np.float64).reshape(-1, 2),
            use_quaternion=use_quaternion,
        )

    @classmethod
    def from_flat_arrays(
        cls,
        num_cameras: int,
        num_points: int,
        camera_indices: Sequence[int],
        point_indices: Sequence[int],
        measurements: np.ndarray,
        parameters: np.ndarray,
        use_quaternion: bool = False,
    ) -> "BundleProblem":
        """Build from the loader layout: all camera blocks, then all points"""
        rotation_type = orientation_type(use_quaternion)
        camera_block_size = rotation_type.parameter_size + 6
        parameters = np.asarray(parameters, dtype=np.float64).reshape(-1)
        expected = camera_block_size * num_cameras + POINT_BLOCK_SIZE * num_points
        if parameters.size != expected:
            raise ValueError(f"Expected {expected} parameters, got {parameters.size}")

        camera_params = parameters[:camera_block_size * num_cameras].reshape(num_cameras, camera_block_size)
        cameras = [CameraBlock.from_vector(row, rotation_type) for row in camera_params]
        points = parameters[camera_block_size * num_cameras:].reshape(num_points, POINT_BLOCK_SIZE)
        return cls(
            cameras=cameras,
            points=points,
            camera_indices=camera_indices,
            point_indices=point_indices,
            measurements=measurements,
            use_quaternion=use_quaternion,
        )

    @property
    def num_cameras(self) -> int:
        return len(self.cameras)

    @property
    def num_points(self) -> int:
        return self.points.shape[0]

    @property
    def num_observations(self) -> int:
        return self.camera_indices.shape[0]

    @property
    def camera_block_size(self) -> int:
        return 10 if self.use_quaternion else 9

    @property
    def point_block_size(self) -> int:
        return POINT_BLOCK_SIZE

    def point(self, index: int) -> np.ndarray:
        return self.points[index].copy()

    def observation(self, index: int) -> Observation:
        u, v = self.measurements[index]
        return Observation(int(self.camera_indices[index]), int(self.point_indices[index]), (float(u), float(v)))

    def observations(self) -> Iterator[Observation]:
        for i in range(self.num_observations):
            yield self.observation(i)

    def validate(self) -> None:
        """Raise MalformedObservation for the first invalid observation"""
        m = self.num_observations
        if self.point_indices.shape[0] != m or self.measurements.shape[0] != m:
            raise MalformedObservation(
                -1, -1, -1,
                f"observation arrays disagree in length ({m}, {self.point_indices.shape[0]}, "
                f"{self.measurements.shape[0]})",
            )

        bad_camera = (self.camera_indices < 0) | (self.camera_indices >= self.num_cameras)
        bad_point = (self.point_indices < 0) | (self.point_indices >= self.num_points)
        bad_measure = ~np.all(np.isfinite(self.measurements), axis=1)
        bad = bad_camera | bad_point | bad_measure
        if np.any(bad):
            i = int(np.flatnonzero(bad)[0])
            if bad_camera[i]:
                reason = f"camera index out of range [0, {self.num_cameras})"
            elif bad_point[i]:
                reason = f"point index out of range [0, {self.num_points})"
            else:
                reason = "measurement is not finite"
            raise MalformedObservation(i, int(self.camera_indices[i]), int(self.point_indices[i]), reason)

        for i, camera in enumerate(self.cameras):
            if (camera.rotation.parameter_size == 4) != self.use_quaternion:
                raise ValueError(f"Camera {i} rotation type does not match use_quaternion={self.use_quaternion}")

        logger.debug(
            f"Problem validated: {self.num_cameras} cameras, {self.num_points} points, "
            f"{m} observations"
        )

    def camera_arrays(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Stacked rotation matrices (N, 3, 3), translations (N, 3), intrinsics (N, 3)"""
        n = self.num_cameras
        rotations = np.empty((n, 3, 3))
        translations = np.empty((n, 3))
        intrinsics = np.empty((n, 3))
        for i, camera in enumerate(self.cameras):
            rotations[i] = camera.rotation.matrix()
            translations[i] = camera.translation
            intrinsics[i] = (camera.focal, camera.k1, camera.k2)
        return rotations, translations, intrinsics

    def to_flat_parameters(self) -> np.ndarray:
        """All camera blocks, then all points, in the loader layout"""
        if self.num_cameras:
            cameras = np.concatenate([camera.to_vector() for camera in self.cameras])
        else:
            cameras = np.zeros(0)
        return np.concatenate([cameras, self.points.reshape(-1)])

    def tangent_norm(self) -> float:
        """Norm of all parameters, the scale used by the step-size tolerance"""
        return float(np.linalg.norm(self.to_flat_parameters()))

    def copy(self) -> "BundleProblem":
        return BundleProblem(
            cameras=[camera.copy() for camera in self.cameras],
            points=self.points.copy(),
            camera_indices=self.camera_indices,
            point_indices=self.point_indices,
            measurements=self.measurements,
            use_quaternion=self.use_quaternion,
        )

    def plus(self, delta_cameras: np.ndarray, delta_points: np.ndarray) -> "BundleProblem":
        """Manifold update of every block; returns a new problem"""
        delta_cameras = np.asarray(delta_cameras, dtype=np.float64).reshape(self.num_cameras, CAMERA_TANGENT_SIZE)
        delta_points = np.asarray(delta_points, dtype=np.float64).reshape(self.num_points, POINT_BLOCK_SIZE)
        return BundleProblem(
            cameras=[camera.plus(delta) for camera, delta in zip(self.cameras, delta_cameras)],
            points=self.points + delta_points,
            camera_indices=self.camera_indices,
            point_indices=self.point_indices,
            measurements=self.measurements,
            use_quaternion=self.use_quaternion,
        )

    def assign_parameters(self, other: "BundleProblem") -> None:
        """Copy block values from another problem with the same structure"""
        if other.num_cameras != self.num_cameras or other.num_points != self.num_points:
            raise ValueError("Cannot assign parameters between problems of different size")
        self.cameras = [camera.copy() for camera in other.cameras]
        self.points = other.points.copy()


def make_camera(
    rotation: Optional[np.ndarray] = None,
    translation: Optional[np.ndarray] = None,
    focal: float = 1.0,
    k1: float = 0.0,
    k2: float = 0.0,
    use_quaternion: bool = False,
) -> CameraBlock:
    """Convenience constructor from an angle-axis rotation"""
    rotation_type = orientation_type(use_quaternion)
    angle_axis = np.zeros(3) if rotation is None else np.asarray(rotation, dtype=np.float64)
    return CameraBlock(
        rotation=rotation_type.from_angle_axis(angle_axis),
        translation=np.zeros(3) if translation is None else translation,
        focal=focal,
        k1=k1,
        k2=k2,
    )
