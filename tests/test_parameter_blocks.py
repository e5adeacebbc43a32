"""
Unit tests for rotations and parameter blocks
"""

import pytest
import numpy as np
from pathlib import Path
import sys

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sba.core.errors import MalformedObservation
from sba.core.parameter_blocks import BundleProblem, CameraBlock, Observation, make_camera
from sba.core.rotation import (
    AngleAxisRotation,
    QuaternionRotation,
    angle_axis_to_quaternion,
    exp_so3,
    log_so3,
    orientation_type,
    quaternion_to_angle_axis,
)


class TestRotation:
    """Test SO(3) helpers and orientation value types"""

    def test_exp_is_rotation(self):
        """exp_so3 returns an orthonormal matrix with determinant 1"""
        R = exp_so3(np.array([0.3, -0.2, 0.9]))
        np.testing.assert_allclose(R @ R.T, np.eye(3), atol=1e-12)
        assert abs(np.linalg.det(R) - 1.0) < 1e-12

    def test_log_inverts_exp(self):
        """log(exp(w)) == w for angles below pi"""
        for omega in ([0.1, 0.2, -0.3], [1e-10, 0.0, 2e-10], [0.0, 2.5, 0.0]):
            omega = np.array(omega)
            np.testing.assert_allclose(log_so3(exp_so3(omega)), omega, atol=1e-10)

    def test_log_near_pi(self):
        """Rotations close to pi round-trip through log and exp"""
        omega = (np.pi - 1e-9) * np.array([0.0, 0.6, 0.8])
        R = exp_so3(omega)
        np.testing.assert_allclose(exp_so3(log_so3(R)), R, atol=1e-7)

    def test_log_near_pi_recovers_axis(self):
        """Near pi the axis comes from the symmetric part of R"""
        axis = np.array([0.3, -0.5, 0.81])
        axis /= np.linalg.norm(axis)
        omega = (np.pi - 1e-7) * axis
        np.testing.assert_allclose(log_so3(exp_so3(omega)), omega, atol=1e-8)

    def test_quaternion_round_trip(self):
        """Angle-axis -> quaternion -> angle-axis is the identity"""
        omega = np.array([0.4, -0.1, 0.25])
        q = angle_axis_to_quaternion(omega)
        assert abs(np.linalg.norm(q) - 1.0) < 1e-12
        np.testing.assert_allclose(quaternion_to_angle_axis(q), omega, atol=1e-12)
        # q and -q are the same rotation
        np.testing.assert_allclose(quaternion_to_angle_axis(-q), omega, atol=1e-12)

    def test_representations_agree(self):
        """Both orientation types give the same matrix for the same rotation"""
        omega = np.array([0.2, 0.5, -0.4])
        aa = AngleAxisRotation.from_angle_axis(omega)
        quat = QuaternionRotation.from_angle_axis(omega)
        np.testing.assert_allclose(aa.matrix(), quat.matrix(), atol=1e-12)

    def test_compose_is_left_multiplication(self):
        """compose(delta) == exp(delta) * R for both representations"""
        omega = np.array([0.3, 0.1, -0.2])
        delta = np.array([-0.05, 0.02, 0.07])
        expected = exp_so3(delta) @ exp_so3(omega)
        for rotation_type in (AngleAxisRotation, QuaternionRotation):
            rotation = rotation_type.from_angle_axis(omega).compose(delta)
            assert isinstance(rotation, rotation_type)
            np.testing.assert_allclose(rotation.matrix(), expected, atol=1e-12)

    def test_zero_quaternion_rejected(self):
        """A zero quaternion is not a rotation"""
        with pytest.raises(ValueError):
            QuaternionRotation(np.zeros(4))

    def test_orientation_type(self):
        """The rotation type is selected from the quaternion flag"""
        assert orientation_type(False) is AngleAxisRotation
        assert orientation_type(True) is QuaternionRotation
        assert AngleAxisRotation.parameter_size == 3
        assert QuaternionRotation.parameter_size == 4


class TestCameraBlock:
    """Test camera parameter blocks"""

    def test_vector_layout(self):
        """to_vector is [rotation, t, f, k1, k2] in both representations"""
        values = np.array([0.1, 0.2, 0.3, 1.0, 2.0, 3.0, 500.0, 0.01, -0.002])
        camera = CameraBlock.from_vector(values)
        np.testing.assert_array_equal(camera.to_vector(), values)
        assert camera.parameter_size == 9

        quat_camera = make_camera(values[:3], values[3:6], 500.0, 0.01, -0.002, use_quaternion=True)
        assert quat_camera.parameter_size == 10
        assert quat_camera.to_vector().size == 10
        np.testing.assert_allclose(quat_camera.rotation.to_angle_axis(), values[:3], atol=1e-12)

    def test_wrong_size_rejected(self):
        """A camera vector of the wrong size raises ValueError"""
        with pytest.raises(ValueError):
            CameraBlock.from_vector(np.zeros(8))
        with pytest.raises(ValueError):
            CameraBlock.from_vector(np.zeros(9), QuaternionRotation)

    def test_center(self):
        """The camera center maps to the origin of the camera frame"""
        camera = make_camera(np.array([0.1, -0.3, 0.2]), np.array([0.5, -1.0, 2.0]))
        center = camera.center()
        np.testing.assert_allclose(camera.rotation.matrix() @ center + camera.translation, 0.0, atol=1e-12)

    def test_zero_step_is_identity(self):
        """plus(0) leaves every parameter unchanged"""
        for use_quaternion in (False, True):
            camera = make_camera(
                np.array([0.1, 0.2, 0.3]), np.array([1.0, 2.0, 3.0]), 480.0, 0.1, 0.01,
                use_quaternion=use_quaternion,
            )
            updated = camera.plus(np.zeros(9))
            np.testing.assert_array_equal(updated.to_vector(), camera.to_vector())

    def test_plus_is_additive_except_rotation(self):
        """Translation and intrinsics are updated additively"""
        camera = make_camera(np.zeros(3), np.array([1.0, 2.0, 3.0]), 500.0)
        delta = np.array([0.0, 0.0, 0.1, 0.5, -0.5, 1.0, 2.0, 0.01, 0.001])
        updated = camera.plus(delta)
        np.testing.assert_allclose(updated.translation, [1.5, 1.5, 4.0])
        assert updated.focal == 502.0
        assert updated.k1 == 0.01
        assert updated.k2 == 0.001
        np.testing.assert_allclose(updated.rotation.matrix(), exp_so3(delta[:3]), atol=1e-12)
        # The original block is untouched
        np.testing.assert_array_equal(camera.translation, [1.0, 2.0, 3.0])


class TestBundleProblem:
    """Test the observation graph container"""

    def create_problem(self, use_quaternion=False):
        """Two cameras, two points, three observations"""
        cameras = [
            make_camera(np.zeros(3), np.zeros(3), 500.0, use_quaternion=use_quaternion),
            make_camera(np.array([0.0, 0.1, 0.0]), np.array([-0.5, 0.0, 0.0]), 500.0,
                        use_quaternion=use_quaternion),
        ]
        points = np.array([[0.0, 0.0, -5.0], [1.0, 0.5, -6.0]])
        observations = [
            Observation(0, 0, (1.0, 2.0)),
            Observation(1, 0, (3.0, 4.0)),
            Observation(1, 1, (5.0, 6.0)),
        ]
        return BundleProblem.from_observations(cameras, points, observations, use_quaternion)

    def test_sizes(self):
        """Counts and block sizes follow the rotation representation"""
        problem = self.create_problem()
        assert problem.num_cameras == 2
        assert problem.num_points == 2
        assert problem.num_observations == 3
        assert problem.camera_block_size == 9
        assert self.create_problem(use_quaternion=True).camera_block_size == 10
        assert problem.observation(2) == Observation(1, 1, (5.0, 6.0))
        assert len(list(problem.observations())) == 3

    def test_observations_are_read_only(self):
        """Observation arrays cannot be modified in place"""
        problem = self.create_problem()
        with pytest.raises(ValueError):
            problem.measurements[0, 0] = 10.0
        with pytest.raises(ValueError):
            problem.camera_indices[0] = 1

    def test_flat_round_trip(self):
        """from_flat_arrays(to_flat_parameters()) reproduces the problem"""
        for use_quaternion in (False, True):
            problem = self.create_problem(use_quaternion)
            rebuilt = BundleProblem.from_flat_arrays(
                problem.num_cameras,
                problem.num_points,
                problem.camera_indices,
                problem.point_indices,
                problem.measurements,
                problem.to_flat_parameters(),
                use_quaternion=use_quaternion,
            )
            np.testing.assert_allclose(rebuilt.to_flat_parameters(), problem.to_flat_parameters(), atol=1e-15)

    def test_flat_wrong_size(self):
        """A parameter vector of the wrong length raises ValueError"""
        with pytest.raises(ValueError):
            BundleProblem.from_flat_arrays(1, 1, [0], [0], [[0.0, 0.0]], np.zeros(11))

    def test_validate_out_of_range(self):
        """Indices outside the block ranges raise MalformedObservation"""
        problem = self.create_problem()
        bad = BundleProblem(problem.cameras, problem.points, [0, 2], [0, 1], np.zeros((2, 2)))
        with pytest.raises(MalformedObservation) as excinfo:
            bad.validate()
        assert excinfo.value.observation_index == 1
        assert excinfo.value.camera_index == 2

        bad = BundleProblem(problem.cameras, problem.points, [0], [-1], np.zeros((1, 2)))
        with pytest.raises(MalformedObservation):
            bad.validate()

    def test_validate_non_finite_measurement(self):
        """NaN measurements are malformed"""
        problem = self.create_problem()
        bad = BundleProblem(problem.cameras, problem.points, [0], [0], np.array([[np.nan, 1.0]]))
        with pytest.raises(MalformedObservation):
            bad.validate()

    def test_plus_shares_observations(self):
        """plus returns a new state sharing the observation arrays"""
        problem = self.create_problem()
        delta_cameras = np.zeros((2, 9))
        delta_points = np.ones((2, 3))
        updated = problem.plus(delta_cameras, delta_points)
        assert updated.measurements is problem.measurements
        np.testing.assert_allclose(updated.points, problem.points + 1.0)
        np.testing.assert_array_equal(updated.cameras[1].to_vector(), problem.cameras[1].to_vector())

    def test_assign_parameters(self):
        """assign_parameters copies block values between states"""
        problem = self.create_problem()
        updated = problem.plus(np.full((2, 9), 0.01), np.ones((2, 3)))
        problem.assign_parameters(updated)
        np.testing.assert_array_equal(problem.to_flat_parameters(), updated.to_flat_parameters())
        assert problem.cameras[0] is not updated.cameras[0]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
