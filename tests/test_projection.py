"""
Unit tests for the projection model, robust losses and Jacobian assembly
"""

import pytest
import numpy as np
from pathlib import Path
import sys

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sba.core.errors import DegenerateProjection
from sba.core.jacobian_assembly import JacobianAssembler
from sba.core.parameter_blocks import BundleProblem, make_camera
from sba.core.projection import project, project_batch, reprojection_residual
from sba.core.robust_loss import CauchyLoss, HuberLoss, SoftL1Loss, TrivialLoss, create_loss
from sba.utils.synthetic import generate_synthetic_problem


class TestProjection:
    """Test the camera projection function"""

    def test_pinhole_without_distortion(self):
        """With k1 = k2 = 0 projection is -f * x_c / z_c"""
        rng = np.random.default_rng(1)
        for _ in range(20):
            camera = make_camera(rng.normal(0, 0.2, 3), rng.normal(0, 0.5, 3), rng.uniform(300, 800))
            point = np.array([rng.uniform(-1, 1), rng.uniform(-1, 1), -rng.uniform(4, 8)])
            p_cam = camera.rotation.matrix() @ point + camera.translation
            expected = -camera.focal * p_cam[:2] / p_cam[2]
            np.testing.assert_allclose(project(camera, point), expected, rtol=1e-12)

    def test_radial_distortion(self):
        """Distortion scales the pinhole projection by 1 + k1 r^2 + k2 r^4"""
        camera = make_camera(np.zeros(3), np.zeros(3), 500.0, k1=0.1, k2=0.01)
        point = np.array([1.0, 2.0, -4.0])
        normalized = np.array([0.25, 0.5])
        r2 = normalized @ normalized
        expected = 500.0 * (1.0 + 0.1 * r2 + 0.01 * r2 * r2) * normalized
        np.testing.assert_allclose(project(camera, point), expected, rtol=1e-14)

    def test_point_behind_camera_raises(self):
        """A point with non-positive depth raises DegenerateProjection"""
        camera = make_camera()
        with pytest.raises(DegenerateProjection) as excinfo:
            project(camera, np.array([0.0, 0.0, 5.0]))
        assert excinfo.value.depth == -5.0

        with pytest.raises(DegenerateProjection):
            project(camera, np.array([1.0, 1.0, 0.0]))

    def test_batch_reports_invalid_rows(self):
        """project_batch masks degenerate rows instead of raising"""
        rotations = np.tile(np.eye(3), (3, 1, 1))
        translations = np.zeros((3, 3))
        intrinsics = np.tile([500.0, 0.0, 0.0], (3, 1))
        points = np.array([[0.0, 0.0, -5.0], [0.0, 0.0, 5.0], [1.0, 0.0, -2.0]])
        pixels, valid, depth = project_batch(rotations, translations, intrinsics, points)
        np.testing.assert_array_equal(valid, [True, False, True])
        np.testing.assert_allclose(depth, [5.0, -5.0, 2.0])
        np.testing.assert_allclose(pixels[2], [250.0, 0.0])

    def test_min_depth(self):
        """Points closer than min_depth are degenerate"""
        camera = make_camera()
        point = np.array([0.0, 0.0, -0.5])
        project(camera, point)
        with pytest.raises(DegenerateProjection):
            project(camera, point, min_depth=1.0)

    def test_residual(self):
        """Residual is predicted minus measured"""
        camera = make_camera(focal=100.0)
        point = np.array([1.0, -1.0, -2.0])
        np.testing.assert_allclose(reprojection_residual(camera, point, [40.0, -40.0]), [10.0, -10.0])


class TestRobustLoss:
    """Test robust loss functions"""

    def test_huber_below_threshold_is_quadratic(self):
        """Inliers keep weight one and rho(s) = s"""
        loss = HuberLoss(2.0)
        rho = loss.evaluate(np.array([0.0, 1.0, 4.0]))
        np.testing.assert_allclose(rho[:, 0], [0.0, 1.0, 4.0])
        np.testing.assert_allclose(rho[:, 1], 1.0)

    def test_huber_downweights_outliers(self):
        """For |r|^2 > delta^2 the robust cost is strictly below the quadratic cost"""
        loss = HuberLoss(1.0)
        s = np.array([1.0001, 2.0, 10.0, 1e4, 1e8])
        rho = loss.evaluate(s)
        assert np.all(rho[:, 0] < s)
        assert np.all(rho[:, 1] < 1.0)
        assert np.all(rho[:, 1] > 0.0)
        assert loss.cost(s) < 0.5 * np.sum(s)

    def test_huber_is_continuous(self):
        """rho and rho' are continuous at the threshold"""
        loss = HuberLoss(1.5)
        b = 1.5 ** 2
        below = loss.evaluate(np.array([b - 1e-9]))[0]
        above = loss.evaluate(np.array([b + 1e-9]))[0]
        assert abs(below[0] - above[0]) < 1e-8
        assert abs(below[1] - above[1]) < 1e-8

    def test_huber_derivative(self):
        """rho' matches a finite difference of rho"""
        loss = HuberLoss(1.0)
        s, h = 7.0, 1e-6
        numeric = (loss.evaluate(np.array([s + h]))[0, 0] - loss.evaluate(np.array([s - h]))[0, 0]) / (2 * h)
        assert abs(loss.evaluate(np.array([s]))[0, 1] - numeric) < 1e-7

    def test_other_losses_are_sublinear(self):
        """Cauchy and soft-L1 also grow slower than s for large residuals"""
        s = np.array([4.0, 100.0])
        for loss in (CauchyLoss(1.0), SoftL1Loss(1.0)):
            rho = loss.evaluate(s)
            assert np.all(rho[:, 0] < s)
            assert np.all(np.diff(rho[:, 0]) > 0)

    def test_trivial_loss(self):
        """Trivial loss is plain least squares"""
        loss = TrivialLoss()
        assert loss.cost(np.array([2.0, 4.0])) == 3.0

    def test_evaluate_returns_value_and_weight(self):
        """Every loss returns rho and rho' per squared norm"""
        s = np.array([0.5, 3.0, 40.0])
        for name in ("trivial", "huber", "cauchy", "soft_l1"):
            assert create_loss(name).evaluate(s).shape == (3, 2)

    def test_create_loss(self):
        """Losses are created by name"""
        assert isinstance(create_loss("huber", 2.0), HuberLoss)
        assert create_loss("cauchy").scale == 1.0
        with pytest.raises(ValueError):
            create_loss("tukey")
        with pytest.raises(ValueError):
            HuberLoss(0.0)


class TestJacobianAssembly:
    """Test residual and Jacobian assembly"""

    def test_analytic_matches_numeric(self):
        """Analytic derivatives agree with central differences"""
        for use_quaternion in (False, True):
            problem = generate_synthetic_problem(
                num_cameras=3, num_points=8, noise=0.5, k1=0.05, k2=-0.01,
                use_quaternion=use_quaternion, seed=3,
            )
            loss = create_loss("trivial")
            analytic = JacobianAssembler(loss, use_analytic_jacobian=True).linearize(problem)
            numeric = JacobianAssembler(loss, use_analytic_jacobian=False).linearize(problem)

            np.testing.assert_array_equal(analytic.observation_indices, numeric.observation_indices)
            np.testing.assert_allclose(analytic.residuals, numeric.residuals, rtol=1e-12)
            scale = np.max(np.abs(analytic.jac_camera))
            np.testing.assert_allclose(analytic.jac_camera, numeric.jac_camera, rtol=1e-5, atol=1e-6 * scale)
            scale = np.max(np.abs(analytic.jac_point))
            np.testing.assert_allclose(analytic.jac_point, numeric.jac_point, rtol=1e-5, atol=1e-6 * scale)

    def test_rotation_jacobian_matches_left_update(self):
        """The rotation columns describe the change under camera.plus"""
        problem = generate_synthetic_problem(num_cameras=1, num_points=1, k1=0.02, seed=5)
        lin = JacobianAssembler(create_loss("trivial")).linearize(problem)
        camera, point = problem.cameras[0], problem.points[0]
        h = 1e-7
        for k in range(9):
            delta = np.zeros(9)
            delta[k] = h
            plus = project(camera.plus(delta), point)
            minus = project(camera.plus(-delta), point)
            np.testing.assert_allclose(
                (plus - minus) / (2 * h), lin.jac_camera[0, :, k], rtol=1e-4, atol=1e-4
            )

    def test_cost_is_half_sum_of_rho(self):
        """Cost is 0.5 * sum(rho(|r|^2)) and residuals are scaled by sqrt(rho')"""
        problem = generate_synthetic_problem(num_cameras=2, num_points=5, noise=3.0, seed=2)
        loss = HuberLoss(1.0)
        assembler = JacobianAssembler(loss)
        lin = assembler.linearize(problem)
        s = np.sum(lin.raw_residuals ** 2, axis=1)
        assert abs(lin.cost - 0.5 * np.sum(loss.evaluate(s)[:, 0])) < 1e-9
        np.testing.assert_allclose(lin.residuals, np.sqrt(loss.weights(s))[:, None] * lin.raw_residuals)
        assert abs(assembler.evaluate_cost(problem).cost - lin.cost) < 1e-9

    def test_chunked_parallel_evaluation(self):
        """Chunking and threads do not change the result"""
        from concurrent.futures import ThreadPoolExecutor

        problem = generate_synthetic_problem(num_cameras=3, num_points=10, noise=1.0, seed=4)
        serial = JacobianAssembler(create_loss("huber")).linearize(problem)
        with ThreadPoolExecutor(max_workers=4) as executor:
            parallel = JacobianAssembler(create_loss("huber"), chunk_size=7, executor=executor).linearize(problem)
        np.testing.assert_allclose(parallel.jac_camera, serial.jac_camera, rtol=1e-14, atol=1e-12)
        np.testing.assert_allclose(parallel.residuals, serial.residuals, rtol=1e-14, atol=1e-12)
        assert abs(parallel.cost - serial.cost) <= 1e-12 * max(1.0, serial.cost)

    def test_degenerate_observation_is_excluded(self):
        """A point behind a camera is dropped without changing the other observations"""
        clean = generate_synthetic_problem(num_cameras=2, num_points=4, noise=1.0, seed=6)
        points = np.vstack([clean.points, [[0.0, 0.0, 50.0]]])
        problem = BundleProblem(
            cameras=clean.cameras,
            points=points,
            camera_indices=np.append(clean.camera_indices, 0),
            point_indices=np.append(clean.point_indices, 4),
            measurements=np.vstack([clean.measurements, [[0.0, 0.0]]]),
        )
        problem.validate()

        assembler = JacobianAssembler(create_loss("huber"))
        lin = assembler.linearize(problem)
        reference = assembler.linearize(clean)

        assert lin.num_excluded == 1
        error = lin.degenerate[0]
        assert isinstance(error, DegenerateProjection)
        assert error.observation_index == clean.num_observations
        assert error.point_index == 4
        assert error.depth < 0.0
        np.testing.assert_array_equal(lin.observation_indices, np.arange(clean.num_observations))
        np.testing.assert_allclose(lin.residuals, reference.residuals, rtol=1e-14, atol=1e-12)
        np.testing.assert_allclose(lin.jac_camera, reference.jac_camera, rtol=1e-14, atol=1e-12)
        np.testing.assert_allclose(lin.jac_point, reference.jac_point, rtol=1e-14, atol=1e-12)
        assert abs(lin.cost - reference.cost) <= 1e-12 * reference.cost

        evaluation = assembler.evaluate_cost(problem)
        assert not evaluation.valid[-1]
        assert abs(evaluation.cost - reference.cost) <= 1e-12 * reference.cost


    def test_cost_over_fixed_observations(self):
        """Costing a fixed observation set is infinite once one of them is degenerate"""
        camera = make_camera(focal=500.0)
        assembler = JacobianAssembler(create_loss("trivial"))
        front = BundleProblem([camera], [[0.0, 0.0, -1.0]], [0], [0], [[300.0, 0.0]])
        behind = BundleProblem([camera], [[0.0, 0.0, 1.0]], [0], [0], [[300.0, 0.0]])

        assert assembler.evaluate_cost(front).cost == pytest.approx(45000.0)
        assert assembler.evaluate_cost(front, np.array([0])).cost == pytest.approx(45000.0)

        # Dropping the degenerate observation alone would make the cost vanish
        assert assembler.evaluate_cost(behind).cost == 0.0
        evaluation = assembler.evaluate_cost(behind, np.array([0]))
        assert evaluation.cost == np.inf
        assert evaluation.num_lost == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
