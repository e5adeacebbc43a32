"""
Error taxonomy for sparse bundle adjustment

Every error carries the index/iteration context needed to log it or
attach it to a solver summary.
"""

from typing import Optional


class BundleAdjustmentError(Exception):
    """Base class for all bundle adjustment errors"""


class MalformedObservation(BundleAdjustmentError):
    """An observation references a block that does not exist, or is not finite"""

    def __init__(self, observation_index: int, camera_index: int, point_index: int, reason: str):
        self.observation_index = observation_index
        self.camera_index = camera_index
        self.point_index = point_index
        self.reason = reason
        super().__init__(
            f"Observation {observation_index} (camera={camera_index}, point={point_index}): {reason}"
        )


class DegenerateProjection(BundleAdjustmentError):
    """A point projects with zero or negative depth"""

    def __init__(
        self,
        depth: float,
        observation_index: Optional[int] = None,
        camera_index: Optional[int] = None,
        point_index: Optional[int] = None,
    ):
        self.depth = depth
        self.observation_index = observation_index
        self.camera_index = camera_index
        self.point_index = point_index
        context = ""
        if observation_index is not None:
            context = f" for observation {observation_index} (camera={camera_index}, point={point_index})"
        super().__init__(f"Degenerate projection{context}: depth={depth:.6g}")


class AllObservationsDegenerate(DegenerateProjection):
    """Every observation is degenerate, so there is nothing left to optimize"""

    def __init__(self, num_observations: int, first: DegenerateProjection,
                 iteration: Optional[int] = None):
        super().__init__(first.depth, first.observation_index, first.camera_index, first.point_index)
        self.num_observations = num_observations
        self.iteration = iteration
        at = f" at iteration {iteration}" if iteration is not None else ""
        self.args = (f"All {num_observations} observations are degenerate{at}; first: {first}",)


class SingularPointBlock(BundleAdjustmentError):
    """A damped 3x3 point block cannot be inverted during Schur elimination"""

    def __init__(self, point_index: int, condition_number: float, iteration: Optional[int] = None):
        self.point_index = point_index
        self.condition_number = condition_number
        self.iteration = iteration
        super().__init__(self._message())

    def _message(self) -> str:
        at = f" at iteration {self.iteration}" if self.iteration is not None else ""
        return f"Point block {self.point_index} is singular{at} (condition number {self.condition_number:.3e})"

    def with_iteration(self, iteration: int) -> "SingularPointBlock":
        self.iteration = iteration
        self.args = (self._message(),)
        return self


class ReducedSystemError(BundleAdjustmentError):
    """The reduced camera system could not be solved"""


class StepRejectedRepeatedly(BundleAdjustmentError):
    """Damping exceeded its ceiling without an accepted step"""

    def __init__(self, iteration: int, cost: float, lambda_: float, num_rejections: int):
        self.iteration = iteration
        self.cost = cost
        self.lambda_ = lambda_
        self.num_rejections = num_rejections
        super().__init__(
            f"Step rejected {num_rejections} times at iteration {iteration} "
            f"(cost={cost:.6e}, lambda={lambda_:.3e})"
        )


class IterationBudgetExhausted(BundleAdjustmentError):
    """The solve stopped on its iteration or time budget before converging"""

    def __init__(self, iterations: int, cost: float, reason: str = "iteration budget"):
        self.iterations = iterations
        self.cost = cost
        self.reason = reason
        super().__init__(
            f"Did not converge: {reason} exhausted after {iterations} iterations (cost={cost:.6e})"
        )
