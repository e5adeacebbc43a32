"""
Levenberg-Marquardt driver for sparse bundle adjustment

Each iteration linearizes the robustified problem, solves the damped normal
equations through the Schur complement and evaluates the candidate state
over the observations of the current linearization. A candidate is accepted
only if all of them stay non-degenerate and their cost is strictly lower.
The caller's problem is only written at the end of the solve, and only if
at least one step was accepted.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import nullcontext
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

import numpy as np
from tqdm import tqdm

from .config import BundleAdjustmentConfig
from .errors import (
    AllObservationsDegenerate,
    BundleAdjustmentError,
    IterationBudgetExhausted,
    ReducedSystemError,
    SingularPointBlock,
    StepRejectedRepeatedly,
)
from .jacobian_assembly import JacobianAssembler
from .parameter_blocks import BundleProblem
from .robust_loss import create_loss
from .schur_solver import SchurComplementSolver

logger = logging.getLogger(__name__)


class SolverState(Enum):
    INITIALIZING = "initializing"
    EVALUATING = "evaluating"
    SOLVING = "solving"
    ACCEPTING = "accepting"
    CONVERGED = "converged"
    FAILED = "failed"


class TerminationType(Enum):
    CONVERGENCE = "convergence"
    NO_CONVERGENCE = "no_convergence"
    FAILURE = "failure"


@dataclass
class IterationSummary:
    """Record of one outer iteration"""

    iteration: int
    cost: float
    cost_change: float
    gradient_max_norm: float
    step_norm: float
    lambda_: float
    step_accepted: bool
    num_rejections: int
    num_excluded_observations: int
    iteration_time: float


@dataclass
class SolverSummary:
    """Outcome of a bundle adjustment solve"""

    termination_type: TerminationType = TerminationType.NO_CONVERGENCE
    final_state: SolverState = SolverState.INITIALIZING
    message: str = ""
    initial_cost: float = float("nan")
    final_cost: float = float("nan")
    num_iterations: int = 0
    num_successful_steps: int = 0
    num_unsuccessful_steps: int = 0
    final_lambda: float = float("nan")
    num_residual_blocks: int = 0
    num_excluded_observations: int = 0
    total_time: float = 0.0
    error: Optional[BundleAdjustmentError] = None
    iterations: List[IterationSummary] = field(default_factory=list)

    @property
    def converged(self) -> bool:
        return self.termination_type is TerminationType.CONVERGENCE

    @property
    def is_solution_usable(self) -> bool:
        return self.termination_type is not TerminationType.FAILURE

    def raise_if_failed(self, allow_no_convergence: bool = True) -> None:
        """Re-raise the recorded error for a failed (or, optionally, unconverged) solve"""
        if self.termination_type is TerminationType.FAILURE:
            raise self.error or BundleAdjustmentError(self.message)
        if not allow_no_convergence and self.termination_type is TerminationType.NO_CONVERGENCE:
            raise self.error or IterationBudgetExhausted(self.num_iterations, self.final_cost)

    def brief_report(self) -> str:
        return (
            f"Bundle adjustment {self.termination_type.value}: "
            f"cost {self.initial_cost:.6e} -> {self.final_cost:.6e}, "
            f"{self.num_iterations} iterations ({self.num_successful_steps} accepted, "
            f"{self.num_unsuccessful_steps} rejected), lambda={self.final_lambda:.3e}, "
            f"{self.num_excluded_observations} excluded observations, "
            f"{self.total_time:.2f}s. {self.message}"
        )


class LevenbergMarquardtSolver:
    """Damped Gauss-Newton over camera and point blocks, points marginalized"""

    def __init__(self, config: Optional[BundleAdjustmentConfig] = None):
        self.config = config or BundleAdjustmentConfig()
        self.loss = create_loss(self.config.loss, self.config.huber_delta)

    def _executor(self):
        if self.config.num_threads > 1:
            return ThreadPoolExecutor(max_workers=self.config.num_threads)
        return nullcontext()

    def solve(self, problem: BundleProblem) -> SolverSummary:
        """
        Optimize all camera and point blocks of a problem

        Args:
            problem: Bundle adjustment problem, updated in place with the last
                accepted state (also when a later iteration fails)

        Returns:
            SolverSummary describing termination and per-iteration progress

        Raises:
            MalformedObservation: an observation references a missing block
        """
        problem.validate()
        logger.info(
            f"Starting bundle adjustment: {problem.num_cameras} cameras, {problem.num_points} points, "
            f"{problem.num_observations} observations, loss={self.loss!r}"
        )

        with self._executor() as executor:
            assembler = JacobianAssembler.from_config(self.config, self.loss, executor)
            schur = SchurComplementSolver.from_config(
                self.config.solver, executor, self.config.num_threads
            )
            summary, solution = self._run(problem, assembler, schur)

        if summary.num_successful_steps > 0:
            problem.assign_parameters(solution)

        if summary.termination_type is TerminationType.CONVERGENCE:
            logger.info(summary.brief_report())
        elif summary.termination_type is TerminationType.NO_CONVERGENCE:
            logger.warning(summary.brief_report())
        else:
            logger.error(summary.brief_report())
        return summary

    def _run(self, problem: BundleProblem, assembler: JacobianAssembler,
             schur: SchurComplementSolver):
        options = self.config.solver
        summary = SolverSummary()
        start_time = time.time()

        current = problem.copy()
        state = SolverState.INITIALIZING
        iteration = 0
        rejections = 0
        iteration_start = start_time
        lambda_ = options.initial_lambda
        linearization = equations = step = None
        cost = gradient_norm = step_norm = float("nan")
        parameter_norm = 0.0

        progress = tqdm(
            total=options.max_iterations,
            desc="Bundle adjustment",
            disable=not self.config.show_progress,
        )

        def finish(next_state: SolverState, termination: TerminationType, message: str,
                   error: Optional[BundleAdjustmentError] = None) -> SolverState:
            summary.termination_type = termination
            summary.message = message
            summary.error = error
            return next_state

        def record(accepted: bool, cost_change: float) -> None:
            summary.iterations.append(IterationSummary(
                iteration=iteration,
                cost=cost,
                cost_change=cost_change,
                gradient_max_norm=gradient_norm,
                step_norm=step_norm,
                lambda_=lambda_,
                step_accepted=accepted,
                num_rejections=rejections,
                num_excluded_observations=linearization.num_excluded,
                iteration_time=time.time() - iteration_start,
            ))

        while state not in (SolverState.CONVERGED, SolverState.FAILED):
            if state is SolverState.INITIALIZING:
                linearization = assembler.linearize(current)
                cost = summary.initial_cost = linearization.cost
                parameter_norm = current.tangent_norm()
                logger.info(
                    f"Initial cost: {cost:.6e} ({linearization.num_residual_blocks} residual blocks, "
                    f"{linearization.num_excluded} excluded)"
                )
                state = SolverState.EVALUATING

            elif state is SolverState.EVALUATING:
                if linearization.num_residual_blocks == 0 and linearization.num_excluded > 0:
                    error = AllObservationsDegenerate(
                        linearization.num_excluded, linearization.degenerate[0], iteration
                    )
                    logger.error(str(error))
                    state = finish(SolverState.FAILED, TerminationType.FAILURE, str(error), error)
                    continue

                equations = schur.build(linearization)
                gradient_norm = equations.gradient_max_norm()
                if gradient_norm <= options.gradient_tolerance_absolute:
                    state = finish(
                        SolverState.CONVERGED, TerminationType.CONVERGENCE,
                        f"Gradient tolerance reached: {gradient_norm:.3e} <= "
                        f"{options.gradient_tolerance_absolute:.3e}",
                    )
                    continue

                elapsed = time.time() - start_time
                if iteration >= options.max_iterations:
                    error = IterationBudgetExhausted(iteration, cost)
                elif options.max_solver_time_seconds is not None and elapsed >= options.max_solver_time_seconds:
                    error = IterationBudgetExhausted(iteration, cost, reason="time budget")
                else:
                    error = None
                if error is not None:
                    state = finish(SolverState.CONVERGED, TerminationType.NO_CONVERGENCE, str(error), error)
                    continue

                iteration += 1
                rejections = 0
                iteration_start = time.time()
                state = SolverState.SOLVING

            elif state is SolverState.SOLVING:
                try:
                    step = schur.solve(equations, lambda_)
                except SingularPointBlock as e:
                    error = e.with_iteration(iteration)
                    logger.error(str(error))
                    record(False, 0.0)
                    state = finish(SolverState.FAILED, TerminationType.FAILURE, str(error), error)
                    continue
                except ReducedSystemError as e:
                    logger.warning(f"Iteration {iteration}: {e}; increasing damping")
                    step = None
                    step_norm = float("nan")
                    state = SolverState.ACCEPTING
                    continue

                step_norm = step.norm()
                if step_norm <= options.parameter_tolerance * (parameter_norm + options.parameter_tolerance):
                    record(False, 0.0)
                    state = finish(
                        SolverState.CONVERGED, TerminationType.CONVERGENCE,
                        f"Parameter tolerance reached: |step| = {step_norm:.3e}",
                    )
                    continue
                state = SolverState.ACCEPTING

            elif state is SolverState.ACCEPTING:
                candidate = new_cost = None
                if step is not None:
                    candidate = current.plus(step.delta_cameras, step.delta_points)
                    evaluation = assembler.evaluate_cost(candidate, linearization.observation_indices)
                    new_cost = evaluation.cost
                    if evaluation.num_lost:
                        logger.debug(
                            f"Iteration {iteration}: step makes {evaluation.num_lost} "
                            f"observations degenerate"
                        )

                if new_cost is not None and np.isfinite(new_cost) and new_cost < cost:
                    cost_change = cost - new_cost
                    relative_decrease = cost_change / cost if cost > 0.0 else 0.0
                    current = candidate
                    parameter_norm = current.tangent_norm()
                    cost = new_cost
                    summary.num_successful_steps += 1
                    logger.debug(
                        f"Iteration {iteration}: cost {cost:.6e} (change {cost_change:.3e}), "
                        f"|step|={step_norm:.3e}, lambda={lambda_:.3e}"
                    )
                    record(True, cost_change)
                    lambda_ = max(lambda_ / options.lambda_up_down_factor, options.min_lambda)
                    progress.update(1)
                    progress.set_postfix(cost=f"{cost:.4e}", lam=f"{lambda_:.1e}")

                    if relative_decrease <= options.cost_tolerance_relative:
                        state = finish(
                            SolverState.CONVERGED, TerminationType.CONVERGENCE,
                            f"Function tolerance reached: relative decrease {relative_decrease:.3e}",
                        )
                        continue
                    linearization = assembler.linearize(current)
                    cost = linearization.cost
                    state = SolverState.EVALUATING
                else:
                    rejections += 1
                    summary.num_unsuccessful_steps += 1
                    lambda_ *= options.lambda_up_down_factor
                    logger.debug(
                        f"Iteration {iteration}: step rejected ({rejections} in a row), "
                        f"lambda -> {lambda_:.3e}"
                    )
                    if lambda_ > options.max_lambda or rejections >= options.max_consecutive_rejections:
                        error = StepRejectedRepeatedly(iteration, cost, lambda_, rejections)
                        record(False, 0.0)
                        state = finish(SolverState.FAILED, TerminationType.FAILURE, str(error), error)
                        continue
                    state = SolverState.SOLVING

        progress.close()

        summary.final_state = state
        summary.final_cost = cost
        summary.final_lambda = lambda_
        summary.num_iterations = iteration
        summary.num_residual_blocks = linearization.num_residual_blocks
        summary.num_excluded_observations = linearization.num_excluded
        summary.total_time = time.time() - start_time
        return summary, current


def solve_bundle_adjustment(problem: BundleProblem,
                            config: Optional[BundleAdjustmentConfig] = None) -> SolverSummary:
    """Convenience function: run Levenberg-Marquardt on a problem in place"""
    return LevenbergMarquardtSolver(config).solve(problem)
