#!/usr/bin/env python3
"""
Bundle adjustment of BAL problem files
Sparse Levenberg-Marquardt with Schur complement and robust loss
"""

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from typing import Any, Dict

from sba.core.config import BundleAdjustmentConfig, LINEAR_SOLVERS, LOSS_FUNCTIONS
from sba.core.errors import BundleAdjustmentError
from sba.core.levenberg_marquardt import LevenbergMarquardtSolver, TerminationType
from sba.utils.bal_io import load_bal_problem, write_bal_problem, write_ply
from sba.utils.bal_preprocessing import normalize_problem, perturb_problem
from sba.utils.quality_metrics import QualityMetrics

logger = logging.getLogger(__name__)

EXIT_CONVERGED = 0
EXIT_FAILED = 1
EXIT_NO_CONVERGENCE = 2


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Sparse bundle adjustment for BAL problems")

    # Input/Output
    parser.add_argument(
        "--input_file", type=str, required=True, help="BAL problem file (.txt or .bz2)"
    )
    parser.add_argument(
        "--output_dir", type=str, required=True, help="Output directory for results"
    )
    parser.add_argument(
        "--config", type=str, default=None, help="JSON file with BundleAdjustmentConfig fields"
    )
    parser.add_argument(
        "--write_ply", action="store_true", help="Write initial and final PLY point clouds"
    )

    # Problem setup
    parser.add_argument(
        "--use_quaternion",
        action="store_true",
        help="Represent camera rotations as unit quaternions",
    )
    parser.add_argument(
        "--normalize", action="store_true", help="Normalize the scene before solving"
    )
    parser.add_argument(
        "--rotation_sigma", type=float, default=0.0, help="Rotation perturbation (radians)"
    )
    parser.add_argument(
        "--translation_sigma", type=float, default=0.0, help="Translation perturbation"
    )
    parser.add_argument(
        "--point_sigma", type=float, default=0.0, help="Point perturbation"
    )
    parser.add_argument(
        "--seed", type=int, default=None, help="Random seed for perturbations"
    )

    # Solver
    parser.add_argument(
        "--max_iterations", type=int, default=None, help="Maximum LM iterations (default: 40)"
    )
    parser.add_argument(
        "--loss", type=str, default=None, choices=list(LOSS_FUNCTIONS), help="Robust loss function"
    )
    parser.add_argument(
        "--huber_delta", type=float, default=None, help="Robust loss scale in pixels"
    )
    parser.add_argument(
        "--linear_solver",
        type=str,
        default=None,
        choices=list(LINEAR_SOLVERS),
        help="Solver for the reduced camera system",
    )
    parser.add_argument(
        "--numeric_jacobian",
        action="store_true",
        help="Use central differences instead of analytic derivatives",
    )
    parser.add_argument(
        "--num_threads", type=int, default=None, help="Worker threads (default: min(cpu_count, 8))"
    )
    parser.add_argument(
        "--progress", action="store_true", help="Show a progress bar over iterations"
    )
    parser.add_argument(
        "--log_level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )

    return parser.parse_args(argv)


def setup_logging(output_dir: str, level: str = "INFO"):
    """Setup logging configuration"""
    log_file = Path(output_dir) / "bundle_adjustment.log"
    log_file.parent.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.FileHandler(log_file), logging.StreamHandler(sys.stdout)],
    )


def build_config(args) -> BundleAdjustmentConfig:
    """Start from the JSON config (if any) and apply command line overrides"""
    config_dict: Dict[str, Any] = {}
    if args.config:
        with open(args.config) as f:
            config_dict = json.load(f)

    solver_dict = dict(config_dict.pop("solver", {}))
    if args.max_iterations is not None:
        solver_dict["max_iterations"] = args.max_iterations
    if args.linear_solver is not None:
        solver_dict["linear_solver"] = args.linear_solver
    config_dict["solver"] = solver_dict

    overrides = {
        "loss": args.loss,
        "huber_delta": args.huber_delta,
        "num_threads": args.num_threads,
        "log_level": args.log_level,
    }
    config_dict.update({key: value for key, value in overrides.items() if value is not None})
    if args.use_quaternion:
        config_dict["use_quaternion_rotation"] = True
    if args.numeric_jacobian:
        config_dict["use_analytic_jacobian"] = False
    if args.progress:
        config_dict["show_progress"] = True

    return BundleAdjustmentConfig.from_dict(config_dict)


def save_summary(filepath: Path, summary, config: BundleAdjustmentConfig,
                 metrics_before: Dict[str, Any], metrics_after: Dict[str, Any]):
    """Save solver summary and quality metrics in JSON format"""
    info = {
        'termination_type': summary.termination_type.value,
        'message': summary.message,
        'initial_cost': summary.initial_cost,
        'final_cost': summary.final_cost,
        'num_iterations': summary.num_iterations,
        'num_successful_steps': summary.num_successful_steps,
        'num_unsuccessful_steps': summary.num_unsuccessful_steps,
        'num_excluded_observations': summary.num_excluded_observations,
        'total_time': summary.total_time,
        'iterations': [
            {
                'iteration': it.iteration,
                'cost': it.cost,
                'cost_change': it.cost_change,
                'gradient_max_norm': it.gradient_max_norm,
                'step_norm': it.step_norm,
                'lambda': it.lambda_,
                'step_accepted': it.step_accepted,
                'num_rejections': it.num_rejections,
            }
            for it in summary.iterations
        ],
        'metrics_before': metrics_before,
        'metrics_after': metrics_after,
        'config': config.to_dict(),
    }
    with open(filepath, "w") as f:
        json.dump(info, f, indent=2, default=float)


def bundle_adjustment(input_file: str = None, output_dir: str = None, **kwargs) -> int:
    """Bundle adjustment of a BAL file - Main API function

    Returns:
        Process exit code: 0 converged, 2 did not converge, 1 failed
    """
    # Handle both command line args and direct function calls
    if input_file is None or output_dir is None:
        args = parse_args()
        input_file = args.input_file
        output_dir = args.output_dir
        config = build_config(args)
        kwargs = {
            "normalize": args.normalize,
            "rotation_sigma": args.rotation_sigma,
            "translation_sigma": args.translation_sigma,
            "point_sigma": args.point_sigma,
            "seed": args.seed,
            "write_ply": args.write_ply,
        }
    else:
        config = kwargs.pop("config", None) or BundleAdjustmentConfig()

    output_path = Path(output_dir)
    output_path.mkdir(parents=True, exist_ok=True)
    setup_logging(str(output_path), config.log_level)

    logger.info("=" * 60)
    logger.info("Sparse Bundle Adjustment")
    logger.info("=" * 60)
    logger.info(f"Input file: {input_file}")
    logger.info(f"Output directory: {output_dir}")
    logger.info(f"Loss: {config.loss} (delta={config.huber_delta})")
    logger.info(f"Linear solver: {config.solver.linear_solver}")
    logger.info(f"Threads: {config.num_threads}")

    start_time = time.time()

    # Stage 1: Load problem
    logger.info("Stage 1: Loading BAL problem...")
    try:
        problem = load_bal_problem(input_file, use_quaternion=config.use_quaternion_rotation)
    except (OSError, ValueError, BundleAdjustmentError) as e:
        logger.error(f"Failed to load {input_file}: {e}")
        return EXIT_FAILED

    # Stage 2: Preprocess
    if kwargs.get("normalize"):
        logger.info("Stage 2: Normalizing problem...")
        normalize_problem(problem)
    if kwargs.get("rotation_sigma") or kwargs.get("translation_sigma") or kwargs.get("point_sigma"):
        logger.info("Stage 2: Perturbing problem...")
        perturb_problem(
            problem,
            rotation_sigma=kwargs.get("rotation_sigma", 0.0),
            translation_sigma=kwargs.get("translation_sigma", 0.0),
            point_sigma=kwargs.get("point_sigma", 0.0),
            seed=kwargs.get("seed"),
        )

    metrics = QualityMetrics(min_depth=config.min_depth)
    metrics_before = metrics.evaluate(problem)
    metrics.log_summary(metrics_before)
    if kwargs.get("write_ply"):
        write_ply(problem, output_path / "initial.ply")

    # Stage 3: Solve
    logger.info("Stage 3: Levenberg-Marquardt optimization...")
    try:
        summary = LevenbergMarquardtSolver(config).solve(problem)
    except BundleAdjustmentError as e:
        logger.error(f"Bundle adjustment aborted: {e}")
        return EXIT_FAILED

    # Stage 4: Save results
    logger.info("Stage 4: Saving results...")
    metrics_after = metrics.evaluate(problem)
    metrics.log_summary(metrics_after)
    write_bal_problem(problem, output_path / "adjusted.txt")
    if kwargs.get("write_ply"):
        write_ply(problem, output_path / "final.ply")
    save_summary(output_path / "summary.json", summary, config, metrics_before, metrics_after)

    logger.info(f"Total time: {time.time() - start_time:.2f}s")

    if summary.termination_type is TerminationType.CONVERGENCE:
        return EXIT_CONVERGED
    if summary.termination_type is TerminationType.NO_CONVERGENCE:
        return EXIT_NO_CONVERGENCE
    return EXIT_FAILED


def main():
    """Main entry point for command line usage"""
    return bundle_adjustment()


if __name__ == "__main__":
    sys.exit(main())
