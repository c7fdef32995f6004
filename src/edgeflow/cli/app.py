"""Command-line interface for edgeflow.

This module provides the main entry point for running a configured case on
the built-in dual meshes.
"""

import argparse
import logging
import os
import traceback
from typing import Any, Dict, List, Optional

from edgeflow.core.config import SolverConfig
from edgeflow.core.exceptions import EdgeflowError
from edgeflow.flow_solver import FlowSolver
from edgeflow.mesh.dual_mesh import build_cartesian_dual_mesh, build_line_dual_mesh


def setup_logging(debug_mode: bool = False) -> None:
    """Configure logging based on debug mode.

    Args:
        debug_mode: If True, set logging level to DEBUG, otherwise INFO
    """
    log_level = logging.DEBUG if debug_mode else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments.

    Returns:
        Parsed arguments
    """
    parser = argparse.ArgumentParser(
        description='Run an edge-based finite-volume case on a built-in dual mesh'
    )
    parser.add_argument('config_file', help='Case configuration (.yaml, .yml or .json)')
    parser.add_argument('-n', '--iterations', type=int, default=None,
                        help='Override convergence.max_iterations (time.inner_iterations for dual-time cases)')
    parser.add_argument('--time-steps', type=int, default=None,
                        help='Number of physical time steps for dual-time cases')
    parser.add_argument('--history', type=str, default=None,
                        help='Write the convergence history to this JSON file')
    parser.add_argument('--plot', type=str, default=None,
                        help='Save a residual history plot to this image file')
    parser.add_argument('--debug', action='store_true', help='Enable debug output')
    return parser.parse_args(argv)


def build_mesh(mesh_config: Dict[str, Any]):
    """Create the dual mesh described by the 'mesh' section of a case."""
    kind = mesh_config.get('kind', 'cartesian')
    if kind == 'cartesian':
        return build_cartesian_dual_mesh(
            mesh_config.get('nx', 11), mesh_config.get('ny', 11),
            mesh_config.get('lx', 1.0), mesh_config.get('ly', 1.0),
            tuple(mesh_config.get('origin', (0.0, 0.0))),
            mesh_config.get('marker_names'),
            mesh_config.get('periodic_x', False),
        )
    if kind == 'line':
        names = mesh_config.get('marker_names', ('left', 'right'))
        return build_line_dual_mesh(mesh_config.get('n_points', 11), mesh_config.get('length', 1.0),
                                    tuple(names))
    raise EdgeflowError(f"Unknown mesh kind: {kind}")


def main(argv: Optional[List[str]] = None) -> int:
    """Main function to run a case.

    Returns:
        Exit code: 0 for success, non-zero for error
    """
    args = parse_arguments(argv)

    setup_logging(args.debug)
    logger = logging.getLogger(__name__)

    if not os.path.exists(args.config_file):
        logger.error(f"Configuration file not found: {args.config_file}")
        return 1

    try:
        config = SolverConfig.from_file(args.config_file)
        if args.history:
            config.convergence.history_file = args.history
        mesh = build_mesh(config.mesh)
        logger.info(f"Mesh: {mesh.get_statistics()}")

        solver = FlowSolver(config, mesh)
        solver.initialize()
        if config.time.is_dual_time:
            if args.iterations is not None:
                config.time.inner_iterations = args.iterations
            summary = solver.solve_physical_time(args.time_steps or 1)
        else:
            summary = solver.solve(args.iterations)

        if solver.capabilities.has('aerodynamics'):
            loads = solver.forces()
            logger.info(f"Wall force {loads.force.tolist()}, coefficients {loads.coefficients}")
        if solver.capabilities.has('turbomachinery'):
            for marker, performance in solver.turbomachinery_performance().items():
                logger.info(f"{marker}: mass flow {performance.mass_flow:.6g}, "
                            f"total pressure {performance.total_pressure:.6g}, "
                            f"flow angle {performance.flow_angle:.3f} deg")
        if args.plot:
            solver.monitor.plot_history(args.plot)
            logger.info(f"Residual plot saved to {args.plot}")

        logger.info(f"Run finished: {summary}")
        return 0 if summary.get('converged', False) else 2

    except EdgeflowError as e:
        logger.error(f"Setup error: {e}")
        if args.debug:
            logger.debug(traceback.format_exc())
        return 1
    except FileNotFoundError as e:
        logger.error(str(e))
        return 1
