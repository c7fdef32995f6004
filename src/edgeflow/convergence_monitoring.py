"""
Convergence Monitoring and Residual Tracking

Implements the residual bookkeeping of the solver core:
- Max-residual tracker: RMS per variable plus the largest local residual
  with its point index and coordinates, reset at every assembly pass
- Per-iteration residual reports with non-physical point counts and
  linear/mixed-out solver diagnostics
- Stopping criteria: residual target, residual reduction, Cauchy series
  of a monitored coefficient, iteration cap
- Convergence history export to JSON and plotting with matplotlib
"""

import numpy as np
from typing import Any, Dict, List, Optional, Sequence, Tuple
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
import json
import logging
import time

logger = logging.getLogger(__name__)


@dataclass
class ResidualReport:
    """Residual norms of one outer iteration."""
    iteration: int
    rms: np.ndarray  # per variable
    max_values: np.ndarray  # per variable
    max_points: np.ndarray  # global point index of each maximum
    max_coordinates: np.ndarray  # (n_var, n_dim)
    non_physical_points: int = 0
    degraded_gradients: int = 0
    linear_solver: Optional[Dict[str, Any]] = None
    mixed_out: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    wall_time: float = 0.0

    @property
    def log10_rms(self) -> np.ndarray:
        return np.log10(np.maximum(self.rms, 1e-300))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'iteration': self.iteration,
            'rms': self.rms.tolist(),
            'max_values': self.max_values.tolist(),
            'max_points': self.max_points.tolist(),
            'max_coordinates': self.max_coordinates.tolist(),
            'non_physical_points': self.non_physical_points,
            'degraded_gradients': self.degraded_gradients,
            'linear_solver': self.linear_solver,
            'mixed_out': self.mixed_out,
            'wall_time': self.wall_time,
        }


class ResidualTracker:
    """
    RMS and located-maximum residual per variable.

    State belongs to one solver instance and is reset at the start of
    every assembly pass.
    """

    def __init__(self, variable_names: Sequence[str], n_dim: int):
        self.variable_names = list(variable_names)
        self.n_var = len(self.variable_names)
        self.n_dim = n_dim
        self.reset()

    def reset(self) -> None:
        self.sum_of_squares = np.zeros(self.n_var)
        self.n_points_counted = 0
        self.max_values = np.zeros(self.n_var)
        self.max_points = np.full(self.n_var, -1, dtype=np.int64)
        self.max_coordinates = np.zeros((self.n_var, self.n_dim))

    def add_rms(self, squares: np.ndarray, n_points: int) -> None:
        self.sum_of_squares += squares
        self.n_points_counted += n_points

    def add_res_max(self, variable: int, value: float, point: int, coordinates: Sequence[float]) -> None:
        """
        Record a local residual if it exceeds the current maximum of the variable.

        The coordinates are copied; the caller's array is never modified.
        """
        value = abs(float(value))
        if value > self.max_values[variable]:
            self.max_values[variable] = value
            self.max_points[variable] = int(point)
            self.max_coordinates[variable] = np.array(coordinates, dtype=float, copy=True)

    def accumulate(self, residual: np.ndarray, coordinates: np.ndarray,
                   global_index: np.ndarray, n_owned: int) -> None:
        """Add the owned rows of a residual array to the RMS sums and maxima."""
        owned = residual[:n_owned]
        if n_owned == 0:
            return
        self.add_rms(np.sum(owned**2, axis=0), n_owned)
        location = np.argmax(np.abs(owned), axis=0)
        for var, point in enumerate(location):
            self.add_res_max(var, owned[point, var], global_index[point], coordinates[point])

    def finalize(self, iteration: int, communicator=None) -> ResidualReport:
        """Reduce over partitions and produce the report of this iteration."""
        squares, count = self.sum_of_squares, self.n_points_counted
        max_values = self.max_values.copy()
        max_points = self.max_points.copy()
        max_coordinates = self.max_coordinates.copy()
        if communicator is not None and communicator.size > 1:
            squares = communicator.global_reduction(squares, "sum")
            count = communicator.global_reduction(count, "sum")
            for var in range(self.n_var):
                value, (point, coords) = communicator.global_max_location(
                    max_values[var], (max_points[var], max_coordinates[var])
                )
                max_values[var], max_points[var], max_coordinates[var] = value, point, coords
        rms = np.sqrt(squares / max(count, 1))
        return ResidualReport(iteration, rms, max_values, max_points, max_coordinates)


class CauchySeries:
    """
    Cauchy convergence criterion on a monitored scalar.

    Keeps the last N relative changes; converged when their mean drops
    below epsilon.
    """

    def __init__(self, elements: int, epsilon: float):
        self.elements = elements
        self.epsilon = epsilon
        self.reset()

    def reset(self) -> None:
        self.changes: deque = deque(maxlen=max(self.elements, 1))
        self.previous: Optional[float] = None
        self.value = np.inf

    def update(self, value: float) -> float:
        if self.previous is not None:
            self.changes.append(abs(value - self.previous) / max(abs(value), 1e-16))
        self.previous = value
        if len(self.changes) == self.elements:
            self.value = float(np.mean(self.changes))
        return self.value

    @property
    def converged(self) -> bool:
        return self.elements > 0 and self.value < self.epsilon


class ConvergenceMonitor:
    """
    Main convergence monitoring system.

    Stores the residual history and decides when the outer loop stops.
    """

    def __init__(self, config, variable_names: Sequence[str]):
        """Initialize convergence monitor."""
        self.config = config
        self.variable_names = list(variable_names)
        self.history: List[ResidualReport] = []
        self.initial_rms: Optional[np.ndarray] = None
        self.cauchy = CauchySeries(config.cauchy_elements, config.cauchy_epsilon)
        self.start_time = time.time()

    def update(self, report: ResidualReport, monitored_value: Optional[float] = None) -> ResidualReport:
        """Add one iteration's report to the history and log it."""
        report.wall_time = time.time() - self.start_time
        if self.initial_rms is None:
            self.initial_rms = report.rms.copy()
        if monitored_value is not None and self.config.cauchy_elements > 0:
            self.cauchy.update(monitored_value)
        self.history.append(report)

        frequency = max(self.config.monitor_frequency, 1)
        if report.iteration % frequency == 0 or report.iteration == 1:
            self._log_convergence_status(report)
        if report.non_physical_points:
            logger.warning(f"Iteration {report.iteration}: {report.non_physical_points} non-physical points clipped")
        return report

    def _log_convergence_status(self, report: ResidualReport) -> None:
        """Log current convergence status."""
        rms_text = " ".join(f"{name}={value:+.3f}" for name, value in zip(self.variable_names, report.log10_rms))
        logger.info(f"Iteration {report.iteration}: log10(RMS) {rms_text}")
        worst = int(np.argmax(report.max_values))
        logger.info(
            f"  max residual {report.max_values[worst]:.3e} in {self.variable_names[worst]} "
            f"at point {report.max_points[worst]} {np.round(report.max_coordinates[worst], 6).tolist()}"
        )
        if report.linear_solver:
            logger.info(f"  linear solver: {report.linear_solver['iterations']} iterations, "
                        f"residual {report.linear_solver['residual']:.3e}")
        for marker, diagnostics in report.mixed_out.items():
            if not diagnostics.get('converged', True):
                logger.warning(f"  mixed-out average on '{marker}' not converged "
                               f"(residual {diagnostics.get('residual', float('nan')):.3e})")

    def check_stopping_criteria(self) -> Tuple[bool, List[str]]:
        """
        Check all stopping criteria.

        Returns:
            Tuple of (should_stop, reasons)
        """
        if not self.history:
            return False, []
        latest = self.history[-1]
        reasons = []

        if latest.log10_rms[0] < self.config.residual_target:
            reasons.append(f"Residual target {self.config.residual_target} reached")
        if self.config.residual_reduction > 0.0 and self.initial_rms is not None:
            reduction = np.log10(max(self.initial_rms[0], 1e-300)) - latest.log10_rms[0]
            if reduction >= self.config.residual_reduction:
                reasons.append(f"Residual reduced by {reduction:.2f} orders")
        if self.cauchy.converged:
            reasons.append(f"Cauchy criterion {self.cauchy.value:.3e} below {self.cauchy.epsilon}")
        if not np.all(np.isfinite(latest.rms)):
            reasons.append("Residual is not finite")
        if latest.iteration >= self.config.max_iterations:
            reasons.append("Maximum iterations reached")

        return bool(reasons), reasons

    def residual_history(self) -> np.ndarray:
        """RMS history as an array (n_iterations, n_var)."""
        if not self.history:
            return np.zeros((0, len(self.variable_names)))
        return np.vstack([report.rms for report in self.history])

    def save_history(self, path) -> Path:
        """Write the convergence history as JSON."""
        path = Path(path)
        with open(path, 'w') as f:
            json.dump({
                'variables': self.variable_names,
                'history': [report.to_dict() for report in self.history],
            }, f, indent=2, default=float)
        logger.info(f"Convergence history written to {path}")
        return path

    def plot_history(self, path) -> Path:
        """Plot log RMS residual histories to an image file."""
        import matplotlib.pyplot as plt

        path = Path(path)
        history = self.residual_history()
        iterations = [report.iteration for report in self.history]
        fig, ax = plt.subplots(figsize=(10, 6))
        for k, name in enumerate(self.variable_names):
            ax.semilogy(iterations, np.maximum(history[:, k], 1e-300), label=name)
        ax.set_xlabel('Iteration')
        ax.set_ylabel('RMS residual')
        ax.legend()
        ax.grid(True)
        ax.set_title('Convergence History')
        fig.savefig(path, dpi=150, bbox_inches='tight')
        plt.close(fig)
        return path

    def reset(self) -> None:
        self.history.clear()
        self.initial_rms = None
        self.cauchy.reset()
        self.start_time = time.time()
