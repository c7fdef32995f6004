"""
Per-Point State Storage

Contiguous arrays indexed by local point handle holding everything the
solver keeps per control volume: conserved and primitive variables,
gradients and limiters, residual buffers, time-level copies for dual time
stepping, local time steps and non-physical point flags.
"""

import numpy as np
from typing import Dict
import logging

logger = logging.getLogger(__name__)


class StateStore:
    """
    Arena-style storage of all per-point solver arrays.

    Every buffer has the point count as its leading dimension, so a point
    handle is simply a row index valid for all of them.

    Only primitive gradients are stored. Conserved-variable gradients
    (n_var x n_dim per point) follow from them through the equation set's
    conservative_gradient and are derived on demand.
    """

    _BUFFERS = (
        "solution", "primitive", "gradient", "limiter", "residual", "residual_old",
        "solution_old", "solution_time_n", "solution_time_n1", "local_dt",
        "spectral_radius", "non_physical", "gradient_degraded", "strong_rows",
    )
    _FLAGS = ("non_physical", "gradient_degraded", "strong_rows")

    def __init__(self, n_points: int, n_var: int, n_prim: int, n_dim: int):
        """
        Initialize state store.

        Args:
            n_points: Number of local points (owned plus halo)
            n_var: Number of conserved variables
            n_prim: Number of primitive variables
            n_dim: Spatial dimension
        """
        self.n_var = n_var
        self.n_prim = n_prim
        self.n_dim = n_dim
        self.non_physical_count = 0
        self.time_levels_stored = 0
        self.halo_stale = False
        self._allocate(n_points)

    def _shapes(self, n_points: int) -> Dict[str, tuple]:
        return {
            "solution": (n_points, self.n_var),
            "primitive": (n_points, self.n_prim),
            "gradient": (n_points, self.n_prim, self.n_dim),
            "limiter": (n_points, self.n_prim),
            "residual": (n_points, self.n_var),
            "residual_old": (n_points, self.n_var),
            "solution_old": (n_points, self.n_var),
            "solution_time_n": (n_points, self.n_var),
            "solution_time_n1": (n_points, self.n_var),
            "local_dt": (n_points,),
            "spectral_radius": (n_points,),
            "non_physical": (n_points,),
            "gradient_degraded": (n_points,),
            "strong_rows": (n_points, self.n_var),  # rows replaced by strong boundary conditions
        }

    def _allocate(self, n_points: int) -> None:
        for name, shape in self._shapes(n_points).items():
            dtype = bool if name in self._FLAGS else float
            setattr(self, name, np.zeros(shape, dtype=dtype))
        self.limiter[:] = 1.0

    @property
    def n_points(self) -> int:
        return self.solution.shape[0]

    def resize(self, n_points: int) -> None:
        """
        Reallocate all buffers for a new point count.

        Existing rows are preserved up to the smaller of the two sizes; new
        rows are zero (limiters one). Called when the partition changes.
        """
        old = {name: getattr(self, name) for name in self._BUFFERS}
        keep = min(n_points, self.n_points)
        self._allocate(n_points)
        for name, array in old.items():
            getattr(self, name)[:keep] = array[:keep]
        logger.debug(f"Resized state store to {n_points} points")

    def set_solution(self, solution: np.ndarray) -> None:
        """Overwrite the conserved state of all points."""
        self.solution[:] = np.broadcast_to(solution, self.solution.shape)
        self.mark_modified()

    def mark_modified(self) -> None:
        """Record that owned values changed since the last halo exchange."""
        self.halo_stale = True

    def reset_residual(self) -> None:
        self.residual[:] = 0.0
        self.strong_rows[:] = False

    def save_solution_old(self) -> None:
        """Keep the state at the start of an iteration for multi-stage updates."""
        self.solution_old[:] = self.solution

    def push_time_level(self) -> None:
        """Shift stored physical-time levels: n-1 <- n, n <- current."""
        self.solution_time_n1[:] = self.solution_time_n
        self.solution_time_n[:] = self.solution
        self.time_levels_stored = min(self.time_levels_stored + 1, 2)

    def point_state(self, point: int) -> Dict[str, np.ndarray]:
        """Copies of all per-point values of one point, for output or coupling."""
        return {name: np.copy(getattr(self, name)[point]) for name in self._BUFFERS}
