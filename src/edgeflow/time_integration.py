"""
Time Advance for the Edge-Based Solver Core

Implements the pseudo-time and physical-time update of the per-point state:
- Local or global time steps from a CFL bound on the spectral radius
- Explicit Euler and low-storage multi-stage Runge-Kutta
- Classical four-stage Runge-Kutta
- Implicit Euler: assembles (V/Δt I + ∂R/∂U) ΔU = -R and hands it to the
  linear solver backend
- Dual time stepping: BDF1/BDF2 physical-time terms added to the residual
  and Jacobian of the inner pseudo-time iteration

The advance is driven by a residual callback supplied by the owner, which
performs one complete assembly pass (primitive recovery, halo exchange,
gradients, fluxes, boundaries) into the StateStore.
"""

import numpy as np
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass, field
import logging

from .core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

CLASSICAL_RK4_STAGES = (0.5, 0.5, 1.0)
CLASSICAL_RK4_WEIGHTS = (1.0 / 6.0, 1.0 / 3.0, 1.0 / 3.0, 1.0 / 6.0)


class AdvanceState(Enum):
    """Phases of one outer iteration."""
    COLLECTING_RESIDUAL = "collecting_residual"
    STAGE_UPDATE = "stage_update"
    CONVERGED_CHECK = "converged_check"


@dataclass
class AdvanceResult:
    """Outcome of one pseudo-time step."""
    residual: np.ndarray  # residual of the first stage, as reported for convergence
    stages: int
    dt_min: float
    dt_max: float
    linear_info: Optional[Any] = None  # LinearSolveInfo of implicit steps
    stage_rms: List[float] = field(default_factory=list)

    def linear_diagnostics(self) -> Optional[Dict[str, Any]]:
        if self.linear_info is None:
            return None
        return {
            'iterations': self.linear_info.iterations,
            'residual': self.linear_info.residual,
            'converged': self.linear_info.converged,
            'method': self.linear_info.method,
        }


AssembleFn = Callable[[Optional[Any]], None]


class TimeAdvance:
    """
    Time advance state machine of one solver instance.

    Cycles COLLECTING_RESIDUAL -> STAGE_UPDATE for every stage and ends
    each step in CONVERGED_CHECK, where the owner evaluates its stopping
    criteria.
    """

    def __init__(self, config, mesh, equations, communicator=None,
                 linear_solver=None, system=None):
        """
        Initialize time advance.

        Args:
            config: TimeIntegrationConfig
            mesh: DualMesh of the local partition
            equations: Equation set (spectral radius and diffusivity)
            communicator: Communicator for global time steps
            linear_solver: LinearSolver used by implicit schemes
            system: BlockSparseSystem used by implicit schemes
        """
        self.config = config
        self.mesh = mesh
        self.equations = equations
        self.communicator = communicator
        self.linear_solver = linear_solver
        self.system = system
        self.state = AdvanceState.CONVERGED_CHECK
        self.physical_time = 0.0
        self.physical_step = 0

        if config.is_implicit and (linear_solver is None or system is None):
            raise ConfigurationError("Implicit time integration needs a linear solver and a block system")

    # Time step

    def spectral_sums(self, store) -> np.ndarray:
        """Σ of convective and diffusive spectral radii over each control volume's faces."""
        mesh, eq = self.mesh, self.equations
        V = store.primitive
        total = np.zeros(mesh.n_points)
        if mesh.n_edges:
            i, j = mesh.edges[:, 0], mesh.edges[:, 1]
            V_face = 0.5 * (V[i] + V[j])
            lam = eq.spectral_radius(V_face, mesh.edge_normals)
            np.add.at(total, i, lam)
            np.add.at(total, j, lam)

            diffusivity = eq.diffusivity(V_face)
            if np.any(diffusivity > 0.0):
                area_squared = np.sum(mesh.edge_normals**2, axis=1)
                np.add.at(total, i, diffusivity * area_squared / mesh.volumes[i])
                np.add.at(total, j, diffusivity * area_squared / mesh.volumes[j])

        for marker in mesh.markers.values():
            if marker.n_vertices:
                np.add.at(total, marker.vertices, eq.spectral_radius(V[marker.vertices], marker.normals))
        return total

    def compute_time_step(self, store) -> np.ndarray:
        """
        Fill store.local_dt.

        Δt_i = CFL V_i / Σλ_i, clipped to max_time_step, or the fixed time
        step when one is configured. Without local time stepping every
        point takes the global minimum.
        """
        config = self.config
        n_owned = self.mesh.n_owned
        if config.time_step is not None:
            store.local_dt[:] = config.time_step
            store.spectral_radius[:] = 0.0
            return store.local_dt

        lam = self.spectral_sums(store)
        store.spectral_radius[:] = lam
        with np.errstate(divide="ignore"):
            dt = np.where(lam > 0.0, config.cfl_number * self.mesh.volumes / lam, config.max_time_step)
        dt = np.minimum(dt, config.max_time_step)

        if not config.local_time_stepping:
            local_min = float(np.min(dt[:n_owned])) if n_owned else config.max_time_step
            global_min = local_min
            if self.communicator is not None:
                global_min = float(self.communicator.global_reduction(local_min, "min"))
            dt[:] = global_min
        store.local_dt[:] = dt
        return store.local_dt

    # Residual collection

    def dual_time_coefficients(self, store):
        """BDF coefficients (c_n+1, c_n, c_n-1) of the physical time derivative."""
        if self.config.time_marching == "dual_time_second" and store.time_levels_stored >= 2:
            return 1.5, -2.0, 0.5
        return 1.0, -1.0, 0.0

    def _collect(self, store, assemble: AssembleFn, system=None) -> None:
        self.state = AdvanceState.COLLECTING_RESIDUAL
        assemble(system)
        if self.config.is_dual_time:
            self._augment_dual_time(store, system)

    def _augment_dual_time(self, store, system=None) -> None:
        """
        Add V (c1 U + c0 U^n + c_1 U^(n-1)) / Δt_phys to the owned residual rows.

        Rows replaced by strong boundary conditions keep their zero residual.
        """
        n = self.mesh.n_owned
        dt_phys = self.config.physical_time_step
        c_new, c_n, c_n1 = self.dual_time_coefficients(store)
        volume = self.mesh.volumes[:n, None]
        term = volume / dt_phys * (
            c_new * store.solution[:n] + c_n * store.solution_time_n[:n] + c_n1 * store.solution_time_n1[:n]
        )
        store.residual[:n] += np.where(store.strong_rows[:n], 0.0, term)
        if system is not None:
            system.add_diagonal_scalar(np.arange(n), c_new * self.mesh.volumes[:n] / dt_phys)

    def _apply_update(self, store, increment: np.ndarray) -> None:
        n = self.mesh.n_owned
        store.solution[:n] += increment[:n]
        store.mark_modified()

    def _rms(self, store) -> float:
        n = self.mesh.n_owned
        return float(np.sqrt(np.mean(store.residual[:n] ** 2))) if n else 0.0

    # Schemes

    def step(self, store, assemble: AssembleFn) -> AdvanceResult:
        """
        Advance the state by one pseudo-time step.

        Args:
            store: StateStore updated in place
            assemble: Callback performing one full assembly pass into
                store.residual (and into the block system passed to it)

        Returns:
            AdvanceResult
        """
        scheme = self.config.scheme
        if scheme == "implicit_euler":
            result = self._implicit_euler(store, assemble)
        elif scheme == "classical_rk4":
            result = self._classical_rk4(store, assemble)
        elif scheme == "explicit_euler":
            result = self._runge_kutta(store, assemble, (1.0,))
        elif scheme == "runge_kutta":
            result = self._runge_kutta(store, assemble, tuple(self.config.rk_coefficients))
        else:
            raise ConfigurationError(f"Unknown time integration scheme: {scheme}")
        self.state = AdvanceState.CONVERGED_CHECK
        return result

    def _result(self, store, first_residual, stages, stage_rms, linear_info=None) -> AdvanceResult:
        dt = store.local_dt[:self.mesh.n_owned]
        return AdvanceResult(
            residual=first_residual,
            stages=stages,
            dt_min=float(np.min(dt)) if len(dt) else 0.0,
            dt_max=float(np.max(dt)) if len(dt) else 0.0,
            linear_info=linear_info,
            stage_rms=stage_rms,
        )

    def _runge_kutta(self, store, assemble: AssembleFn, coefficients) -> AdvanceResult:
        """Low-storage scheme U_k = U_0 - α_k Δt/V R(U_(k-1))."""
        store.save_solution_old()
        first_residual = None
        stage_rms = []
        n = self.mesh.n_owned
        for stage, alpha in enumerate(coefficients):
            self._collect(store, assemble)
            if stage == 0:
                self.compute_time_step(store)
                first_residual = store.residual.copy()
            stage_rms.append(self._rms(store))
            logger.debug(f"RK stage {stage + 1}/{len(coefficients)}: residual RMS {stage_rms[-1]:.3e}")

            self.state = AdvanceState.STAGE_UPDATE
            factor = alpha * store.local_dt[:n, None] / self.mesh.volumes[:n, None]
            store.solution[:n] = store.solution_old[:n] - factor * store.residual[:n]
            store.mark_modified()
        return self._result(store, first_residual, len(coefficients), stage_rms)

    def _classical_rk4(self, store, assemble: AssembleFn) -> AdvanceResult:
        """Four stages with the weighted residual sum accumulated in residual_old."""
        store.save_solution_old()
        store.residual_old[:] = 0.0
        n = self.mesh.n_owned
        first_residual = None
        stage_rms = []
        for stage, weight in enumerate(CLASSICAL_RK4_WEIGHTS):
            self._collect(store, assemble)
            if stage == 0:
                self.compute_time_step(store)
                first_residual = store.residual.copy()
            stage_rms.append(self._rms(store))
            store.residual_old[:n] += weight * store.residual[:n]

            self.state = AdvanceState.STAGE_UPDATE
            scale = store.local_dt[:n, None] / self.mesh.volumes[:n, None]
            if stage < len(CLASSICAL_RK4_STAGES):
                store.solution[:n] = store.solution_old[:n] - CLASSICAL_RK4_STAGES[stage] * scale * store.residual[:n]
            else:
                store.solution[:n] = store.solution_old[:n] - scale * store.residual_old[:n]
            store.mark_modified()
        return self._result(store, first_residual, 4, stage_rms)

    def _implicit_euler(self, store, assemble: AssembleFn) -> AdvanceResult:
        """Assemble the linearized system, solve it and apply the increment."""
        system = self.system
        mesh = self.mesh
        n = mesh.n_owned

        system.reset()
        self._collect(store, assemble, system)
        self.compute_time_step(store)
        first_residual = store.residual.copy()

        self.state = AdvanceState.STAGE_UPDATE
        system.add_diagonal_scalar(np.arange(n), mesh.volumes[:n] / store.local_dt[:n])
        rhs = -store.residual.copy()
        if mesh.n_halo:
            halo = np.arange(n, mesh.n_points)
            system.set_identity_rows(halo)
            rhs[halo] = 0.0

        increment, info = self.linear_solver.solve(system.to_scipy(), rhs.ravel())
        self._apply_update(store, increment.reshape(store.residual.shape))
        logger.debug(f"Implicit step: {info.iterations} linear iterations, residual {info.residual:.3e}")
        return self._result(store, first_residual, 1, [self._rms(store)], info)

    # Physical time

    @property
    def target_time(self) -> float:
        """Physical time of the state being solved for: t_n+1 inside a dual-time step."""
        if self.config.is_dual_time:
            return self.physical_time + self.config.physical_time_step
        return self.physical_time

    def start_physical_step(self, store) -> None:
        """Store the current state as time level n before the inner iterations."""
        store.push_time_level()

    def finish_physical_step(self) -> None:
        self.physical_step += 1
        self.physical_time += self.config.physical_time_step
